"""Tests for the MetricsRecorder class."""

import unittest
from datetime import datetime, timedelta

import fakeredis

from cinefeed.metrics import MetricsRecorder, normalize_path


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _day(ts):
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d")


class MetricsTestCase(unittest.TestCase):
    def setUp(self):
        self.client = fakeredis.FakeRedis(decode_responses=True)
        self.clock = FakeClock(1_760_000_000.0)
        self.metrics = MetricsRecorder(self.client, clock=self.clock)


class TestRecord(MetricsTestCase):
    """Verify per-path aggregates."""

    def test_latency_aggregates(self):
        """Latencies 10, 50, 30 give avg 30, min 10, max 50 over 3 calls."""
        for latency in (10, 50, 30):
            self.metrics.record("/api/v1/movies", 200, latency, False)
        stats = self.metrics.stats_for("/api/v1/movies")
        self.assertEqual(stats.total_calls, 3)
        self.assertAlmostEqual(stats.avg_latency_ms, 30.0)
        self.assertEqual(stats.min_latency_ms, 10.0)
        self.assertEqual(stats.max_latency_ms, 50.0)

    def test_fourth_cached_call_only_moves_hit_counter(self):
        for latency in (10, 50, 30):
            self.metrics.record("/api/v1/movies", 200, latency, False)
        before = self.metrics.stats_for("/api/v1/movies")
        self.metrics.record("/api/v1/movies", 200, 30, True)
        after = self.metrics.stats_for("/api/v1/movies")
        self.assertEqual(after.cache_hits, before.cache_hits + 1)
        self.assertEqual(after.cache_misses, before.cache_misses)
        self.assertEqual(after.total_calls, 4)
        self.assertEqual(after.min_latency_ms, 10.0)
        self.assertEqual(after.max_latency_ms, 50.0)

    def test_cache_hit_increments_by_one(self):
        self.metrics.record("/api/v1/hero", 200, 5, True)
        stats = self.metrics.stats_for("/api/v1/hero")
        self.assertEqual(stats.cache_hits, 1)
        self.assertEqual(stats.cache_misses, 0)

    def test_success_and_error_split(self):
        self.metrics.record("/api/v1/detail/:id", 200, 5, False)
        self.metrics.record("/api/v1/detail/:id", 302, 5, False)
        self.metrics.record("/api/v1/detail/:id", 404, 5, False)
        self.metrics.record("/api/v1/detail/:id", 500, 5, False)
        stats = self.metrics.stats_for("/api/v1/detail/:id")
        self.assertEqual(stats.success_calls, 2)
        self.assertEqual(stats.error_calls, 2)
        self.assertEqual(stats.success_calls + stats.error_calls, stats.total_calls)

    def test_unknown_path_is_empty(self):
        stats = self.metrics.stats_for("/api/v1/nothing")
        self.assertEqual(stats.total_calls, 0)
        self.assertEqual(stats.avg_latency_ms, 0.0)

    def test_buckets_get_retention(self):
        self.metrics.record("/api/v1/tv", 200, 5, False)
        day = _day(self.clock.now)
        self.assertGreater(self.client.ttl(f"metrics:daily:{day}"), 0)
        hour = datetime.fromtimestamp(self.clock.now).strftime("%Y-%m-%d-%H")
        self.assertGreater(self.client.ttl(f"metrics:hourly:{hour}"), 0)


class TestOverallStats(MetricsTestCase):
    """Verify the cross-path summary."""

    def test_totals_and_rates(self):
        self.metrics.record("/api/v1/movies", 200, 10, True)
        self.metrics.record("/api/v1/movies", 200, 20, True)
        self.metrics.record("/api/v1/movies", 200, 30, False)
        self.metrics.record("/api/v1/tv", 500, 40, False)

        overall = self.metrics.overall_stats()
        self.assertEqual(overall.total_api_calls, 4)
        self.assertEqual(overall.today_api_calls, 4)
        self.assertAlmostEqual(overall.avg_latency_ms, 25.0)
        self.assertAlmostEqual(overall.cache_hit_rate, 50.0)
        self.assertAlmostEqual(overall.error_rate, 25.0)
        self.assertEqual([e.path for e in overall.top_endpoints], ["/api/v1/movies", "/api/v1/tv"])

    def test_top_endpoints_capped_at_ten(self):
        for i in range(12):
            for _ in range(i + 1):
                self.metrics.record(f"/api/v1/p{i}", 200, 1, False)
        top = self.metrics.overall_stats().top_endpoints
        self.assertEqual(len(top), 10)
        self.assertEqual(top[0].path, "/api/v1/p11")
        totals = [e.total_calls for e in top]
        self.assertEqual(totals, sorted(totals, reverse=True))

    def test_daily_trend_zero_filled_oldest_first(self):
        recorded_day = _day(self.clock.now)
        self.metrics.record("/api/v1/latest", 200, 12, False)
        self.clock.advance(2 * 86400)

        trend = self.metrics.overall_stats().daily_trend
        self.assertEqual(len(trend), 7)
        self.assertEqual(trend[-1].date, _day(self.clock.now))
        self.assertEqual(trend[4].date, recorded_day)
        self.assertEqual(trend[4].total_calls, 1)
        self.assertAlmostEqual(trend[4].avg_latency, 12.0)
        self.assertEqual(sum(d.total_calls for d in trend), 1)
        dates = [d.date for d in trend]
        self.assertEqual(dates, sorted(dates))

    def test_empty_store(self):
        overall = self.metrics.overall_stats()
        self.assertEqual(overall.total_api_calls, 0)
        self.assertEqual(overall.avg_latency_ms, 0.0)
        self.assertEqual(overall.cache_hit_rate, 0.0)
        self.assertEqual(overall.top_endpoints, [])
        self.assertEqual(overall.uptime_seconds, 0)

    def test_uptime_from_server_start(self):
        self.metrics.record_server_start()
        self.clock.advance(120)
        self.assertEqual(self.metrics.overall_stats().uptime_seconds, 120)

    def test_keep_existing_start_time(self):
        self.metrics.record_server_start()
        self.clock.advance(300)
        self.metrics.record_server_start(keep_existing=True)
        self.assertEqual(self.metrics.overall_stats().uptime_seconds, 300)

    def test_server_start_overwrites_by_default(self):
        self.metrics.record_server_start()
        self.clock.advance(300)
        self.metrics.record_server_start()
        self.assertEqual(self.metrics.overall_stats().uptime_seconds, 0)

    def test_reset_clears_everything(self):
        self.metrics.record("/api/v1/movies", 200, 10, False)
        self.client.set("douban:hero:movies", "[]")
        self.assertGreater(self.metrics.reset(), 0)
        self.assertEqual(self.metrics.overall_stats().total_api_calls, 0)
        self.assertEqual(self.client.get("douban:hero:movies"), "[]")
        self.assertEqual(self.metrics.reset(), 0)


class TestObserve(MetricsTestCase):
    """Verify the timing context manager."""

    def test_records_normalized_path(self):
        with self.metrics.observe("/api/v1/detail/1292052") as obs:
            obs.cache_hit = True
        stats = self.metrics.stats_for("/api/v1/detail/:id")
        self.assertEqual(stats.total_calls, 1)
        self.assertEqual(stats.cache_hits, 1)

    def test_exception_counts_as_error_and_propagates(self):
        with self.assertRaises(RuntimeError):
            with self.metrics.observe("/api/v1/hero"):
                raise RuntimeError("boom")
        self.assertEqual(self.metrics.stats_for("/api/v1/hero").error_calls, 1)

    def test_non_api_paths_ignored(self):
        with self.metrics.observe("/health"):
            pass
        self.assertEqual(self.metrics.overall_stats().total_api_calls, 0)


class TestNormalizePath(unittest.TestCase):
    def test_numeric_segments_collapse(self):
        self.assertEqual(normalize_path("/api/v1/detail/123"), "/api/v1/detail/:id")

    def test_other_segments_kept(self):
        self.assertEqual(normalize_path("/api/v1/movies"), "/api/v1/movies")

    def test_non_ascii_digits_kept(self):
        """Only ASCII 0-9 segments count as ids."""
        self.assertEqual(normalize_path("/api/v1/detail/²"), "/api/v1/detail/²")
        self.assertEqual(normalize_path("/api/v1/detail/١٢٣"), "/api/v1/detail/١٢٣")


if __name__ == "__main__":
    unittest.main()
