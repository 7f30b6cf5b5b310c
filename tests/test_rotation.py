"""Tests for proxy and credential rotation."""

import random
import threading
import unittest
from collections import Counter

from cinefeed.rotation import AtomicCounter, KeyRotator, ProxyRotator


class TestAtomicCounter(unittest.TestCase):
    """Verify the counter never hands out the same value twice."""

    def test_next_returns_previous_value(self):
        counter = AtomicCounter()
        self.assertEqual([counter.next() for _ in range(3)], [0, 1, 2])
        self.assertEqual(counter.value, 3)

    def test_concurrent_increments_are_unique(self):
        """Values drawn from many threads should be distinct and complete."""
        counter = AtomicCounter()
        seen = []
        lock = threading.Lock()

        def worker():
            for _ in range(200):
                v = counter.next()
                with lock:
                    seen.append(v)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(sorted(seen), list(range(1600)))


class TestKeyRotator(unittest.TestCase):
    """Verify round-robin key selection."""

    def test_round_robin_order(self):
        rotator = KeyRotator(["a", "b", "c"])
        self.assertEqual([rotator.next_key() for _ in range(6)], ["a", "b", "c", "a", "b", "c"])

    def test_empty_pool_returns_none(self):
        rotator = KeyRotator([])
        self.assertFalse(rotator.configured)
        self.assertIsNone(rotator.next_key())
        self.assertEqual(len(rotator), 0)

    def test_blank_entries_dropped(self):
        rotator = KeyRotator([" a ", "", "  "])
        self.assertEqual(len(rotator), 1)
        self.assertEqual(rotator.next_key(), "a")

    def test_concurrent_picks_are_evenly_spread(self):
        """M concurrent picks over N keys give each key floor(M/N) or ceil(M/N) uses."""
        keys = ["k1", "k2", "k3"]
        rotator = KeyRotator(keys)
        picks = []
        lock = threading.Lock()

        def worker():
            for _ in range(100):
                k = rotator.next_key()
                with lock:
                    picks.append(k)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        counts = Counter(picks)
        self.assertEqual(sum(counts.values()), 1000)
        for key in keys:
            self.assertIn(counts[key], (1000 // 3, 1000 // 3 + 1))


class TestProxyRotator(unittest.TestCase):
    """Verify uniform random proxy selection."""

    def test_empty_pool_returns_none(self):
        self.assertIsNone(ProxyRotator([]).pick())

    def test_pick_is_member_of_pool(self):
        pool = ["http://p1", "http://p2"]
        rotator = ProxyRotator(pool, rng=random.Random(7))
        for _ in range(50):
            self.assertIn(rotator.pick(), pool)

    def test_every_proxy_eventually_used(self):
        pool = ["http://p1", "http://p2", "http://p3"]
        rotator = ProxyRotator(pool, rng=random.Random(1))
        self.assertEqual({rotator.pick() for _ in range(300)}, set(pool))


if __name__ == "__main__":
    unittest.main()
