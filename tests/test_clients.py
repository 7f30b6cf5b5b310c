"""Tests for the typed upstream and enrichment clients."""

import json
import unittest
from urllib.parse import parse_qs, urlsplit

from cinefeed.douban import DoubanClient
from cinefeed.errors import (
    DeserializationError,
    EnrichmentUnavailable,
    FetchExhausted,
    UpstreamStatusError,
)
from cinefeed.rotation import KeyRotator
from cinefeed.tmdb import TMDBClient


class FakeFetcher:
    """Returns canned bodies keyed by URL path; unknown paths fail like exhaustion."""

    has_proxy = True
    proxy_count = 2

    def __init__(self, bodies):
        self.bodies = bodies
        self.urls = []

    def fetch(self, url):
        self.urls.append(url)
        path = urlsplit(url).path
        if path not in self.bodies:
            raise FetchExhausted(url, 3, None)
        body = self.bodies[path]
        return body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")


class TestDoubanClient(unittest.TestCase):
    """Verify request shaping and payload mapping."""

    def test_search_subjects(self):
        fetcher = FakeFetcher({"/j/search_subjects": {"subjects": [{"id": 1, "title": "A", "rate": "8.0"}]}})
        subjects = DoubanClient(fetcher).search_subjects("movie", "热门", 24, 48)
        self.assertEqual(subjects[0].id, "1")
        self.assertEqual(subjects[0].rate, "8.0")
        query = parse_qs(urlsplit(fetcher.urls[0]).query)
        self.assertEqual(query["tag"], ["热门"])
        self.assertEqual(query["page_limit"], ["24"])
        self.assertEqual(query["page_start"], ["48"])

    def test_primary_failure_propagates(self):
        with self.assertRaises(FetchExhausted):
            DoubanClient(FakeFetcher({})).search_subjects("", "热门", 20, 0)

    def test_malformed_json(self):
        client = DoubanClient(FakeFetcher({"/j/search_subjects": b"<html>"}))
        with self.assertRaises(DeserializationError):
            client.search_subjects("", "热门", 20, 0)

    def test_abstract_without_subject(self):
        client = DoubanClient(FakeFetcher({"/j/subject_abstract": {"r": 1}}))
        with self.assertRaises(DeserializationError):
            client.subject_abstract("1")

    def test_abstract_mapping(self):
        payload = {"subject": {"id": "7", "title": "T", "types": ["剧情"], "short_comment": {"content": "c"}}}
        abstract = DoubanClient(FakeFetcher({"/j/subject_abstract": payload})).subject_abstract("7")
        self.assertEqual(abstract.types, ["剧情"])
        self.assertEqual(abstract.short_comment, {"content": "c"})

    def test_secondary_failures_are_empty(self):
        client = DoubanClient(FakeFetcher({}))
        with self.assertLogs("cinefeed.douban", level="WARNING"):
            self.assertEqual(client.subject_suggest("x"), [])
            self.assertEqual(client.photos("1"), [])
            self.assertEqual(client.comments("1"), [])
            self.assertEqual(client.recommendations("1"), [])
            self.assertEqual(client.search_tags("movie"), [])

    def test_comments_mapping(self):
        payload = {"comments": [{"id": 3, "content": "nice", "author": {"name": "kim", "uid": "k"}}]}
        comments = DoubanClient(FakeFetcher({"/j/subject/1/comments": payload})).comments("1")
        self.assertEqual(comments, [{"id": "3", "content": "nice", "author": {"name": "kim"}}])

    def test_advanced_search_params(self):
        fetcher = FakeFetcher({"/j/new_search_subjects": {"data": [{"id": "9", "title": "Z"}]}})
        results = DoubanClient(fetcher).advanced_search("电影", "T", genres="喜剧", start=20, limit=10)
        self.assertEqual(results[0].id, "9")
        query = parse_qs(urlsplit(fetcher.urls[0]).query)
        self.assertEqual(query["genres"], ["喜剧"])
        self.assertEqual(query["range"], ["0,10"])
        self.assertNotIn("year_range", query)

    def test_proxy_status_passthrough(self):
        client = DoubanClient(FakeFetcher({}))
        self.assertTrue(client.has_proxy)
        self.assertEqual(client.proxy_count, 2)


class FakeTMDBResponse:
    def __init__(self, status_code, payload=None, raw=None):
        self.status_code = status_code
        self._payload = payload
        self._raw = raw
        self.closed = False

    def json(self):
        if self._raw is not None:
            return json.loads(self._raw)
        return self._payload

    def close(self):
        self.closed = True


class FakeTMDBSessions:
    """Session factory recording every request and every session it hands out."""

    def __init__(self, response):
        self.response = response
        self.requests = []
        self.created = []

    def __call__(self):
        session = _FakeTMDBSession(self)
        self.created.append(session)
        return session


class _FakeTMDBSession:
    def __init__(self, owner):
        self._owner = owner
        self.closed = False

    def get(self, url, params=None, headers=None, timeout=None):
        self._owner.requests.append({"url": url, "params": params, "headers": headers})
        return self._owner.response

    def close(self):
        self.closed = True


class TestTMDBClient(unittest.TestCase):
    """Verify backdrop lookup and key rotation."""

    def _client(self, response, keys=("k1", "k2")):
        sessions = FakeTMDBSessions(response)
        client = TMDBClient(
            KeyRotator(list(keys)),
            base_url="https://api.example.org/3",
            image_base="https://img.example.org/t/p/original",
            session_factory=sessions,
        )
        return client, sessions

    def test_each_lookup_uses_its_own_closed_session(self):
        """Concurrent lookups never share an HTTP session."""
        client, sessions = self._client(FakeTMDBResponse(200, {"results": []}))
        client.search_backdrop("A")
        client.search_backdrop("B")
        self.assertEqual(len(sessions.created), 2)
        self.assertIsNot(sessions.created[0], sessions.created[1])
        self.assertTrue(all(s.closed for s in sessions.created))

    def test_session_closed_on_http_error(self):
        client, sessions = self._client(FakeTMDBResponse(500, {}))
        with self.assertRaises(UpstreamStatusError):
            client.search_backdrop("A")
        self.assertTrue(sessions.created[0].closed)

    def test_best_backdrop_url(self):
        payload = {
            "results": [
                {"title": "Inception 2", "backdrop_path": "/other.jpg", "release_date": "2013-01-01"},
                {"title": "Inception", "backdrop_path": "/best.jpg", "release_date": "2010-07-16", "vote_average": 8.4},
            ]
        }
        client, session = self._client(FakeTMDBResponse(200, payload))
        url = client.search_backdrop("Inception (2010)")
        self.assertEqual(url, "https://img.example.org/t/p/original/best.jpg")
        req = session.requests[0]
        self.assertEqual(req["params"], {"query": "Inception", "language": "zh-CN", "year": "2010"})
        self.assertEqual(req["headers"]["Authorization"], "Bearer k1")
        self.assertTrue(session.response.closed)

    def test_keys_rotate(self):
        client, session = self._client(FakeTMDBResponse(200, {"results": []}))
        client.search_backdrop("A")
        client.search_backdrop("B")
        client.search_backdrop("C")
        self.assertEqual(
            [r["headers"]["Authorization"] for r in session.requests],
            ["Bearer k1", "Bearer k2", "Bearer k1"],
        )

    def test_no_results_is_empty(self):
        client, _ = self._client(FakeTMDBResponse(200, {"results": []}))
        self.assertEqual(client.search_backdrop("Nothing", 2001), "")

    def test_only_image_less_results_is_empty(self):
        client, _ = self._client(FakeTMDBResponse(200, {"results": [{"title": "Nothing", "backdrop_path": None}]}))
        self.assertEqual(client.search_backdrop("Nothing"), "")

    def test_no_keys(self):
        client, _ = self._client(FakeTMDBResponse(200, {}), keys=())
        self.assertFalse(client.is_configured)
        with self.assertRaises(EnrichmentUnavailable):
            client.search_backdrop("A")

    def test_http_error(self):
        client, _ = self._client(FakeTMDBResponse(401, {}))
        with self.assertRaises(UpstreamStatusError):
            client.search_backdrop("A")

    def test_bad_json(self):
        client, _ = self._client(FakeTMDBResponse(200, raw="{oops"))
        with self.assertRaises(DeserializationError):
            client.search_backdrop("A")


if __name__ == "__main__":
    unittest.main()
