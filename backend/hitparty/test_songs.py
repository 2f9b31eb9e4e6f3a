from __future__ import annotations

import json
import random
from unittest import IsolatedAsyncioTestCase, TestCase

import httpx

from backend.hitparty.errors import ExternalServiceError
from backend.hitparty.models import Song, YearRange
from backend.hitparty.songs import (
    FALLBACK_SONGS,
    CatalogSongProvider,
    SongSelection,
    StaticSongProvider,
    prepare_queue,
    select_songs,
)

DEFAULT_RANGE = YearRange(min=1950, max=2020)


def _song(sid: str, year: int, title: str | None = None, artist: str = "Someone") -> Song:
    return Song(id=sid, title=title or sid, artist=artist, year=year)


class _FailingProvider:
    def __init__(self):
        self.calls = 0

    async def suggest(self, preference: str) -> SongSelection:
        self.calls += 1
        raise ExternalServiceError("catalogue is down")


class PrepareQueueTests(TestCase):
    def test_filters_implausible_years(self):
        songs = [_song("old", 1920), _song("ok", 1977), _song("future", 2999)]
        queue = prepare_queue(songs, min_year=1950, max_year=2024)
        self.assertEqual([s.id for s in queue], ["ok"])

    def test_drops_duplicate_ids_and_recordings(self):
        songs = [
            _song("a", 1977, "Heroes", "David Bowie"),
            _song("a", 1977, "Other", "Other"),
            _song("b", 1977, " heroes ", "DAVID BOWIE"),
            _song("c", 1983, "Let's Dance", "David Bowie"),
        ]
        queue = prepare_queue(songs, rng=random.Random(1))
        self.assertEqual(sorted(s.id for s in queue), ["a", "c"])

    def test_caps_at_target_count(self):
        songs = [_song(f"s{i}", 1960 + i) for i in range(40)]
        queue = prepare_queue(songs, target_count=20, rng=random.Random(2))
        self.assertEqual(len(queue), 20)
        self.assertEqual(len({s.id for s in queue}), 20)

    def test_shuffle_is_seedable(self):
        songs = [_song(f"s{i}", 1960 + i) for i in range(15)]
        a = prepare_queue(songs, rng=random.Random(5))
        b = prepare_queue(songs, rng=random.Random(5))
        self.assertEqual([s.id for s in a], [s.id for s in b])


class CatalogProviderTests(IsolatedAsyncioTestCase):
    async def test_posts_preference_and_parses_songs(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "songs": [{"id": "x", "title": "Heroes", "artist": "David Bowie", "year": 1977}],
                    "start_year_range": {"min": 1970, "max": 1990},
                },
            )

        provider = CatalogSongProvider("http://catalog.test/suggest", transport=httpx.MockTransport(handler))
        selection = await provider.suggest("70s glam")

        self.assertEqual(seen["body"], {"preference": "70s glam"})
        self.assertEqual(selection.songs[0].title, "Heroes")
        self.assertEqual(selection.start_year_range, YearRange(min=1970, max=1990))

    async def test_http_error_becomes_external_service_error(self):
        provider = CatalogSongProvider(
            "http://catalog.test/suggest",
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="busy")),
        )
        with self.assertRaises(ExternalServiceError):
            await provider.suggest("anything")

    async def test_transport_error_becomes_external_service_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        provider = CatalogSongProvider("http://catalog.test/suggest", transport=httpx.MockTransport(handler))
        with self.assertRaises(ExternalServiceError):
            await provider.suggest("anything")

    async def test_malformed_payload_becomes_external_service_error(self):
        provider = CatalogSongProvider(
            "http://catalog.test/suggest",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"tracks": []})),
        )
        with self.assertRaises(ExternalServiceError):
            await provider.suggest("anything")


class SelectSongsTests(IsolatedAsyncioTestCase):
    async def test_uses_provider_result(self):
        provider = StaticSongProvider([_song("a", 1980), _song("b", 1990)], YearRange(min=1970, max=1980))
        selection = await select_songs(
            provider, "rock", fallback=StaticSongProvider(), default_range=DEFAULT_RANGE, rng=random.Random(1)
        )
        self.assertEqual(sorted(s.id for s in selection.songs), ["a", "b"])
        self.assertEqual(selection.start_year_range, YearRange(min=1970, max=1980))

    async def test_falls_back_when_provider_fails(self):
        failing = _FailingProvider()
        selection = await select_songs(
            failing, "rock", fallback=StaticSongProvider(), default_range=DEFAULT_RANGE, rng=random.Random(1)
        )
        self.assertEqual(failing.calls, 1)
        self.assertEqual(len(selection.songs), 20)
        self.assertTrue(all(s.id.startswith("fallback-") for s in selection.songs))
        self.assertEqual(selection.start_year_range, DEFAULT_RANGE)

    async def test_falls_back_when_nothing_usable_comes_back(self):
        provider = StaticSongProvider([_song("ancient", 1900)])
        selection = await select_songs(
            provider,
            "rock",
            fallback=StaticSongProvider(),
            default_range=DEFAULT_RANGE,
            target_count=50,
            rng=random.Random(1),
        )
        self.assertEqual(len(selection.songs), len(FALLBACK_SONGS))

    async def test_fallback_catalogue_is_clean(self):
        selection = await StaticSongProvider().suggest("")
        queue = prepare_queue(selection.songs, target_count=100)
        self.assertEqual(len(queue), len(FALLBACK_SONGS))
