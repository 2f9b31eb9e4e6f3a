from __future__ import annotations

import json
import random
from unittest import IsolatedAsyncioTestCase, TestCase

import httpx

from backend.hitparty.config import Settings
from backend.hitparty.models import Song
from backend.hitparty.narration import (
    VOICE_SETTINGS,
    ElevenLabsNarrator,
    NarrationContext,
    NullNarrator,
    build_narrator,
    narration_script,
)

SONG = Song(id="x", title="Heroes", artist="David Bowie", year=1977, movie="Christiane F.")
CONTEXT = NarrationContext(session_code="ABCDEF", round=3)


class ScriptTests(TestCase):
    def test_round_script_mentions_song_and_movie(self):
        script = narration_script(SONG, CONTEXT, random.Random(0))
        self.assertIn("Heroes", script)
        self.assertIn("1977", script)
        self.assertIn("Christiane F.", script)

    def test_winner_script(self):
        ctx = NarrationContext(session_code="ABCDEF", round=10, finished=True, winner_name="Ana")
        script = narration_script(SONG, ctx)
        self.assertIn("Ana", script)
        self.assertIn("Heroes", script)

    def test_closing_script_without_winner(self):
        ctx = NarrationContext(session_code="ABCDEF", round=20, finished=True)
        self.assertIn("thanks for playing", narration_script(SONG, ctx))


class ElevenLabsTests(IsolatedAsyncioTestCase):
    async def test_returns_audio_bytes(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("xi-api-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"ID3audio")

        narrator = ElevenLabsNarrator(
            "secret",
            voice_id="voice-1",
            base_url="https://tts.test/",
            transport=httpx.MockTransport(handler),
        )
        audio = await narrator.narrate(SONG, CONTEXT)

        self.assertEqual(audio, b"ID3audio")
        self.assertEqual(seen["url"], "https://tts.test/v1/text-to-speech/voice-1")
        self.assertEqual(seen["key"], "secret")
        self.assertEqual(seen["body"]["model_id"], "eleven_multilingual_v2")
        self.assertEqual(seen["body"]["voice_settings"], VOICE_SETTINGS)
        self.assertIn("Heroes", seen["body"]["text"])

    async def test_http_error_yields_none(self):
        narrator = ElevenLabsNarrator(
            "secret",
            voice_id="voice-1",
            transport=httpx.MockTransport(lambda request: httpx.Response(401, json={"detail": "bad key"})),
        )
        with self.assertLogs("backend.hitparty.narration", level="ERROR"):
            self.assertIsNone(await narrator.narrate(SONG, CONTEXT))

    async def test_connection_error_yields_none(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        narrator = ElevenLabsNarrator("secret", voice_id="voice-1", transport=httpx.MockTransport(handler))
        self.assertIsNone(await narrator.narrate(SONG, CONTEXT))

    async def test_empty_body_yields_none(self):
        narrator = ElevenLabsNarrator(
            "secret",
            voice_id="voice-1",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"")),
        )
        self.assertIsNone(await narrator.narrate(SONG, CONTEXT))

    async def test_null_narrator(self):
        self.assertIsNone(await NullNarrator().narrate(SONG, CONTEXT))


class BuildNarratorTests(TestCase):
    def test_without_key_narration_is_disabled(self):
        self.assertIsInstance(build_narrator(Settings(_env_file=None, ELEVENLABS_API_KEY=None)), NullNarrator)

    def test_with_key(self):
        narrator = build_narrator(Settings(_env_file=None, ELEVENLABS_API_KEY="k"))
        self.assertIsInstance(narrator, ElevenLabsNarrator)
