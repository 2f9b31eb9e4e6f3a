from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .models import Song

logger = logging.getLogger(__name__)

VOICE_SETTINGS = {
    "stability": 0.5,
    "similarity_boost": 0.75,
    "style": 0.5,
    "use_speaker_boost": True,
}


@dataclass
class NarrationContext:
    session_code: str
    round: int
    finished: bool = False
    winner_name: Optional[str] = None


class NarrationProvider(Protocol):
    async def narrate(self, song: Song, context: NarrationContext) -> Optional[bytes]:
        """Return audio for the song, or None when there is nothing to play."""
        ...


class NullNarrator:
    async def narrate(self, song: Song, context: NarrationContext) -> Optional[bytes]:
        return None


def narration_script(song: Song, context: NarrationContext, rng: Optional[random.Random] = None) -> str:
    if context.finished and context.winner_name:
        return (
            f'And that was "{song.title}" from {song.year}! '
            f"Congratulations {context.winner_name}, ten out of ten. What a game!"
        )
    if context.finished:
        return f'"{song.title}" from {song.year} closes the show. No more songs in the box, thanks for playing!'

    lines = [
        f'"{song.title}" by {song.artist}, {song.year}! What a hit!',
        f"{song.artist} with \"{song.title}\", {song.year}. A classic!",
        f'That was "{song.title}" from {song.year}. Next!',
    ]
    line = (rng or random.Random()).choice(lines)
    if song.movie:
        line += f" You might know it from {song.movie}."
    if song.trivia:
        line += f" {song.trivia}"
    return line


class ElevenLabsNarrator:
    """Text-to-speech through the ElevenLabs HTTP API.

    Any failure is logged and turned into ``None``; missing audio is a
    normal outcome for the game, never an error shown to players.
    """

    def __init__(
        self,
        api_key: str,
        *,
        voice_id: str,
        model_id: str = "eleven_multilingual_v2",
        base_url: str = "https://api.elevenlabs.io",
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rng: Optional[random.Random] = None,
    ):
        self._api_key = api_key
        self._voice_id = voice_id
        self._model_id = model_id
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._rng = rng

    async def narrate(self, song: Song, context: NarrationContext) -> Optional[bytes]:
        script = narration_script(song, context, self._rng)
        url = f"{self._base_url}/v1/text-to-speech/{self._voice_id}"
        headers = {"Accept": "audio/mpeg", "xi-api-key": self._api_key}
        body = {"text": script, "model_id": self._model_id, "voice_settings": VOICE_SETTINGS}
        logger.info("session %s round %s: narrating %.60s", context.session_code, context.round, script)

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(url, headers=headers, json=body)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "ElevenLabs request failed with HTTP %s: %.200s",
                exc.response.status_code,
                exc.response.text,
            )
            return None
        except httpx.HTTPError as exc:
            logger.error("ElevenLabs request failed: %r", exc)
            return None

        if not resp.content:
            logger.warning("ElevenLabs returned no audio for session %s", context.session_code)
            return None
        logger.info("ElevenLabs generated %d bytes of audio", len(resp.content))
        return resp.content


def build_narrator(settings) -> NarrationProvider:
    if not settings.ELEVENLABS_API_KEY:
        logger.warning("ELEVENLABS_API_KEY is not set - narration disabled")
        return NullNarrator()
    return ElevenLabsNarrator(
        settings.ELEVENLABS_API_KEY,
        voice_id=settings.ELEVENLABS_VOICE_ID,
        model_id=settings.ELEVENLABS_MODEL_ID,
        base_url=settings.ELEVENLABS_BASE_URL,
        timeout=settings.NARRATION_TIMEOUT_SEC,
    )
