"""Song Provider port and adapters.

The game core only ever sees the finished queue: an ordered list of
playable songs plus the start-year range new players are seeded from.
How the list was produced (a catalogue service, a bundled list) is the
provider's business.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import List, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from .errors import ExternalServiceError
from .models import Song, YearRange

logger = logging.getLogger(__name__)


class SongSelection(BaseModel):
    songs: List[Song]
    start_year_range: Optional[YearRange] = None


class SongProvider(Protocol):
    async def suggest(self, preference: str) -> SongSelection:
        ...


FALLBACK_SONGS = [
    ("fallback-johnny-b-goode", "Johnny B. Goode", "Chuck Berry", 1958),
    ("fallback-jailhouse-rock", "Jailhouse Rock", "Elvis Presley", 1957),
    ("fallback-i-want-to-hold-your-hand", "I Want to Hold Your Hand", "The Beatles", 1963),
    ("fallback-satisfaction", "(I Can't Get No) Satisfaction", "The Rolling Stones", 1965),
    ("fallback-respect", "Respect", "Aretha Franklin", 1967),
    ("fallback-bridge-over-troubled-water", "Bridge over Troubled Water", "Simon & Garfunkel", 1970),
    ("fallback-dancing-queen", "Dancing Queen", "ABBA", 1976),
    ("fallback-hotel-california", "Hotel California", "Eagles", 1977),
    ("fallback-stayin-alive", "Stayin' Alive", "Bee Gees", 1977),
    ("fallback-another-one-bites-the-dust", "Another One Bites the Dust", "Queen", 1980),
    ("fallback-billie-jean", "Billie Jean", "Michael Jackson", 1983),
    ("fallback-take-on-me", "Take On Me", "a-ha", 1985),
    ("fallback-the-final-countdown", "The Final Countdown", "Europe", 1986),
    ("fallback-like-a-prayer", "Like a Prayer", "Madonna", 1989),
    ("fallback-smells-like-teen-spirit", "Smells Like Teen Spirit", "Nirvana", 1991),
    ("fallback-wonderwall", "Wonderwall", "Oasis", 1995),
    ("fallback-wannabe", "Wannabe", "Spice Girls", 1996),
    ("fallback-baby-one-more-time", "...Baby One More Time", "Britney Spears", 1998),
    ("fallback-hey-ya", "Hey Ya!", "OutKast", 2003),
    ("fallback-crazy-in-love", "Crazy in Love", "Beyonce", 2003),
    ("fallback-umbrella", "Umbrella", "Rihanna", 2007),
    ("fallback-rolling-in-the-deep", "Rolling in the Deep", "Adele", 2010),
    ("fallback-wake-me-up", "Wake Me Up", "Avicii", 2013),
    ("fallback-uptown-funk", "Uptown Funk", "Mark Ronson ft. Bruno Mars", 2014),
    ("fallback-shape-of-you", "Shape of You", "Ed Sheeran", 2017),
]


class StaticSongProvider:
    """Bundled catalogue; used when no service is configured and as the fallback."""

    def __init__(self, songs: Optional[Sequence[Song]] = None, start_year_range: Optional[YearRange] = None):
        if songs is None:
            songs = [Song(id=i, title=t, artist=a, year=y) for i, t, a, y in FALLBACK_SONGS]
        self._songs = list(songs)
        self._range = start_year_range

    async def suggest(self, preference: str) -> SongSelection:
        return SongSelection(songs=list(self._songs), start_year_range=self._range)


class CatalogSongProvider:
    """Song catalogue service reached over HTTP.

    ``POST <url>`` with ``{"preference": text}`` answers
    ``{"songs": [Song, ...], "start_year_range": {"min": .., "max": ..}}``.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def suggest(self, preference: str) -> SongSelection:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._url, json={"preference": preference})
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceError(
                f"Song service answered HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceError(f"Song service request failed: {exc!r}") from exc

        try:
            return SongSelection.model_validate(payload)
        except PydanticValidationError as exc:
            raise ExternalServiceError("Song service returned an unexpected payload") from exc


def prepare_queue(
    songs: Sequence[Song],
    *,
    min_year: int = 1950,
    max_year: Optional[int] = None,
    target_count: int = 20,
    rng: Optional[random.Random] = None,
) -> List[Song]:
    """Drop implausible years and duplicates, shuffle, and cap the queue."""
    max_year = max_year if max_year is not None else datetime.now().year
    seen_ids: set[str] = set()
    # the same recording often shows up on several albums
    seen_keys: set[str] = set()
    queue: List[Song] = []
    for song in songs:
        if not min_year <= song.year <= max_year:
            continue
        key = f"{song.title.lower().strip()}|{song.artist.lower().strip()}"
        if song.id in seen_ids or key in seen_keys:
            continue
        seen_ids.add(song.id)
        seen_keys.add(key)
        queue.append(song)

    (rng or random.Random()).shuffle(queue)
    return queue[:target_count]


async def select_songs(
    provider: SongProvider,
    preference: str,
    *,
    fallback: SongProvider,
    default_range: YearRange,
    min_year: int = 1950,
    target_count: int = 20,
    rng: Optional[random.Random] = None,
) -> SongSelection:
    """Ask ``provider`` for songs, falling back so the lobby is never blocked."""
    try:
        selection = await provider.suggest(preference)
    except ExternalServiceError as exc:
        logger.warning("song provider failed for %r, using fallback catalogue: %s", preference, exc)
        selection = await fallback.suggest(preference)

    songs = prepare_queue(selection.songs, min_year=min_year, target_count=target_count, rng=rng)
    if not songs and provider is not fallback:
        logger.warning("song provider returned no usable songs for %r, using fallback catalogue", preference)
        selection = await fallback.suggest(preference)
        songs = prepare_queue(selection.songs, min_year=min_year, target_count=target_count, rng=rng)

    logger.info("selected %d songs for %r", len(songs), preference)
    return SongSelection(songs=songs, start_year_range=selection.start_year_range or default_range)


def build_song_provider(settings) -> SongProvider:
    if settings.SONG_SERVICE_URL:
        return CatalogSongProvider(settings.SONG_SERVICE_URL, timeout=settings.SONG_SERVICE_TIMEOUT_SEC)
    return StaticSongProvider()
