from __future__ import annotations

import bisect
import logging
import random
import uuid
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional

from .errors import StateError, UnknownPlayerError, ValidationError
from .models import Phase, Player, RoundResult, Song, YearRange
from .utils import now_ts, sort_leaderboard

logger = logging.getLogger(__name__)

DEFAULT_MAX_PLAYERS = 8
WINNING_SCORE = 10

# States: setup -> lobby -> playing -> reveal -> playing | finished
TRANSITIONS: Dict[str, tuple] = {
    "setup": ("lobby",),
    "lobby": ("playing",),
    "playing": ("reveal", "finished"),
    "reveal": ("playing", "finished"),
    "finished": (),
}


def placement_fits(timeline: List[Song], index: int, year: int) -> bool:
    """True when ``year`` belongs between the entries around ``index``."""
    before = timeline[index - 1].year if index > 0 else float("-inf")
    after = timeline[index].year if index < len(timeline) else float("inf")
    return before <= year <= after


def insert_sorted(timeline: List[Song], song: Song) -> None:
    years = [s.year for s in timeline]
    timeline.insert(bisect.bisect_right(years, song.year), song)


class GameSession:
    """One game's state machine. Pure logic: no I/O, no awaits.

    Every operation validates first and mutates afterwards, so a raised
    error always leaves the session exactly as it was.
    """

    def __init__(
        self,
        code: str,
        host_connection_id: str,
        *,
        max_players: int = DEFAULT_MAX_PLAYERS,
        winning_score: int = WINNING_SCORE,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = now_ts,
    ):
        self.code = code
        self.host_connection_id = host_connection_id
        self.max_players = max_players
        self.winning_score = winning_score
        self._rng = rng or random.Random()
        self._clock = clock

        self.phase: Phase = "setup"
        self.preference: Optional[str] = None
        self.start_year_range: Optional[YearRange] = None
        self.players: List[Player] = []
        self.song_queue: Deque[Song] = deque()
        self.round = 0
        self.current_song: Optional[Song] = None
        self.last_song: Optional[Song] = None
        self.last_results: List[RoundResult] = []
        self.winner_id: Optional[str] = None
        self.created_at = clock()
        self.last_activity = self.created_at

        self._staged: Dict[str, int] = {}

    # ---- helpers ----

    def _require_phase(self, action: str, *phases: str) -> None:
        if self.phase not in phases:
            raise StateError(f"Cannot {action} while the game is in '{self.phase}'")

    def _advance(self, target: str) -> None:
        if target not in TRANSITIONS[self.phase]:
            raise StateError(f"Illegal transition {self.phase} -> {target}")
        logger.info("session %s: %s -> %s (round %s)", self.code, self.phase, target, self.round)
        self.phase = target  # type: ignore[assignment]

    def _draw_song(self) -> Song:
        # popleft consumes: no song is ever drawn twice
        return self.song_queue.popleft()

    def _clear_round(self) -> None:
        self._staged.clear()
        for p in self.players:
            p.is_ready = False

    def touch(self) -> None:
        self.last_activity = self._clock()

    def is_host(self, connection_id: str) -> bool:
        return connection_id == self.host_connection_id

    def get_player(self, player_id: str) -> Player:
        for p in self.players:
            if p.id == player_id:
                return p
        raise UnknownPlayerError(f"Unknown player '{player_id}'")

    def player_for_connection(self, connection_id: str) -> Optional[Player]:
        for p in self.players:
            if p.connection_id == connection_id:
                return p
        return None

    def staged_placement(self, player_id: str) -> Optional[int]:
        return self._staged.get(player_id)

    @property
    def songs_remaining(self) -> int:
        return len(self.song_queue)

    # ---- setup / lobby ----

    def confirm_preferences(self, text: str, songs: Iterable[Song], start_year_range: YearRange) -> None:
        self._require_phase("confirm preferences", "setup")
        text = (text or "").strip()
        if not text:
            raise ValidationError("Music preference must not be empty")

        queue: List[Song] = []
        seen: set[str] = set()
        for song in songs:
            if song.id in seen:
                continue
            seen.add(song.id)
            queue.append(song)
        if not queue:
            raise ValidationError("Song queue must not be empty")

        self.preference = text
        self.song_queue = deque(queue)
        self.start_year_range = start_year_range
        self._advance("lobby")
        self.touch()

    def add_player(
        self,
        name: str,
        avatar: Optional[str] = None,
        *,
        stage_name: Optional[str] = None,
        start_year: Optional[int] = None,
        connection_id: Optional[str] = None,
    ) -> Player:
        self._require_phase("join", "lobby")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name must not be empty")
        if len(self.players) >= self.max_players:
            raise ValidationError(f"Session is full ({self.max_players} players max)")

        year_range = self.start_year_range
        if year_range is None:
            raise StateError("No start-year range configured for this game")
        if start_year is None:
            start_year = self._rng.randint(year_range.min, year_range.max)
        elif not year_range.contains(start_year):
            raise ValidationError(
                f"Start year {start_year} outside {year_range.min}-{year_range.max}"
            )

        pid = uuid.uuid4().hex
        start_card = Song(
            id=f"start-{pid}",
            title="Start year",
            artist="",
            year=start_year,
            is_start_card=True,
        )
        player = Player(
            id=pid,
            name=name,
            avatar=avatar,
            stage_name=stage_name,
            start_year=start_year,
            timeline=[start_card],
            connection_id=connection_id,
        )
        self.players.append(player)
        self.touch()
        logger.info("session %s: player %s (%s) joined, start year %s", self.code, pid, name, start_year)
        return player

    def remove_player(self, player_id: str) -> Player:
        self._require_phase("remove a player", "lobby", "playing", "reveal")
        player = self.get_player(player_id)
        self.players.remove(player)
        self._staged.pop(player_id, None)
        self.touch()
        return player

    # ---- round loop ----

    def start_game(self) -> Song:
        self._require_phase("start the game", "lobby")
        if not self.players:
            raise ValidationError("Cannot start: no players have joined")
        if not self.song_queue:
            raise ValidationError("Cannot start: the song queue is empty")

        self._advance("playing")
        self.current_song = self._draw_song()
        self.round = 1
        self._clear_round()
        self.touch()
        return self.current_song

    def submit_placement(self, player_id: str, index: int) -> None:
        self._require_phase("submit a placement", "playing")
        player = self.get_player(player_id)
        if isinstance(index, bool) or not isinstance(index, int):
            raise ValidationError("Placement index must be an integer")
        if not 0 <= index <= len(player.timeline):
            raise ValidationError(f"Placement index must be between 0 and {len(player.timeline)}")

        self._staged[player_id] = index
        player.is_ready = True
        self.touch()

    def reveal_results(self) -> List[RoundResult]:
        self._require_phase("reveal results", "playing")
        song = self.current_song
        if song is None:
            raise StateError("No song is playing")

        # score everything before touching any player
        verdicts: Dict[str, bool] = {}
        for p in self.players:
            index = self._staged.get(p.id)
            verdicts[p.id] = (
                index is not None
                and all(s.id != song.id for s in p.timeline)
                and placement_fits(p.timeline, index, song.year)
            )

        results: List[RoundResult] = []
        for p in self.players:
            if verdicts[p.id]:
                insert_sorted(p.timeline, song)
                p.score = min(p.score + 1, self.winning_score)
            index = self._staged.get(p.id)
            results.append(
                RoundResult(
                    player_id=p.id,
                    placement=index,
                    submitted=index is not None,
                    correct=verdicts[p.id],
                    song=song,
                    score=p.score,
                )
            )

        self.last_results = results
        winner = next((p for p in self.players if p.score >= self.winning_score), None)
        if winner is not None:
            self._advance("finished")
            self.winner_id = winner.id
            self.last_song = song
            self.current_song = None
            logger.info("session %s: %s wins in round %s", self.code, winner.id, self.round)
        else:
            self._advance("reveal")
        self.touch()
        return results

    def next_round(self) -> Optional[Song]:
        self._require_phase("start the next round", "reveal")
        if not self.song_queue:
            self._advance("finished")
            self.last_song = self.current_song
            self.current_song = None
            self.touch()
            logger.info("session %s: song queue exhausted after %s rounds", self.code, self.round)
            return None

        self._advance("playing")
        self.current_song = self._draw_song()
        self.round += 1
        self._clear_round()
        self.touch()
        return self.current_song

    # ---- connectivity ----

    def mark_disconnected(self, connection_id: str) -> Optional[Player]:
        player = self.player_for_connection(connection_id)
        if player is None:
            return None
        player.connected = False
        player.connection_id = None
        self.touch()
        return player

    def mark_reconnected(self, connection_id: str, player_id: str) -> Player:
        player = self.get_player(player_id)
        player.connection_id = connection_id
        player.connected = True
        self.touch()
        return player

    def leaderboard(self) -> List[Player]:
        return sort_leaderboard(self.players)
