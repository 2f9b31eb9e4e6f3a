from __future__ import annotations

import asyncio
import base64
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Set, assert_never

from .config import Settings
from .errors import NotFoundError, NotHostError, StateError, ValidationError
from .events import EventStore
from .game import GameSession
from .models import Player, Song, YearRange
from .narration import NarrationContext, NarrationProvider, NullNarrator
from .registry import SessionRegistry
from .schemas import (
    Command,
    ConfirmPreferencesIn,
    CreateSessionIn,
    EndSessionIn,
    JoinSessionIn,
    KickPlayerIn,
    NextRoundIn,
    RejoinSessionIn,
    RevealResultsIn,
    StartGameIn,
    SubmitPlacementIn,
    build_state,
)
from .songs import SongProvider, StaticSongProvider, select_songs
from .utils import normalize_code

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, connection_id: str, payload: Dict[str, Any]) -> None:
        ...


class GameService:
    """Routes commands from connections to the session they belong to.

    Mutations of one session are serialized by a per-session lock and the
    resulting broadcast goes out before the lock is released, so every
    client sees updates in the order they were applied.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        notifier: Notifier,
        *,
        settings: Settings,
        song_provider: Optional[SongProvider] = None,
        narrator: Optional[NarrationProvider] = None,
        events: Optional[EventStore] = None,
    ):
        self.registry = registry
        self.notifier = notifier
        self.settings = settings
        self.fallback_songs = StaticSongProvider()
        self.song_provider = song_provider or self.fallback_songs
        self.narrator = narrator or NullNarrator()
        self.events = events or EventStore()
        self.locks: Dict[str, asyncio.Lock] = {}
        self._narrations: Set[asyncio.Task] = set()

    def _lock(self, code: str) -> asyncio.Lock:
        self.locks.setdefault(code, asyncio.Lock())
        return self.locks[code]

    @asynccontextmanager
    async def _guard(self, session: GameSession) -> AsyncIterator[GameSession]:
        """Hold the session lock, failing if the session ended while we waited for it."""
        async with self._lock(session.code):
            if self.registry.get_session(session.code) is not session:
                raise NotFoundError("This game has ended")
            yield session

    @property
    def default_range(self) -> YearRange:
        return YearRange(min=self.settings.DEFAULT_START_YEAR_MIN, max=self.settings.DEFAULT_START_YEAR_MAX)

    # ---- lookups ----

    def _session_for(self, connection_id: str) -> GameSession:
        session = self.registry.get_session_by_connection(connection_id)
        if session is None:
            raise NotFoundError("You are not part of a game")
        return session

    def _host_session(self, connection_id: str, action: str) -> GameSession:
        session = self._session_for(connection_id)
        if not session.is_host(connection_id):
            raise NotHostError(f"Only the host can {action}")
        return session

    def _player_for(self, session: GameSession, connection_id: str) -> Player:
        player = session.player_for_connection(connection_id)
        if player is None:
            raise NotFoundError("You are not a player in this game")
        return player

    def _existing(self, code: str) -> GameSession:
        session = self.registry.get_session(code)
        if session is None:
            raise NotFoundError(f"No game with code '{normalize_code(code)}'")
        return session

    # ---- dispatch ----

    async def handle(self, connection_id: str, command: Command) -> None:
        if isinstance(command, CreateSessionIn):
            await self.create_session(connection_id)
        elif isinstance(command, ConfirmPreferencesIn):
            await self.confirm_preferences(
                connection_id, command.text, command.songs, command.start_year_range
            )
        elif isinstance(command, JoinSessionIn):
            await self.join_session(
                connection_id,
                command.code,
                command.name,
                avatar=command.avatar,
                stage_name=command.stage_name,
            )
        elif isinstance(command, RejoinSessionIn):
            await self.rejoin_session(connection_id, command.code, command.player_id)
        elif isinstance(command, StartGameIn):
            await self.start_game(connection_id)
        elif isinstance(command, SubmitPlacementIn):
            await self.submit_placement(connection_id, command.index)
        elif isinstance(command, RevealResultsIn):
            await self.reveal_results(connection_id)
        elif isinstance(command, NextRoundIn):
            await self.next_round(connection_id)
        elif isinstance(command, KickPlayerIn):
            await self.kick_player(connection_id, command.player_id)
        elif isinstance(command, EndSessionIn):
            await self.end_session(connection_id)
        else:
            assert_never(command)

    # ---- commands ----

    async def create_session(self, connection_id: str) -> GameSession:
        session = self.registry.create_session(connection_id)
        async with self._lock(session.code):
            await self.events.reset(session.code)
            await self.send(
                connection_id,
                {"type": "session_created", "code": session.code, "phase": session.phase},
            )
            await self.broadcast_state(session)
        return session

    async def confirm_preferences(
        self,
        connection_id: str,
        text: str,
        songs: Optional[List[Song]] = None,
        start_year_range: Optional[YearRange] = None,
    ) -> None:
        session = self._host_session(connection_id, "confirm preferences")
        if session.phase != "setup":
            raise StateError(f"Cannot confirm preferences while the game is in '{session.phase}'")
        if not (text or "").strip():
            raise ValidationError("Music preference must not be empty")
        code = session.code

        if songs is None:
            # may take a while; the session can change or vanish meanwhile
            selection = await select_songs(
                self.song_provider,
                text,
                fallback=self.fallback_songs,
                default_range=self.default_range,
                min_year=self.settings.SONG_MIN_YEAR,
                target_count=self.settings.SONG_TARGET_COUNT,
            )
            songs = selection.songs
            year_range = start_year_range or selection.start_year_range or self.default_range
        else:
            year_range = start_year_range or self.default_range

        if self.registry.get_session(code) is not session:
            logger.warning("session %s ended while songs were selected, discarding result", code)
            return
        async with self._lock(code):
            if self.registry.get_session(code) is not session or session.phase != "setup":
                logger.warning("session %s changed while songs were selected, discarding result", code)
                return
            session.confirm_preferences(text, songs, year_range)
            logger.info("session %s: %d songs queued for %r", code, session.songs_remaining, session.preference)
            await self.broadcast_state(session)

    async def join_session(
        self,
        connection_id: str,
        code: str,
        name: str,
        *,
        avatar: Optional[str] = None,
        stage_name: Optional[str] = None,
    ) -> Player:
        session = self._existing(code)
        if session.is_host(connection_id):
            raise ValidationError("The host cannot join as a player")

        async with self._guard(session):
            if session.player_for_connection(connection_id) is not None:
                raise StateError("You already joined this game")
            was_bound = self.registry.get_session_by_connection(connection_id) is not None
            self.registry.bind_connection(session.code, connection_id)
            try:
                player = session.add_player(
                    name, avatar, stage_name=stage_name, connection_id=connection_id
                )
            except Exception:
                if not was_bound:
                    self.registry.unbind_connection(connection_id)
                raise

            await self.send(connection_id, {"type": "joined", "code": session.code, "player_id": player.id})
            await self.broadcast_state(session)
        return player

    async def rejoin_session(self, connection_id: str, code: str, player_id: str) -> Player:
        session = self._existing(code)
        if session.is_host(connection_id):
            raise ValidationError("The host cannot rejoin as a player")
        async with self._guard(session):
            player = session.get_player(player_id)
            current = session.player_for_connection(connection_id)
            if current is not None and current is not player:
                raise StateError("This connection already plays as someone else")
            previous = player.connection_id
            self.registry.rebind_connection(session.code, connection_id)
            if previous and previous != connection_id:
                self.registry.unbind_connection(previous)
            session.mark_reconnected(connection_id, player_id)
            logger.info("session %s: player %s reconnected", session.code, player_id)

            await self.send(connection_id, {"type": "joined", "code": session.code, "player_id": player.id})
            await self.broadcast_state(session)
        return player

    async def start_game(self, connection_id: str) -> None:
        session = self._host_session(connection_id, "start the game")
        async with self._guard(session):
            session.start_game()
            await self.broadcast_state(session)

    async def submit_placement(self, connection_id: str, index: int) -> None:
        session = self._session_for(connection_id)
        async with self._guard(session):
            player = self._player_for(session, connection_id)
            session.submit_placement(player.id, index)
            await self.send(
                connection_id,
                {"type": "placement_accepted", "round": session.round, "index": index},
            )
            # only the host learns who is ready before the reveal
            await self.send_state(session, session.host_connection_id)

    async def reveal_results(self, connection_id: str) -> None:
        session = self._host_session(connection_id, "reveal results")
        async with self._guard(session):
            results = session.reveal_results()
            payload = {"type": "round_results", "results": [r.model_dump(mode="json") for r in results]}
            await self.broadcast_state(session, payload)

            song = results[0].song if results else (session.current_song or session.last_song)
            if song is not None:
                winner = session.get_player(session.winner_id) if session.winner_id else None
                self._schedule_narration(session, song, winner.name if winner else None)

    async def next_round(self, connection_id: str) -> None:
        session = self._host_session(connection_id, "start the next round")
        async with self._guard(session):
            song = session.next_round()
            await self.broadcast_state(session)
            if song is None and session.last_song is not None:
                self._schedule_narration(session, session.last_song)

    async def kick_player(self, connection_id: str, player_id: str) -> None:
        session = self._host_session(connection_id, "remove players")
        async with self._guard(session):
            player = session.remove_player(player_id)
            logger.info("session %s: host removed player %s", session.code, player_id)
            if player.connection_id:
                self.registry.unbind_connection(player.connection_id)
                await self.send(player.connection_id, {"type": "kicked", "code": session.code})
            await self.broadcast_state(session)

    async def end_session(self, connection_id: str) -> None:
        session = self._host_session(connection_id, "end the game")
        async with self._guard(session):
            connections = self.registry.connections_for(session.code)
            self.registry.delete_session(session.code)
            await self._teardown(session, connections, "ended_by_host")

    # ---- connection lifecycle ----

    async def disconnect(self, connection_id: str) -> None:
        session = self.registry.get_session_by_connection(connection_id)
        if session is None:
            return
        async with self._lock(session.code):
            removed = self.registry.remove_connection(connection_id)
            if removed is None:
                return
            if removed.was_host:
                await self._teardown(removed.session, removed.orphaned, "host_left")
            elif removed.player is not None:
                logger.info("session %s: player %s disconnected", session.code, removed.player.id)
                await self.broadcast_state(session)

    async def sweep(self) -> int:
        """Drop idle sessions and the event logs of sessions already gone.

        Returns the number of idle sessions ended.
        """
        removed = []
        max_idle = self.settings.SESSION_IDLE_TIMEOUT_SEC
        if max_idle > 0:
            removed = self.registry.sweep_idle(max_idle)
        for session, connections in removed:
            async with self._lock(session.code):
                await self._teardown(session, connections, "idle")
        pruned = await self.events.prune(self.registry.codes(), retain_sec=self.settings.EVENT_LOG_RETENTION_SEC)
        if pruned:
            logger.debug("pruned event logs of %d ended sessions", pruned)
        return len(removed)

    async def _teardown(self, session: GameSession, connections: List[str], reason: str) -> None:
        payload = {"type": "session_ended", "code": session.code, "reason": reason}
        for cid in connections:
            await self.send(cid, payload)
        await self.events.close(session.code, payload)
        self.locks.pop(session.code, None)
        logger.info("session %s ended (%s)", session.code, reason)

    # ---- outbound ----

    async def send(self, connection_id: str, payload: Dict[str, Any]) -> None:
        await self.notifier.send(connection_id, payload)

    async def send_state(self, session: GameSession, connection_id: str) -> None:
        state = build_state(session, connection_id).model_dump(mode="json")
        await self.send(connection_id, {"type": "session_state", "state": state})

    async def broadcast_state(self, session: GameSession, payload: Optional[Dict[str, Any]] = None) -> None:
        """Log the public view for pollers, then send each connection its own view."""
        base = payload or {"type": "session_state"}
        await self.events.append(
            session.code, {**base, "state": build_state(session).model_dump(mode="json")}
        )
        for cid in self.registry.connections_for(session.code):
            state = build_state(session, cid).model_dump(mode="json")
            await self.send(cid, {**base, "state": state})

    # ---- narration ----

    def _schedule_narration(self, session: GameSession, song: Song, winner_name: Optional[str] = None) -> None:
        if isinstance(self.narrator, NullNarrator):
            return
        context = NarrationContext(
            session_code=session.code,
            round=session.round,
            finished=session.phase == "finished",
            winner_name=winner_name,
        )
        task = asyncio.create_task(self._narrate(session, song, context))
        self._narrations.add(task)
        task.add_done_callback(self._narrations.discard)

    async def _narrate(self, session: GameSession, song: Song, context: NarrationContext) -> None:
        try:
            audio = await self.narrator.narrate(song, context)
        except Exception:
            logger.exception("narration for session %s round %s failed", session.code, context.round)
            return
        if not audio:
            return
        if self.registry.get_session(session.code) is not session:
            return
        async with self._lock(session.code):
            if self.registry.get_session(session.code) is not session or session.round != context.round:
                logger.info("session %s moved on, dropping narration for round %s", session.code, context.round)
                return
            payload = {
                "type": "narration",
                "round": context.round,
                "audio": base64.b64encode(audio).decode("ascii"),
                "mime": "audio/mpeg",
            }
            for cid in self.registry.connections_for(session.code):
                await self.send(cid, payload)

    async def wait_for_narrations(self) -> None:
        if self._narrations:
            await asyncio.gather(*list(self._narrations))
