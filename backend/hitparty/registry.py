from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .errors import NotFoundError, StateError
from .game import GameSession
from .models import Player
from .utils import generate_join_code, normalize_code, now_ts

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 100

SessionFactory = Callable[[str, str], GameSession]


@dataclass
class RemovedConnection:
    session: GameSession
    was_host: bool
    player: Optional[Player] = None
    # other connections that were bound to a session torn down with the host
    orphaned: List[str] = field(default_factory=list)


class SessionRegistry:
    """Live sessions keyed by join code, plus the connection -> session map.

    One registry is built at startup and handed to whoever needs it; tests
    build as many independent registries as they like. Table mutations are
    guarded by a single mutex so concurrent create/bind/unbind never race.
    """

    def __init__(
        self,
        *,
        code_length: int = 6,
        session_factory: Optional[SessionFactory] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = now_ts,
    ):
        self._code_length = code_length
        self._factory: SessionFactory = session_factory or (lambda code, host: GameSession(code, host, clock=clock))
        self._rng = rng
        self._clock = clock
        self._sessions: Dict[str, GameSession] = {}
        self._connections: Dict[str, str] = {}  # connection_id -> join code
        self._mutex = threading.RLock()

    def __len__(self) -> int:
        return len(self._sessions)

    def codes(self) -> List[str]:
        with self._mutex:
            return list(self._sessions)

    def create_session(self, host_connection_id: str) -> GameSession:
        with self._mutex:
            if host_connection_id in self._connections:
                raise StateError("This connection already belongs to a session")

            for _ in range(MAX_CODE_ATTEMPTS):
                code = generate_join_code(self._code_length, self._rng)
                if code not in self._sessions:
                    break
            else:
                raise RuntimeError("Could not allocate a unique join code")

            session = self._factory(code, host_connection_id)
            self._sessions[code] = session
            self._connections[host_connection_id] = code

        logger.info("session %s created by %s (%d active)", code, host_connection_id, len(self._sessions))
        return session

    def get_session(self, code: str) -> Optional[GameSession]:
        return self._sessions.get(normalize_code(code))

    def get_session_by_connection(self, connection_id: str) -> Optional[GameSession]:
        with self._mutex:
            code = self._connections.get(connection_id)
            return self._sessions.get(code) if code else None

    def connections_for(self, code: str) -> List[str]:
        code = normalize_code(code)
        with self._mutex:
            return [cid for cid, c in self._connections.items() if c == code]

    def _bind(self, code: str, connection_id: str, *, lobby_only: bool) -> GameSession:
        code = normalize_code(code)
        with self._mutex:
            session = self._sessions.get(code)
            if session is None:
                raise NotFoundError(f"No game with code '{code}'")
            if lobby_only and session.phase != "lobby":
                raise StateError("This game is not accepting new players")
            bound = self._connections.get(connection_id)
            if bound is not None and bound != code:
                raise StateError("This connection already belongs to another game")
            self._connections[connection_id] = code
            return session

    def bind_connection(self, code: str, connection_id: str) -> GameSession:
        return self._bind(code, connection_id, lobby_only=True)

    def rebind_connection(self, code: str, connection_id: str) -> GameSession:
        """Bind a reconnecting connection; unlike a fresh join, any phase will do."""
        return self._bind(code, connection_id, lobby_only=False)

    def unbind_connection(self, connection_id: str) -> Optional[str]:
        with self._mutex:
            return self._connections.pop(connection_id, None)

    def remove_connection(self, connection_id: str) -> Optional[RemovedConnection]:
        with self._mutex:
            code = self._connections.pop(connection_id, None)
            if code is None:
                return None
            session = self._sessions.get(code)
            if session is None:
                return None

            if session.is_host(connection_id):
                orphaned = self.connections_for(code)
                self.delete_session(code)
                logger.info("session %s: host %s left, session deleted", code, connection_id)
                return RemovedConnection(session=session, was_host=True, orphaned=orphaned)

            # players stay on the roster so they can reconnect
            player = session.mark_disconnected(connection_id)
            return RemovedConnection(session=session, was_host=False, player=player)

    def delete_session(self, code: str) -> Optional[GameSession]:
        code = normalize_code(code)
        with self._mutex:
            session = self._sessions.pop(code, None)
            for cid in [cid for cid, c in self._connections.items() if c == code]:
                del self._connections[cid]
        if session is not None:
            logger.info("session %s deleted (%d active)", code, len(self._sessions))
        return session

    def sweep_idle(self, max_idle_sec: float, now: Optional[float] = None) -> List[Tuple[GameSession, List[str]]]:
        """Delete sessions idle for longer than ``max_idle_sec``.

        Returns each removed session with the connections that were bound to it.
        """
        now = self._clock() if now is None else now
        removed: List[Tuple[GameSession, List[str]]] = []
        with self._mutex:
            stale = [s for s in self._sessions.values() if now - s.last_activity > max_idle_sec]
            for s in stale:
                connections = self.connections_for(s.code)
                self.delete_session(s.code)
                removed.append((s, connections))
        if removed:
            logger.info("idle sweep removed %d session(s)", len(removed))
        return removed


def registry_from_settings(settings) -> SessionRegistry:
    def factory(code: str, host_connection_id: str) -> GameSession:
        return GameSession(
            code,
            host_connection_id,
            max_players=settings.MAX_PLAYERS,
            winning_score=settings.WINNING_SCORE,
        )

    return SessionRegistry(code_length=settings.JOIN_CODE_LENGTH, session_factory=factory)
