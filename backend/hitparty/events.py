from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List

from .utils import now_ts


class EventStore:
    """Keep recent session events in memory so clients can poll via HTTP."""

    def __init__(self, max_events: int = 500, clock: Callable[[], float] = now_ts):
        self._max_events = max_events
        self._clock = clock
        self._events: Dict[str, Deque[dict[str, Any]]] = {}
        self._seq: Dict[str, int] = {}
        self._closed: Dict[str, float] = {}  # session code -> when it ended
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._events)

    async def append(self, session_code: str, payload: dict[str, Any]) -> int:
        """Store a new event for a session and return its sequence number."""

        async with self._lock:
            seq = self._seq.get(session_code, 0) + 1
            self._seq[session_code] = seq
            log = self._events.setdefault(session_code, deque(maxlen=self._max_events))
            log.append({"seq": seq, "timestamp": self._clock(), "payload": payload})
        return seq

    async def list(self, session_code: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events for a session that occur after the given sequence."""

        async with self._lock:
            log = list(self._events.get(session_code, ()))
        if after is not None:
            log = [e for e in log if e["seq"] > after]
        return [dict(e) for e in log[:limit]]

    async def reset(self, session_code: str, payload: dict[str, Any] | None = None) -> None:
        """Clear stored events for a session and emit a marker event.

        Sequence numbers keep increasing across resets so pollers holding an
        ``after`` cursor still see the marker.
        """

        async with self._lock:
            self._events.pop(session_code, None)
            self._closed.pop(session_code, None)
        await self.append(session_code, payload or {"type": "session_reset"})

    async def close(self, session_code: str, payload: dict[str, Any]) -> None:
        """Reset the log of an ended session down to its closing marker."""

        await self.reset(session_code, payload)
        async with self._lock:
            self._closed[session_code] = self._clock()

    async def prune(self, active_codes: Iterable[str], retain_sec: float = 0) -> int:
        """Forget logs of sessions that no longer exist.

        A closed log is kept ``retain_sec`` after its closing marker so
        pollers get a chance to read it.
        """

        keep = set(active_codes)
        now = self._clock()
        async with self._lock:
            gone = [
                code
                for code in self._events
                if code not in keep and now - self._closed.get(code, float("-inf")) >= retain_sec
            ]
            for code in gone:
                self._events.pop(code, None)
                self._seq.pop(code, None)
                self._closed.pop(code, None)
        return len(gone)
