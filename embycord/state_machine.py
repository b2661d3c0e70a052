"""Per-user conversation state for multi-step flows.

Each Discord user has at most one pending flow (for example "waiting for the
new password of account 12"). Starting another flow replaces the current one.
Entries older than the TTL read as idle and are dropped by ``purge_expired``,
which the bot runs every five minutes.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from embycord.models import ConversationState

DEFAULT_TTL_SECONDS = 10 * 60


@dataclass
class _Entry:
    state: ConversationState
    payload: Dict[str, Any] = field(default_factory=dict)
    updated_at: float = 0.0


class StateMachine:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, _Entry] = {}
        self.logger = logging.getLogger(self.__class__.__name__)

    def _is_stale(self, entry: _Entry, now: float) -> bool:
        return now - entry.updated_at > self.ttl_seconds

    def set_state(
        self,
        principal_id: str,
        state: ConversationState,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        if state == ConversationState.IDLE:
            self.clear_state(principal_id)
            return
        with self._lock:
            self._entries[principal_id] = _Entry(
                state=state, payload=dict(payload or {}), updated_at=self._clock()
            )
        self.logger.debug(f"State of {principal_id} set to {state.value}")

    def get_state(self, principal_id: str) -> Tuple[ConversationState, Dict[str, Any]]:
        """Current state and a copy of its payload; idle when absent or stale."""
        with self._lock:
            entry = self._entries.get(principal_id)
            if entry is None:
                return ConversationState.IDLE, {}
            if self._is_stale(entry, self._clock()):
                del self._entries[principal_id]
                return ConversationState.IDLE, {}
            return entry.state, dict(entry.payload)

    def clear_state(self, principal_id: str) -> None:
        with self._lock:
            self._entries.pop(principal_id, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [
                principal_id
                for principal_id, entry in self._entries.items()
                if self._is_stale(entry, now)
            ]
            for principal_id in stale:
                del self._entries[principal_id]
        if stale:
            self.logger.debug(f"Purged {len(stale)} stale conversation states")
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
