"""Session registry — per-client admission counts and the live-session map.

One registry object is created by the app and injected into the accept
path.  ``admit()`` hands back an ``Admission`` ticket whose ``release()`` is
idempotent, so a normal close racing an error close decrements the count
exactly once.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any

from voicepipe.constants import DEFAULT_MAX_CONNECTIONS_PER_CLIENT

logger = logging.getLogger(__name__)


class Admission:
    """Proof of one admitted connection. Release it once; extra calls are no-ops."""

    def __init__(self, registry: SessionRegistry, client_id: str) -> None:
        self._registry = registry
        self.client_id = client_id
        self._released = False
        self._lock = Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Return the slot. Returns True only for the call that actually released it."""
        with self._lock:
            if self._released:
                return False
            self._released = True
        self._registry.release(self.client_id)
        return True


class SessionRegistry:
    """Thread-safe map of client identity → open connection count.

    Usage:
        registry = SessionRegistry(max_per_client=3)
        ticket = registry.admit("10.0.0.1")   # -> Admission, or None when full
        ...
        ticket.release()
    """

    def __init__(self, max_per_client: int = DEFAULT_MAX_CONNECTIONS_PER_CLIENT) -> None:
        self.max_per_client = max_per_client
        self._lock = Lock()
        self._counts: dict[str, int] = {}
        self._sessions: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def admit(self, client_id: str) -> Admission | None:
        """Reserve a slot for *client_id*, or return None when it is at the cap."""
        with self._lock:
            current = self._counts.get(client_id, 0)
            if current >= self.max_per_client:
                logger.warning(
                    "[Registry] Denied %s: %d/%d connections open.",
                    client_id, current, self.max_per_client,
                )
                return None
            self._counts[client_id] = current + 1
        logger.debug("[Registry] Admitted %s (%d open).", client_id, current + 1)
        return Admission(self, client_id)

    def release(self, client_id: str) -> None:
        """Decrement *client_id*'s count; drop the entry at zero. Never goes negative."""
        with self._lock:
            current = self._counts.get(client_id, 0)
            if current <= 1:
                self._counts.pop(client_id, None)
            else:
                self._counts[client_id] = current - 1

    def count(self, client_id: str) -> int:
        with self._lock:
            return self._counts.get(client_id, 0)

    @property
    def client_count(self) -> int:
        """Number of client identities holding at least one connection."""
        with self._lock:
            return len(self._counts)

    # ------------------------------------------------------------------
    # Live sessions
    # ------------------------------------------------------------------

    def register(self, session_id: str, session: Any) -> None:
        with self._lock:
            self._sessions[session_id] = session

    def unregister(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> Any | None:
        with self._lock:
            return self._sessions.get(session_id)

    def active_sessions(self) -> list[str]:
        with self._lock:
            return list(self._sessions)
