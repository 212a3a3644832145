"""
Registry of open staging sessions.

Callers address a session by its handle (a ULID); there is no implicit
"current" session. The application owns one manager on ``app.state``.

Sessions live in memory and each one holds a full baseline snapshot, so
the manager bounds them: Clean sessions idle for longer than
``idle_timeout`` seconds are dropped whenever a new session is opened,
and once ``max_sessions`` are open the least recently used Clean session
makes room. Sessions with pending edits are never dropped.
"""
import time
from typing import Callable, Dict, List

from rbac_admin.core.database.base import generate_ulid
from rbac_admin.core.errors import NotFoundError, SessionBusyError, SessionLimitError
from rbac_admin.features.catalog.catalog import StaticCatalog
from rbac_admin.features.staging.engine import PermissionBackend, SessionStatus, StagingSession
from rbac_admin.utils import get_logger


log = get_logger(__name__)


class StagingSessionManager:

    def __init__(
        self,
        backend: PermissionBackend,
        catalog: StaticCatalog,
        apply_concurrency: int = 8,
        idle_timeout: float = 3600,
        max_sessions: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.catalog = catalog
        self.apply_concurrency = apply_concurrency
        self.idle_timeout = idle_timeout
        self.max_sessions = max_sessions
        self.clock = clock
        self._sessions: Dict[str, StagingSession] = {}
        self._last_used: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def open(self) -> StagingSession:
        """
        Open a session over a fresh baseline.

        Raises:
            SessionLimitError: ``max_sessions`` are open and none is Clean
        """
        self.evict_idle()
        if len(self._sessions) >= self.max_sessions:
            self._evict_least_recent()

        session = await StagingSession.open(
            generate_ulid(),
            self.backend,
            self.catalog,
            apply_concurrency=self.apply_concurrency,
        )
        self._sessions[session.id] = session
        self._last_used[session.id] = self.clock()
        log.info(f"Opened staging session {session.id}")
        return session

    def get(self, session_id: str) -> StagingSession:
        try:
            session = self._sessions[session_id]
        except KeyError:
            raise NotFoundError("Staging session not found", details={"session_id": session_id})
        self._last_used[session_id] = self.clock()
        return session

    def list(self) -> List[StagingSession]:
        return list(self._sessions.values())

    def close(self, session_id: str) -> None:
        session = self.get(session_id)
        if session.status is SessionStatus.APPLYING:
            raise SessionBusyError("Cannot close a session while it is applying", details={"session_id": session_id})
        self._drop(session_id)
        log.info(f"Closed staging session {session_id}")

    def forget_role(self, role_id: str) -> None:
        """Propagate a role deletion to every open session."""
        for session in self._sessions.values():
            session.forget_role(role_id)

    # ------------------------------------------------------------------ #
    # Eviction
    # ------------------------------------------------------------------ #

    def _drop(self, session_id: str) -> None:
        del self._sessions[session_id]
        del self._last_used[session_id]

    def _evictable(self) -> List[str]:
        """Ids of Clean sessions, least recently used first."""
        ids = [sid for sid, s in self._sessions.items() if s.status is SessionStatus.CLEAN]
        return sorted(ids, key=self._last_used.__getitem__)

    def evict_idle(self) -> int:
        """Drop Clean sessions idle past ``idle_timeout``; returns how many."""
        cutoff = self.clock() - self.idle_timeout
        expired = [sid for sid in self._evictable() if self._last_used[sid] <= cutoff]
        for session_id in expired:
            self._drop(session_id)
        if expired:
            log.info(f"Evicted {len(expired)} idle staging sessions")
        return len(expired)

    def _evict_least_recent(self) -> None:
        candidates = self._evictable()
        if not candidates:
            raise SessionLimitError(
                "Too many staging sessions with pending edits; apply, discard or close one first",
                details={"max_sessions": self.max_sessions},
            )
        self._drop(candidates[0])
        log.info(f"Evicted staging session {candidates[0]} to stay under {self.max_sessions} sessions")
