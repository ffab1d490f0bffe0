"""In-memory registry of processing sessions for the HTTP layer.

Sessions never leave process memory: the result is handed out once and
the session is dropped, and finished sessions that nobody collects are
pruned after ``ttl_seconds``.
"""

import asyncio
import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .errors import CleanLeadsError
from .models import CleanResult, SessionSnapshot, SessionStatus

logger = logging.getLogger("cleanleads.session")

SESSION_TTL_SECONDS = 15 * 60


@dataclass
class ProcessingSession:
    session_id: str
    owner: str
    status: SessionStatus = SessionStatus.pending
    progress: float = 0.0
    total_emails: int = 0
    result: Optional[CleanResult] = None
    error: Optional[CleanLeadsError] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    finished_at: float = 0.0

    def on_progress(self, percent: float) -> None:
        # monotonic even if a caller reports out of order
        self.progress = max(self.progress, percent)

    def on_candidates(self, count: int) -> None:
        self.total_emails = count

    def snapshot(self) -> SessionSnapshot:
        snap = SessionSnapshot(
            session_id=self.session_id,
            status=self.status,
            progress=round(self.progress, 2),
            total_emails=self.total_emails,
            verified_emails=math.floor(self.progress / 100 * self.total_emails),
        )
        if self.result is not None:
            snap.verified_emails = self.result.verified_emails
            snap.credits_consumed = self.result.credits_consumed
        if self.error is not None:
            snap.error = self.error.code
            snap.detail = self.error.message
            snap.credits_consumed = getattr(self.error, "credits_consumed", 0)
        return snap


class SessionRegistry:
    """Tracks background processing sessions by id."""

    def __init__(self, ttl_seconds: float = SESSION_TTL_SECONDS):
        self._lock = threading.Lock()
        self._sessions: dict[str, ProcessingSession] = {}
        self._ttl_seconds = ttl_seconds

    def __len__(self) -> int:
        return len(self._sessions)

    def _prune(self, now: float) -> None:
        stale = [
            sid for sid, s in self._sessions.items()
            if s.finished_at and now - s.finished_at > self._ttl_seconds
        ]
        for sid in stale:
            self._sessions.pop(sid, None)

    def start(
        self,
        owner: str,
        run: Callable[[ProcessingSession], Awaitable[CleanResult]],
    ) -> ProcessingSession:
        """Create a session and schedule ``run(session)`` on the running loop."""
        session = ProcessingSession(session_id=uuid.uuid4().hex, owner=owner)
        with self._lock:
            self._prune(time.time())
            self._sessions[session.session_id] = session
        session.task = asyncio.create_task(self._drive(session, run))
        return session

    async def _drive(self, session: ProcessingSession, run) -> None:
        session.status = SessionStatus.running
        try:
            session.result = await run(session)
            session.status = SessionStatus.done
        except CleanLeadsError as e:
            session.error = e
            session.status = SessionStatus.failed
        except Exception as e:
            logger.exception("Session %s crashed", session.session_id)
            session.error = CleanLeadsError(f"Error processing file: {e}")
            session.status = SessionStatus.failed
        finally:
            session.finished_at = time.time()

    def get(self, session_id: str, owner: str) -> Optional[ProcessingSession]:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or session.owner != owner:
            return None
        return session

    def pop(self, session_id: str, owner: str) -> Optional[ProcessingSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.owner != owner:
                return None
            return self._sessions.pop(session_id)

    def cancel(self, session_id: str, owner: str) -> bool:
        session = self.get(session_id, owner)
        if session is None:
            return False
        session.cancel_event.set()
        return True
