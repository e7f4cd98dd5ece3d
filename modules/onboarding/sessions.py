"""Session records for members moving through the onboarding flow."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from shared.sheets import onboarding_sessions as sess_sheet
from shared.sheets.async_adapter import arun

log = logging.getLogger("pumpkin.onboarding.sessions")

ACTIVE = "active"
COMPLETED = "completed"
REMOVED = "removed"


def utc_now() -> datetime:
    """Return the current UTC timestamp."""

    return datetime.now(timezone.utc)


@dataclass
class Session:
    channel_id: int
    member_id: int
    step_index: int = 0
    status: str = ACTIVE
    question_message_id: int | None = None
    question_posted_at: datetime | None = None
    updated_at: datetime = field(default_factory=utc_now)
    # In-memory only; never persisted.
    notices: set[str] = field(default_factory=set, repr=False)
    waiter: asyncio.Task | None = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self.status == ACTIVE

    def record_question(
        self,
        index: int,
        *,
        message_id: int | None,
        posted_at: datetime | None = None,
    ) -> None:
        self.step_index = int(index)
        self.question_message_id = message_id
        self.question_posted_at = posted_at or utc_now()
        self.notices.clear()
        self._touch()

    def _touch(self) -> None:
        self.updated_at = utc_now()

    def to_payload(self) -> dict[str, Any]:
        return {
            "user_id": self.member_id,
            "channel_id": self.channel_id,
            "step_index": self.step_index,
            "status": self.status,
            "question_message_id": self.question_message_id,
            "question_posted_at": self.question_posted_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Session":
        return cls(
            channel_id=int(row["channel_id"]),
            member_id=int(row["user_id"]),
            step_index=int(row.get("step_index") or 0),
            status=str(row.get("status") or ACTIVE),
            question_message_id=row.get("question_message_id") or None,
            question_posted_at=row.get("question_posted_at"),
            updated_at=row.get("updated_at") or utc_now(),
        )


class SessionStore:
    """Channel-keyed sessions with per-channel locks and write-through persistence."""

    def __init__(self, *, persist: bool | None = None, max_finished: int = 256) -> None:
        self._sessions: Dict[int, Session] = {}
        self._max_finished = max(0, int(max_finished))
        self._locks: Dict[int, asyncio.Lock] = {}
        self._persist_enabled = sess_sheet.is_enabled() if persist is None else persist
        self._persist_lock: asyncio.Lock | None = None
        self._pending: set[asyncio.Task] = set()

    # --- lookup -----------------------------------------------------------
    def get(self, channel_id: int) -> Optional[Session]:
        return self._sessions.get(int(channel_id))

    def find_by_member(self, member_id: int) -> Optional[Session]:
        for session in self._sessions.values():
            if session.member_id == member_id and session.active:
                return session
        return None

    def active_sessions(self) -> list[Session]:
        return [session for session in self._sessions.values() if session.active]

    def lock_for(self, channel_id: int) -> asyncio.Lock:
        lock = self._locks.get(int(channel_id))
        if lock is None:
            lock = asyncio.Lock()
            self._locks[int(channel_id)] = lock
        return lock

    # --- mutation ---------------------------------------------------------
    def open(self, channel_id: int, member_id: int, *, step_index: int = 0) -> Session:
        session = Session(channel_id=int(channel_id), member_id=int(member_id), step_index=step_index)
        existing = self._sessions.get(session.channel_id)
        if existing is not None:
            self._cancel_waiter(existing)
        self._sessions[session.channel_id] = session
        return session

    def hydrate(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """Load persisted rows without overwriting sessions already in memory."""

        loaded = 0
        for row in rows:
            try:
                session = Session.from_row(row)
            except (KeyError, TypeError, ValueError):
                log.warning("skipping malformed onboarding session row", extra={"row": str(row)[:200]})
                continue
            if session.channel_id in self._sessions:
                continue
            self._sessions[session.channel_id] = session
            loaded += 1
        return loaded

    def record_question(
        self,
        channel_id: int,
        member_id: int,
        index: int,
        *,
        message_id: int | None,
        posted_at: datetime | None = None,
    ) -> Session:
        session = self.get(channel_id)
        if session is None or not session.active:
            session = self.open(channel_id, member_id, step_index=index)
        session.record_question(index, message_id=message_id, posted_at=posted_at)
        self.persist(session)
        return session

    def end(self, channel_id: int, status: str, *, member_id: int | None = None) -> Optional[Session]:
        """Close the session with ``status``; a tombstone is kept so repeats are detectable."""

        session = self.get(channel_id)
        if session is None:
            if member_id is None:
                return None
            session = Session(channel_id=int(channel_id), member_id=int(member_id))
            self._sessions[session.channel_id] = session
        self._cancel_waiter(session)
        if session.status == status:
            return session
        session.status = status
        session._touch()
        self.persist(session)
        self._prune()
        return session

    def _prune(self) -> None:
        # Keep the newest finished sessions as tombstones; drop idle locks nobody owns.
        finished = [s for s in self._sessions.values() if not s.active]
        if len(finished) > self._max_finished:
            finished.sort(key=lambda s: s.updated_at)
            for session in finished[: len(finished) - self._max_finished]:
                del self._sessions[session.channel_id]
        for channel_id, lock in list(self._locks.items()):
            session = self._sessions.get(channel_id)
            if (session is None or not session.active) and not lock.locked():
                del self._locks[channel_id]

    # --- waiters ----------------------------------------------------------
    def attach_waiter(self, channel_id: int, task: asyncio.Task) -> None:
        session = self.get(channel_id)
        if session is None:
            task.cancel()
            return
        self._cancel_waiter(session)
        session.waiter = task

    def _cancel_waiter(self, session: Session) -> None:
        task = session.waiter
        session.waiter = None
        if task is None or task.done():
            return
        # A waiter advancing its own session must not cancel itself.
        if task is asyncio.current_task():
            return
        task.cancel()

    def cancel_all(self) -> None:
        for session in self._sessions.values():
            self._cancel_waiter(session)

    # --- persistence ------------------------------------------------------
    def persist(self, session: Session) -> None:
        if not self._persist_enabled:
            return
        task = asyncio.create_task(self._save(session), name=f"onboarding_session_save:{session.channel_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _save(self, session: Session) -> None:
        if self._persist_lock is None:
            self._persist_lock = asyncio.Lock()
        async with self._persist_lock:
            # Snapshot at write time so queued saves never write stale state.
            payload = session.to_payload()
            try:
                await arun(sess_sheet.save, payload)
            except Exception:
                log.exception("onboarding session persistence failed", extra={"channel_id": session.channel_id})

    async def load_persisted(self) -> int:
        if not self._persist_enabled:
            return 0
        try:
            rows = await arun(sess_sheet.load_active)
        except Exception:
            log.exception("failed to load onboarding sessions from sheet")
            return 0
        return self.hydrate(rows)

    async def flush(self) -> None:
        """Wait for queued sheet writes (shutdown and tests)."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
