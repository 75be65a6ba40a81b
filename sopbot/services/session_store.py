"""
Session store — per-(user, thread) conversation state.

The in-memory map is authoritative for the running process. Every mutation
re-arms a debounced save that writes the whole map to a JSON file through a
temporary file and os.replace, so a crash mid-write never corrupts it.
"""
import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Callable, Dict, Optional

from cachetools import TTLCache

from sopbot.errors import PersistenceFailure
from sopbot.models import Session, session_key

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Owned, key-addressed session map with TTL expiry and debounced persistence.

    Mutations on one key are serialized by transaction(); different keys
    never wait on each other.
    """

    def __init__(self,
                 path: str,
                 ttl_seconds: float = 3600,
                 save_delay: float = 0.5,
                 feedback_grace_seconds: float = 900,
                 clock: Callable[[], float] = time.time):
        self.path = path
        self.ttl_seconds = ttl_seconds
        self.save_delay = save_delay
        self.clock = clock

        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

        # Log handles of expired sessions, so a late helpfulness vote still lands
        self._expired_handles = TTLCache(maxsize=10_000, ttl=feedback_grace_seconds, timer=clock)

        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._save_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._dirty = False

    # ─── Load / save ─────────────────────────────────────────────────

    def _is_expired(self, session: Session) -> bool:
        return self.clock() - session.updated_at > self.ttl_seconds

    async def load(self) -> int:
        """Load saved sessions, dropping expired ones. A missing file means a fresh start."""
        try:
            raw = await asyncio.to_thread(self._read_file)
        except FileNotFoundError:
            logger.info("No previous sessions file — starting fresh")
            self._sessions = {}
            return 0
        except (OSError, ValueError) as e:
            logger.error(f"Error loading sessions from {self.path}: {e}")
            self._sessions = {}
            return 0

        sessions: Dict[str, Session] = {}
        for key, record in (raw or {}).items():
            try:
                session = Session.model_validate(record)
            except ValueError as e:
                logger.warning(f"Skipping unreadable session {key}: {e}")
                continue
            if not self._is_expired(session):
                sessions[key] = session

        self._sessions = sessions
        logger.info(f"Sessions loaded from {self.path} ({len(sessions)} live)")
        return len(sessions)

    def _read_file(self) -> dict:
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write_file(self, payload: str) -> None:
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp, self.path)

    def _snapshot(self) -> str:
        return json.dumps(
            {key: s.model_dump(mode="json", by_alias=True) for key, s in self._sessions.items()},
            indent=2,
        )

    async def _persist(self, payload: str) -> None:
        try:
            await asyncio.to_thread(self._write_file, payload)
        except OSError as e:
            raise PersistenceFailure(f"Error saving sessions to {self.path}: {e}") from e

    async def save_now(self) -> None:
        """Write the live sessions to disk; failures are logged and leave memory untouched."""
        async with self._write_lock:
            self._prune_expired()
            self._dirty = False
            payload = self._snapshot()
            try:
                await self._persist(payload)
            except PersistenceFailure as e:
                self._dirty = True
                logger.error(str(e))
                return
            logger.debug(f"Saved {len(self._sessions)} sessions to {self.path}")

    def _schedule_save(self) -> None:
        """(Re)arm the debounced save; bursts of mutations coalesce into one write."""
        self._dirty = True
        loop = asyncio.get_running_loop()
        if self._save_handle is not None:
            self._save_handle.cancel()
        self._save_handle = loop.call_later(self.save_delay, self._start_save)

    def _start_save(self) -> None:
        self._save_handle = None
        self._save_task = asyncio.ensure_future(self.save_now())

    async def flush(self) -> None:
        """Cancel any pending timer and write immediately if anything changed."""
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        if self._save_task is not None and not self._save_task.done():
            await self._save_task
        if self._dirty:
            await self.save_now()

    async def close(self) -> None:
        await self.flush()
        logger.info("Session store flushed")

    # ─── Key-addressed access ────────────────────────────────────────

    def _evict(self, key: str) -> None:
        """Drop an expired session, keeping its log handle for late votes."""
        session = self._sessions.pop(key)
        if session.last_log_row_id:
            self._expired_handles[key] = session.last_log_row_id
        logger.info(f"Session {key} expired")

    def _prune_expired(self) -> int:
        """Evict every expired session, including threads nobody returns to."""
        expired = [key for key, session in self._sessions.items() if self._is_expired(session)]
        for key in expired:
            self._evict(key)
        return len(expired)

    def _purge_if_expired(self, key: str) -> None:
        session = self._sessions.get(key)
        if session is None or not self._is_expired(session):
            return
        self._evict(key)
        self._schedule_save()

    def get(self, user_id: str, thread_id: str) -> Session:
        """A copy of the live session, or a fresh idle one (expired sessions are purged first)."""
        key = session_key(user_id, thread_id)
        self._purge_if_expired(key)
        session = self._sessions.get(key)
        if session is None:
            return Session(timestamp=self.clock())
        return session.model_copy(deep=True)

    def put(self, user_id: str, thread_id: str, session: Session) -> Session:
        """Store a session, stamping it with the current time."""
        key = session_key(user_id, thread_id)
        stored = session.model_copy(deep=True, update={"updated_at": self.clock()})
        self._sessions[key] = stored
        self._expired_handles.pop(key, None)
        self._schedule_save()
        return stored.model_copy(deep=True)

    def delete(self, user_id: str, thread_id: str) -> None:
        key = session_key(user_id, thread_id)
        if self._sessions.pop(key, None) is not None:
            self._schedule_save()

    def feedback_handle(self, user_id: str, thread_id: str) -> Optional[str]:
        """Log row to attach a vote to; survives expiry for the grace window."""
        key = session_key(user_id, thread_id)
        session = self._sessions.get(key)
        if session is not None and session.last_log_row_id:
            return session.last_log_row_id
        return self._expired_handles.get(key)

    def __len__(self) -> int:
        return len(self._sessions)

    # ─── Exclusive update path ───────────────────────────────────────

    @asynccontextmanager
    async def _exclusive(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    @asynccontextmanager
    async def transaction(self, user_id: str, thread_id: str):
        """
        Exclusive read-modify-write of one session.

        Yields a SessionTransaction holding a working copy. On normal exit
        the copy is stored and its timestamp refreshed; if the block raises
        or calls ``tx.rollback()``, nothing is written.

        Example:
            async with store.transaction(user, thread) as tx:
                tx.session.lock(document)
        """
        key = session_key(user_id, thread_id)
        async with self._exclusive(key):
            tx = SessionTransaction(self.get(user_id, thread_id))
            yield tx
            if tx.rolled_back:
                logger.debug(f"Session {key} left unchanged")
            else:
                tx.session = self.put(user_id, thread_id, tx.session)


class SessionTransaction:
    """Working copy handed out by SessionStore.transaction()."""

    def __init__(self, session: Session):
        self.session = session
        self.rolled_back = False

    def rollback(self) -> None:
        self.rolled_back = True
