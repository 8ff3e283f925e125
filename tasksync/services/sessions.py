import asyncio
import logging
import secrets
import time
from pathlib import Path
from typing import Callable

from pydantic import ValidationError as SchemaError

from tasksync.core.errors import AuthError, StorageError
from tasksync.core.logging_setup import short_key
from tasksync.models import Session
from tasksync.storage.files import atomic_write_json, read_json

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Bearer token -> session, persisted wholesale on every mutation.

    Sessions older than ``max_age_seconds`` are rejected and dropped the
    first time they are presented. All mutations share one lock.
    """

    def __init__(
        self,
        path: Path,
        max_age_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.max_age_ms = max_age_seconds * 1000
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    def _now(self) -> int:
        return int(self._clock() * 1000)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, token: str) -> bool:
        return token in self._sessions

    def is_expired(self, session: Session) -> bool:
        return session.age_ms(self._now()) > self.max_age_ms

    async def load(self) -> None:
        try:
            raw = await asyncio.to_thread(read_json, self.path, {})
        except (OSError, ValueError) as e:
            logger.error(f"Error loading sessions, starting empty: {e}")
            raw = {}

        # legacy files hold a list of [token, {passwordHash, createdAt}] pairs
        if isinstance(raw, dict):
            entries = list(raw.items())
        elif isinstance(raw, list):
            entries = raw
        else:
            logger.error(f"Unexpected sessions file shape {type(raw).__name__}, starting empty")
            entries = []

        sessions = {}
        skipped = 0
        for entry in entries:
            try:
                token, data = entry
                owner_key = data.get("ownerKey") or data.get("passwordHash")
                session = Session(
                    token=token, owner_key=owner_key, created_at=data.get("createdAt", 0)
                )
            except (AttributeError, TypeError, ValueError, SchemaError):
                skipped += 1
                continue
            sessions[session.token] = session
        if skipped:
            logger.warning(f"Skipped {skipped} malformed session entries in {self.path}")
        self._sessions = sessions
        logger.info(f"Loaded {len(sessions)} session(s) from {self.path}")

    async def _save(self) -> None:
        data = {token: s.model_dump(by_alias=True) for token, s in self._sessions.items()}
        try:
            await asyncio.to_thread(atomic_write_json, self.path, data)
        except OSError as e:
            logger.error(f"Error saving sessions: {e}")
            raise StorageError(f"Cannot write {self.path}: {e}") from e

    async def create(self, owner_key: str) -> str:
        token = secrets.token_hex(32)
        async with self._lock:
            self._sessions[token] = Session(token=token, owner_key=owner_key, created_at=self._now())
            await self._save()
        logger.info(f"Session created for {short_key(owner_key)}")
        return token

    async def resolve(self, token: str | None) -> Session:
        session = self._sessions.get(token) if token else None
        if session is None:
            raise AuthError("missing")
        if self.is_expired(session):
            async with self._lock:
                if self._sessions.pop(token, None) is not None:
                    await self._save()
            raise AuthError("expired")
        return session

    async def destroy(self, token: str | None) -> None:
        if not token:
            return
        async with self._lock:
            if self._sessions.pop(token, None) is None:
                return
            await self._save()

    async def sweep(self, valid_owner_keys: set[str]) -> tuple[int, int]:
        """Drop expired sessions and sessions whose owner has no credential record.

        Returns (expired, orphaned). The file is only rewritten when something was removed.
        """
        expired = orphaned = 0
        async with self._lock:
            for token, session in list(self._sessions.items()):
                if self.is_expired(session):
                    expired += 1
                elif session.owner_key not in valid_owner_keys:
                    orphaned += 1
                else:
                    continue
                del self._sessions[token]
            if expired or orphaned:
                await self._save()
        return expired, orphaned
