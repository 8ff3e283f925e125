import asyncio
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

import bcrypt
from pydantic import ValidationError as SchemaError

from tasksync.core.errors import AuthError, StorageError, ValidationError
from tasksync.core.logging_setup import short_key
from tasksync.models import CredentialRecord, OAuthProfile, now_ms
from tasksync.services.task_store import TaskStore
from tasksync.storage.files import atomic_write_json, read_json

logger = logging.getLogger(__name__)


def derive_owner_key(credential: str) -> str:
    """Fast deterministic one-way hash used only to address an owner's data."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


def oauth_credential(provider: str, provider_user_id: str) -> str:
    return f"{provider}:{provider_user_id}"


def _prehash(password: str) -> bytes:
    # bcrypt only reads 72 bytes; pre-hashing keeps every password length significant
    return hashlib.sha256(password.encode("utf-8")).digest()


def hash_password(password: str, rounds: int = 12) -> str:
    """Slow salted hash used only to prove possession of a password."""
    return bcrypt.hashpw(_prehash(password), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_prehash(password), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


class CredentialStore:
    """Owner key -> credential record, rewritten wholesale on every change."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._records: dict[str, CredentialRecord] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, owner_key: str) -> bool:
        return owner_key in self._records

    def get(self, owner_key: str) -> CredentialRecord | None:
        return self._records.get(owner_key)

    def owner_keys(self) -> set[str]:
        return set(self._records)

    async def load(self) -> None:
        try:
            raw = await asyncio.to_thread(read_json, self.path, {})
            records = {key: CredentialRecord.model_validate(value) for key, value in raw.items()}
        except (OSError, ValueError, AttributeError, SchemaError) as e:
            # starting empty would let anyone re-register over existing data
            raise StorageError(f"Cannot read {self.path}: {e}") from e
        self._records = records
        logger.info(f"Loaded {len(records)} credential record(s) from {self.path}")

    async def _save(self) -> None:
        data = {
            key: record.model_dump(by_alias=True, exclude_none=True)
            for key, record in self._records.items()
        }
        try:
            await asyncio.to_thread(atomic_write_json, self.path, data)
        except OSError as e:
            logger.error(f"Error writing credentials: {e}")
            raise StorageError(f"Cannot write {self.path}: {e}") from e

    async def add_if_absent(self, owner_key: str, record: CredentialRecord) -> bool:
        async with self._lock:
            if owner_key in self._records:
                return False
            self._records[owner_key] = record
            await self._save()
            return True

    async def upsert(self, owner_key: str, **fields) -> bool:
        """Merge metadata into a record, creating it if needed. Returns True if created."""
        async with self._lock:
            existing = self._records.get(owner_key)
            if existing is None:
                self._records[owner_key] = CredentialRecord(**fields)
            else:
                self._records[owner_key] = existing.model_copy(update=fields)
            await self._save()
            return existing is None

    async def remove_many(self, owner_keys: set[str]) -> int:
        async with self._lock:
            removed = [key for key in owner_keys if self._records.pop(key, None) is not None]
            if removed:
                await self._save()
            return len(removed)


@dataclass
class LoginResult:
    owner_key: str
    is_new_owner: bool


class IdentityResolver:
    """Turns a password or an OAuth identity into an owner key, registering on first sight."""

    def __init__(self, credentials: CredentialStore, tasks: TaskStore, bcrypt_rounds: int = 12):
        self.credentials = credentials
        self.tasks = tasks
        self.bcrypt_rounds = bcrypt_rounds

    async def verify_or_register_password(self, raw_password: str | None) -> LoginResult:
        if not raw_password:
            raise ValidationError("Password is required")

        owner_key = derive_owner_key(raw_password)
        record = self.credentials.get(owner_key)
        if record is not None:
            if record.password_hash is None:
                # an OAuth owner; a typed "provider:id" must not unlock it
                raise AuthError("invalid credential")
            valid = await asyncio.to_thread(verify_password, raw_password, record.password_hash)
            if not valid:
                raise AuthError("invalid credential")
            return LoginResult(owner_key=owner_key, is_new_owner=False)

        password_hash = await asyncio.to_thread(hash_password, raw_password, self.bcrypt_rounds)
        created = await self.credentials.add_if_absent(
            owner_key, CredentialRecord(created_at=now_ms(), password_hash=password_hash)
        )
        await self.tasks.create_if_absent(owner_key)
        if created:
            logger.info(f"Registered new password owner {short_key(owner_key)}")
        return LoginResult(owner_key=owner_key, is_new_owner=created)

    async def register_oauth_owner(self, owner_key: str, profile: OAuthProfile) -> bool:
        """Idempotent upsert of OAuth profile metadata. Returns True for a new owner."""
        fields = {"oauth_provider": profile.provider}
        for name in ("email", "name", "picture"):
            value = getattr(profile, name)
            if value is not None:
                fields[name] = value

        created = await self.credentials.upsert(owner_key, **fields)
        await self.tasks.create_if_absent(owner_key)
        if created:
            logger.info(f"Registered new {profile.provider} owner {short_key(owner_key)}")
        return created

    async def login_oauth(self, profile: OAuthProfile) -> LoginResult:
        owner_key = derive_owner_key(oauth_credential(profile.provider, profile.user_id))
        created = await self.register_oauth_owner(owner_key, profile)
        return LoginResult(owner_key=owner_key, is_new_owner=created)
