import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Callable, TypeVar

from pydantic import ValidationError as SchemaError

from tasksync.core.errors import NotFoundError, StorageError, ValidationError
from tasksync.core.logging_setup import short_key
from tasksync.models import OrderMode, Task, TaskCollection, now_ms
from tasksync.storage.files import DataPaths, atomic_write_json, read_json

logger = logging.getLogger(__name__)

T = TypeVar("T")
ChangeListener = Callable[[str, list[dict]], None]
Mutation = Callable[[TaskCollection], tuple[TaskCollection, T]]


class KeyedLocks:
    """
    One asyncio.Lock per key, alive only while some caller holds or waits for it.

    A key's entry is dropped when its last user leaves, so the table never
    grows with idle owners and a lock in use is never replaced by a new one.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


def parse_collection(raw: Any) -> TaskCollection:
    """Build a collection from either the current object shape or the legacy bare array."""
    if isinstance(raw, list):
        return TaskCollection(tasks=[Task.model_validate(t) for t in raw])
    if isinstance(raw, dict):
        mode = raw.get("orderMode", raw.get("sortMode"))
        return TaskCollection(
            tasks=[Task.model_validate(t) for t in raw.get("tasks") or []],
            order_mode=OrderMode.from_stored(mode),
        )
    raise ValueError(f"unexpected task file shape: {type(raw).__name__}")


class TaskStore:
    """
    Owns every owner's task collection.

    Persistence is debounced:
    - a mutation replaces the write-cache entry immediately, so ``load`` is
      never older than the last accepted mutation
    - it then (re)arms a per-owner timer; a burst of edits inside the window
      collapses to one disk write carrying the newest state
    - ``close`` cancels all timers and writes every cached owner synchronously

    Locking:
    - mutation locks serialize load-modify-store for one owner key
    - write locks serialize disk writes for one owner key
    Collections are never modified in place; each mutation builds a new one.
    """

    def __init__(
        self,
        paths: DataPaths,
        debounce_seconds: float = 0.1,
        on_change: ChangeListener | None = None,
    ):
        self.paths = paths
        self.debounce_seconds = debounce_seconds
        self._on_change = on_change
        self._cache: dict[str, TaskCollection] = {}
        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._inflight: set[asyncio.Task] = set()
        self._mutation_locks = KeyedLocks()
        self._write_locks = KeyedLocks()

        self.stats = {"writes": 0, "write_errors": 0}

    def has_pending_write(self, owner_key: str) -> bool:
        return owner_key in self._pending

    # ---- reads ----

    async def load(self, owner_key: str) -> TaskCollection:
        cached = self._cache.get(owner_key)
        if cached is not None:
            return cached
        return await asyncio.to_thread(self._read_file, owner_key)

    def _read_file(self, owner_key: str) -> TaskCollection:
        path = self.paths.task_file(owner_key)
        try:
            raw = read_json(path)
            if raw is None:
                return TaskCollection()
            return parse_collection(raw)
        except (OSError, ValueError) as e:
            logger.error(f"Task file unreadable for {short_key(owner_key)}: {e}")
            raise StorageError(f"Cannot read {path}: {e}") from e

    async def has_data(self, owner_key: str) -> bool:
        """True if the owner has cached, live or archived task data."""
        if owner_key in self._cache:
            return True
        return await asyncio.to_thread(
            lambda: self.paths.task_file(owner_key).exists() or self.paths.has_archive(owner_key)
        )

    # ---- mutations ----

    async def mutate(self, owner_key: str, fn: Mutation, *, broadcast: bool = True) -> T:
        async with self._mutation_locks.hold(owner_key):
            current = await self.load(owner_key)
            updated, result = fn(current)
            self._cache[owner_key] = updated
            self._schedule_write(owner_key)
            if broadcast:
                self._notify(owner_key, updated)
            return result

    async def add(self, owner_key: str, text: str) -> Task:
        cleaned = text.strip() if isinstance(text, str) else ""
        if not cleaned:
            raise ValidationError("empty text")

        def apply(collection: TaskCollection):
            next_id = max((t.id for t in collection.tasks), default=0) + 1
            task = Task(id=next_id, text=cleaned, created_at=now_ms())
            return collection.model_copy(update={"tasks": [*collection.tasks, task]}), task

        return await self.mutate(owner_key, apply)

    async def update(self, owner_key: str, task_id: int, patch: dict) -> Task:
        changes: dict[str, Any] = {}
        text = patch.get("text")
        if isinstance(text, str):
            text = text.strip()
            if not text:
                raise ValidationError("empty text")
            changes["text"] = text
        for field in ("done", "favorite"):
            if isinstance(patch.get(field), bool):
                changes[field] = patch[field]

        def apply(collection: TaskCollection):
            for index, task in enumerate(collection.tasks):
                if task.id == task_id:
                    updated = task.model_copy(update=changes)
                    tasks = list(collection.tasks)
                    tasks[index] = updated
                    return collection.model_copy(update={"tasks": tasks}), updated
            raise NotFoundError(f"Task with id {task_id} not found")

        return await self.mutate(owner_key, apply)

    async def remove(self, owner_key: str, task_id: int) -> Task:
        def apply(collection: TaskCollection):
            for index, task in enumerate(collection.tasks):
                if task.id == task_id:
                    tasks = collection.tasks[:index] + collection.tasks[index + 1 :]
                    return collection.model_copy(update={"tasks": tasks}), task
            raise NotFoundError(f"Task with id {task_id} not found")

        return await self.mutate(owner_key, apply)

    async def replace_all(self, owner_key: str, new_tasks: Any) -> list[Task]:
        """Bulk undo/import. Ids are taken verbatim from the caller."""
        if not isinstance(new_tasks, list):
            raise ValidationError("not a list")
        try:
            tasks = [Task.model_validate(t) for t in new_tasks]
        except SchemaError as e:
            raise ValidationError(f"invalid task entry: {e.error_count()} error(s)") from None

        def apply(collection: TaskCollection):
            return collection.model_copy(update={"tasks": tasks}), tasks

        return await self.mutate(owner_key, apply)

    async def set_order_mode(self, owner_key: str, mode: Any) -> OrderMode:
        try:
            order_mode = OrderMode(mode)
        except ValueError:
            raise ValidationError("invalid order mode") from None

        def apply(collection: TaskCollection):
            return collection.model_copy(update={"order_mode": order_mode}), order_mode

        return await self.mutate(owner_key, apply, broadcast=False)

    async def create_if_absent(self, owner_key: str) -> None:
        """Give a freshly registered owner an empty task file."""
        async with self._mutation_locks.hold(owner_key):
            if owner_key in self._cache:
                return
            path = self.paths.task_file(owner_key)

            def _create():
                if not path.exists():
                    atomic_write_json(path, TaskCollection().to_disk())

            try:
                await asyncio.to_thread(_create)
            except OSError as e:
                raise StorageError(f"Cannot create {path}: {e}") from e

    async def archive(self, owner_key: str) -> str:
        """Move the owner's task file into the archive directory; returns its new name."""
        async with self._mutation_locks.hold(owner_key):
            self._cancel_timer(owner_key)
            async with self._write_locks.hold(owner_key):
                cached = self._cache.get(owner_key)
                name = await asyncio.to_thread(self._archive_file, owner_key, cached)
                self._cache.pop(owner_key, None)
            logger.info(f"Archived task file for {short_key(owner_key)} as {name}")
            self._notify(owner_key, TaskCollection())
            return name

    def _archive_file(self, owner_key: str, cached: TaskCollection | None) -> str:
        source = self.paths.task_file(owner_key)
        try:
            if cached is not None:
                self._write_file(owner_key, cached)
            if not source.exists():
                raise NotFoundError("No database found to archive")
            dest = self.paths.archive_file(owner_key, now_ms())
            dest.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, dest)
        except OSError as e:
            raise StorageError(f"Cannot archive {source}: {e}") from e
        return dest.name

    # ---- debounced persistence ----

    def _schedule_write(self, owner_key: str) -> None:
        self._cancel_timer(owner_key)
        loop = asyncio.get_running_loop()
        self._pending[owner_key] = loop.call_later(
            self.debounce_seconds, self._start_write, owner_key
        )

    def _cancel_timer(self, owner_key: str) -> None:
        handle = self._pending.pop(owner_key, None)
        if handle is not None:
            handle.cancel()

    def _start_write(self, owner_key: str) -> None:
        self._pending.pop(owner_key, None)
        task = asyncio.get_running_loop().create_task(self._write_owner(owner_key))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _write_owner(self, owner_key: str) -> None:
        async with self._write_locks.hold(owner_key):
            # newest state at the time the write starts, not when it was scheduled
            collection = self._cache.get(owner_key)
            if collection is None:
                return
            try:
                await asyncio.to_thread(self._write_file, owner_key, collection)
            except OSError:
                # entry stays cached; the next mutation reschedules the write
                self.stats["write_errors"] += 1
                logger.exception(f"Task file write failed for {short_key(owner_key)}")
                return
            if self._cache.get(owner_key) is collection and owner_key not in self._pending:
                del self._cache[owner_key]

    def _write_file(self, owner_key: str, collection: TaskCollection) -> None:
        atomic_write_json(self.paths.task_file(owner_key), collection.to_disk())
        self.stats["writes"] += 1
        logger.debug(f"Task file written for {short_key(owner_key)}")

    async def close(self) -> None:
        """Flush every pending owner to disk. Nothing is left scheduled afterwards."""
        for owner_key in list(self._pending):
            self._cancel_timer(owner_key)
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

        flushed = 0
        for owner_key, collection in list(self._cache.items()):
            try:
                self._write_file(owner_key, collection)
            except OSError:
                logger.exception(f"Shutdown flush failed for {short_key(owner_key)}")
                continue
            del self._cache[owner_key]
            flushed += 1
        logger.info(f"Flushed {flushed} task file(s) on shutdown")

    def _notify(self, owner_key: str, collection: TaskCollection) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(owner_key, collection.snapshot())
        except Exception:
            logger.exception(f"Change listener failed for {short_key(owner_key)}")
