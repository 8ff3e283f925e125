import logging
from dataclasses import dataclass

from tasksync.services.identity import CredentialStore
from tasksync.services.sessions import SessionRegistry
from tasksync.services.task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class ReapReport:
    sessions_expired: int = 0
    sessions_orphaned: int = 0
    credentials_removed: int = 0

    @property
    def total(self) -> int:
        return self.sessions_expired + self.sessions_orphaned + self.credentials_removed


class OrphanReaper:
    """
    Startup sweep of stale records.

    Credentials go first: a registration with neither a live nor an archived
    task file is removed. Sessions are then checked against the surviving
    credentials, so a second run straight after finds nothing to do.
    """

    def __init__(self, credentials: CredentialStore, sessions: SessionRegistry, tasks: TaskStore):
        self.credentials = credentials
        self.sessions = sessions
        self.tasks = tasks

    async def run(self) -> ReapReport:
        logger.info("Running data cleanup...")
        report = ReapReport()

        orphaned_keys = set()
        for owner_key in self.credentials.owner_keys():
            if not await self.tasks.has_data(owner_key):
                orphaned_keys.add(owner_key)
        report.credentials_removed = await self.credentials.remove_many(orphaned_keys)

        expired, orphaned = await self.sessions.sweep(self.credentials.owner_keys())
        report.sessions_expired = expired
        report.sessions_orphaned = orphaned

        if report.total == 0:
            logger.info("No cleanup needed")
        else:
            logger.info(
                f"Removed {expired} expired session(s), {orphaned} orphaned session(s), "
                f"{report.credentials_removed} orphaned credential record(s)"
            )
        return report
