"""
Offline Mutation Queue

Durable, ordered list of mutations the backend has not confirmed yet.
Stored as a JSON array at {data_directory}/{queue_namespace}.json and
guarded by a FileLock, so two code paths (or two processes) touching
the same entry never lose each other's update: every change is a
read-modify-write done under the lock.

Retry semantics (one attempt per call, no automatic backoff loop):
    success          -> entry removed
    NetworkError     -> retry_count + 1, last_error recorded, entry kept
    terminal error   -> entry removed, error re-raised to the caller
    skipped          -> entry untouched (a mutation for the same entity
                        is already in flight)

Entries are replayed through a sender supplied by the caller, which is
the same entry point a live action uses.

Version: 1.0.0
"""

import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Optional, Union

from filelock import FileLock, Timeout
from pydantic import ValidationError as SchemaError

from kot_engine.core.config import get_settings
from kot_engine.exceptions import (
    TERMINAL_ERRORS,
    EngineError,
    MutationNotFound,
    NetworkError,
    QueueLockTimeout,
)
from kot_engine.models import QueuedMutation

logger = logging.getLogger(__name__)

# Returns the backend result, or None when the mutation guard skipped it.
Sender = Callable[[QueuedMutation], Awaitable[Optional[Any]]]


class RetryStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class RetryResult:
    """Outcome of one retry attempt."""
    mutation_id: str
    status: RetryStatus
    retry_count: int = 0
    error: Optional[str] = None
    result: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mutation_id": self.mutation_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "error": self.error,
        }


@dataclass
class RetryReport:
    """Outcome of a retry_all() pass."""
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    rejected: dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.rejected)

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "rejected": self.rejected,
        }


class OfflineMutationQueue:
    """
    File-backed queue of QueuedMutation entries.

    Example:
        >>> queue = OfflineMutationQueue()
        >>> queue.enqueue(QueuedMutation(kind=MutationKind.UPDATE_STATUS, payload={...}))
        >>> result = await queue.retry(entry.id, engine.replay)
        >>> result.status
        <RetryStatus.FAILED: 'failed'>
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        lock_timeout: Optional[float] = None,
    ):
        settings = get_settings()
        if path is None:
            self.path = settings.queue_path
            self.lock_path = settings.queue_lock_path
        else:
            self.path = Path(path)
            self.lock_path = self.path.with_name(f"{self.path.name}.lock")
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.queue_lock_timeout
        self._retrying: set[str] = set()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Offline queue at {self.path}")

    # =========================================================================
    # STORAGE
    # =========================================================================

    @contextmanager
    def _locked(self) -> Iterator[None]:
        lock = FileLock(str(self.lock_path), timeout=self.lock_timeout)
        try:
            with lock:
                yield
        except Timeout as e:
            logger.error(f"Queue lock timeout ({self.lock_timeout}s) on {self.lock_path}")
            raise QueueLockTimeout(f"Queue lock timeout ({self.lock_timeout}s)") from e

    def _load(self) -> list[QueuedMutation]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
            if not isinstance(raw, list):
                raise ValueError("queue file does not hold a list")
            return [QueuedMutation.model_validate(item) for item in raw]
        except (ValueError, SchemaError) as e:
            logger.error(f"Offline queue at {self.path} is unreadable, treating as empty: {e}")
            return []

    def _save(self, entries: list[QueuedMutation]) -> None:
        tmp = self.path.with_name(f"{self.path.name}.tmp")
        data = [entry.model_dump(mode="json") for entry in entries]
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    # =========================================================================
    # QUEUE OPERATIONS
    # =========================================================================

    def enqueue(self, mutation: QueuedMutation) -> QueuedMutation:
        """Append a mutation. An id already queued is left as it is."""
        with self._locked():
            entries = self._load()
            for existing in entries:
                if existing.id == mutation.id:
                    logger.debug(f"Queue: {mutation.id} already queued")
                    return existing
            entries.append(mutation)
            self._save(entries)

        logger.info(
            f"Queue: + {mutation.id} ({mutation.kind.value} {mutation.entity_id}), "
            f"{len(entries)} pending"
        )
        return mutation

    def dequeue(self, mutation_id: str) -> bool:
        """Remove an entry. Returns False when it was not queued."""
        with self._locked():
            entries = self._load()
            remaining = [entry for entry in entries if entry.id != mutation_id]
            if len(remaining) == len(entries):
                return False
            self._save(remaining)

        logger.info(f"Queue: - {mutation_id}, {len(remaining)} pending")
        return True

    def get(self, mutation_id: str) -> Optional[QueuedMutation]:
        with self._locked():
            for entry in self._load():
                if entry.id == mutation_id:
                    return entry
        return None

    def entries(self) -> list[QueuedMutation]:
        """All entries, oldest first."""
        with self._locked():
            return self._load()

    def pending_count(self) -> int:
        return len(self.entries())

    def __len__(self) -> int:
        return self.pending_count()

    def clear(self) -> int:
        """Drop every entry. Returns how many were removed."""
        with self._locked():
            count = len(self._load())
            self._save([])
        logger.info(f"Queue: cleared {count} entr{'y' if count == 1 else 'ies'}")
        return count

    def record_failure(self, mutation_id: str, error: str) -> Optional[QueuedMutation]:
        """Increment retry_count and store the error, atomically."""
        with self._locked():
            entries = self._load()
            updated = None
            for index, entry in enumerate(entries):
                if entry.id == mutation_id:
                    updated = entry.model_copy(update={
                        "retry_count": entry.retry_count + 1,
                        "last_error": error,
                        "updated_at": datetime.now(timezone.utc),
                    })
                    entries[index] = updated
                    break
            if updated is not None:
                self._save(entries)
        return updated

    # =========================================================================
    # RETRY
    # =========================================================================

    def is_retrying(self, mutation_id: str) -> bool:
        return mutation_id in self._retrying

    async def retry(self, mutation_id: str, send: Sender) -> RetryResult:
        """
        Re-attempt one queued mutation once.

        Raises:
            MutationNotFound: No entry with that id
            InvalidTransition / ValidationError / Conflict / AuthorizationError:
                The backend rejected it for good; the entry has been removed
        """
        entry = self.get(mutation_id)
        if entry is None:
            raise MutationNotFound(f"Queued mutation {mutation_id} not found", entity_id=mutation_id)

        if mutation_id in self._retrying:
            logger.debug(f"Queue: {mutation_id} retry already running")
            return RetryResult(mutation_id, RetryStatus.SKIPPED, retry_count=entry.retry_count)

        self._retrying.add(mutation_id)
        try:
            try:
                result = await send(entry)
            except NetworkError as e:
                updated = self.record_failure(mutation_id, e.message)
                count = updated.retry_count if updated else entry.retry_count + 1
                logger.warning(f"Queue: retry of {mutation_id} failed ({e.message}), retry_count={count}")
                return RetryResult(mutation_id, RetryStatus.FAILED, retry_count=count, error=e.message)
            except TERMINAL_ERRORS as e:
                self.dequeue(mutation_id)
                logger.warning(f"Queue: {mutation_id} rejected by backend ({type(e).__name__}), dropped")
                raise

            if result is None:
                return RetryResult(mutation_id, RetryStatus.SKIPPED, retry_count=entry.retry_count)

            self.dequeue(mutation_id)
            logger.info(f"Queue: {mutation_id} synced after {entry.retry_count} failed attempt(s)")
            return RetryResult(
                mutation_id,
                RetryStatus.SUCCEEDED,
                retry_count=entry.retry_count,
                result=result,
            )
        finally:
            self._retrying.discard(mutation_id)

    async def retry_all(self, send: Sender) -> RetryReport:
        """
        One best-effort pass over the queue, oldest first.

        Never raises for individual entries: terminal rejections are
        reported in `rejected` and removed from the queue.
        """
        report = RetryReport()
        for entry in self.entries():
            try:
                result = await self.retry(entry.id, send)
            except MutationNotFound:
                continue
            except EngineError as e:
                if not isinstance(e, TERMINAL_ERRORS):
                    raise
                report.rejected[entry.id] = e.message
                continue

            if result.status is RetryStatus.SUCCEEDED:
                report.succeeded.append(entry.id)
            elif result.status is RetryStatus.FAILED:
                report.failed.append(entry.id)
            else:
                report.skipped.append(entry.id)

        logger.info(
            f"Queue sync: {len(report.succeeded)} synced, {len(report.failed)} failed, "
            f"{len(report.rejected)} rejected, {len(report.skipped)} skipped"
        )
        return report
