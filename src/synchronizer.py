import asyncio
import logging
from datetime import datetime
from enum import StrEnum
from typing import Callable, Optional

from pydantic import BaseModel
from pydantic_core import ValidationError

from cache import CacheStore
from cancellation import CancellationScope, CancellationToken, OperationCancelled
from conf import DEFAULT_SYNC_TIMEOUT_SECONDS, PROGRESS_TTL_SECONDS
from errors import AuthorityRejectedError, SyncError
from models import (
    ProgressRecord,
    ProgressStatus,
    ProgressUpdate,
    apply_update,
    fallback_progress,
)
from services import BackendService
from util import utc_now


def progress_key(session_id: str) -> str:
    return f"progress:{session_id}"


class SyncSource(StrEnum):
    REMOTE = "remote"
    MEMORY = "memory"
    CACHE = "cache"
    FALLBACK = "fallback"
    ECHO = "echo"
    HELD = "held"


class SyncOutcome(BaseModel):
    """Result of a load or update. When persisted is False the record is our best
    local guess and the backend may not know about it."""

    record: ProgressRecord
    persisted: bool
    source: SyncSource
    error: Optional[str] = None


class ProgressSynchronizer:
    """Keeps the participant's progress records in sync with the backend.

    One operation per session at a time: starting a load or an update for a session
    supersedes whatever is still in flight for that same session, and a superseded
    answer is thrown away even if it arrives. A superseded load is aborted. A
    superseded update still reaches the backend, and every later operation for the
    session waits for it before sending its own request, so writes land in order.
    Failures never raise to the caller; loads fall back to what we already know
    and updates echo locally.
    """

    def __init__(
        self,
        backend: BackendService,
        cache: CacheStore,
        timeout_seconds: float = DEFAULT_SYNC_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.backend = backend
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.scope = CancellationScope("progress")
        self._records: dict[str, ProgressRecord] = {}
        self._writes: dict[str, asyncio.Future] = {}

    def current(self, session_id: str) -> ProgressRecord | None:
        return self._records.get(session_id)

    def cancel(self, session_id: str) -> None:
        self.scope.cancel(session_id)

    def cancel_all(self) -> None:
        self.scope.cancel_all()

    def forget(self, session_id: str) -> None:
        self.scope.cancel(session_id)
        self._records.pop(session_id, None)

    async def load(self, session_id: str) -> SyncOutcome:
        """Raises OperationCancelled when a newer operation for the session took over."""
        token = self.scope.begin(session_id, "progress load")
        try:
            await self._settle_writes(session_id, token)
            record = await token.run(
                self.backend.get_progress(session_id), self.timeout_seconds
            )
        except OperationCancelled:
            logging.info(
                f"[ ProgressSynchronizer.load ] Discarding superseded progress load for {session_id}"
            )
            raise
        except TimeoutError:
            return self._known_or_fallback(
                session_id, f"timed out after {self.timeout_seconds} seconds"
            )
        except SyncError as e:
            return self._known_or_fallback(session_id, str(e))
        finally:
            self.scope.finish(token)

        self._store(session_id, record)
        return SyncOutcome(record=record, persisted=True, source=SyncSource.REMOTE)

    async def update(
        self,
        session_id: str,
        status: ProgressStatus | None = None,
        current_stage_id: str | None = None,
        completed_stage_id: str | None = None,
    ) -> SyncOutcome:
        """Raises OperationCancelled when a newer operation for the session took over.
        The request of a superseded update is not aborted, only its answer is dropped."""
        update = ProgressUpdate(
            status=status,
            current_stage_id=current_stage_id,
            completed_stage_id=completed_stage_id,
        )
        if update.is_empty():
            raise ValueError(
                "[ ProgressSynchronizer.update ] An update needs at least one field"
            )

        token = self.scope.begin(session_id, "progress update", abortable=False)
        try:
            await self._settle_writes(session_id, token)

            held = self._records.get(session_id)
            update = self._without_regressions(session_id, held, update)
            if update.is_empty():
                return SyncOutcome(record=held, persisted=True, source=SyncSource.HELD)

            request = asyncio.ensure_future(self.backend.post_progress(session_id, update))
            self._writes[session_id] = request
            request.add_done_callback(
                lambda r: self._write_settled(session_id, r)
            )
            record = await token.run(request, self.timeout_seconds)
        except OperationCancelled as e:
            if isinstance(e.__cause__, SyncError):
                logging.warning(
                    f"[ ProgressSynchronizer.update ] Superseded progress update for {session_id} was not persisted: {e.__cause__}"
                )
            logging.info(
                f"[ ProgressSynchronizer.update ] Discarding superseded progress update for {session_id}"
            )
            raise
        except TimeoutError:
            return self._echo(
                session_id, update, f"timed out after {self.timeout_seconds} seconds"
            )
        except AuthorityRejectedError as e:
            return self._echo(session_id, update, str(e))
        except SyncError as e:
            return self._echo(session_id, update, str(e))
        finally:
            self.scope.finish(token)

        self._store(session_id, record)
        return SyncOutcome(record=record, persisted=True, source=SyncSource.REMOTE)

    async def _settle_writes(self, session_id: str, token: CancellationToken) -> None:
        request = self._writes.get(session_id)
        if request is not None and not request.done():
            await asyncio.wait({request})
        if token.cancelled:
            raise OperationCancelled(token.key, token.label)

    def _write_settled(self, session_id: str, request: asyncio.Future) -> None:
        if self._writes.get(session_id) is request:
            del self._writes[session_id]

    def _without_regressions(
        self, session_id: str, held: ProgressRecord | None, update: ProgressUpdate
    ) -> ProgressUpdate:
        # Completed is absorbing on the backend, the client never asks otherwise
        if held is None or not held.is_completed or update.status is None:
            return update
        logging.info(
            f"[ ProgressSynchronizer._without_regressions ] Session {session_id} is completed, not sending status {update.status}"
        )
        return update.model_copy(update={"status": None})

    def _known_or_fallback(self, session_id: str, reason: str) -> SyncOutcome:
        logging.warning(
            f"[ ProgressSynchronizer.load ] Could not load progress for {session_id}: {reason}"
        )
        held = self._records.get(session_id)
        if held is not None:
            return SyncOutcome(
                record=held, persisted=False, source=SyncSource.MEMORY, error=reason
            )

        cached = self._cached(session_id)
        if cached is not None:
            self._records[session_id] = cached
            return SyncOutcome(
                record=cached, persisted=False, source=SyncSource.CACHE, error=reason
            )

        record = fallback_progress(session_id)
        self._records[session_id] = record
        return SyncOutcome(
            record=record, persisted=False, source=SyncSource.FALLBACK, error=reason
        )

    def _echo(self, session_id: str, update: ProgressUpdate, reason: str) -> SyncOutcome:
        logging.warning(
            f"[ ProgressSynchronizer.update ] Progress update for {session_id} was not persisted: {reason}"
        )
        base = self._records.get(session_id)
        if base is None:
            base = self._cached(session_id) or fallback_progress(session_id)
        record = apply_update(base, update, self.clock())
        # Memory only, the cache keeps what the backend confirmed
        self._records[session_id] = record
        return SyncOutcome(
            record=record, persisted=False, source=SyncSource.ECHO, error=reason
        )

    def _cached(self, session_id: str) -> ProgressRecord | None:
        document = self.cache.get(progress_key(session_id))
        if document is None:
            return None
        try:
            return ProgressRecord.model_validate(document)
        except ValidationError:
            self.cache.remove(progress_key(session_id))
            return None

    def _store(self, session_id: str, record: ProgressRecord) -> None:
        self._records[session_id] = record
        self.cache.set(
            progress_key(session_id),
            record.model_dump(mode="json", by_alias=True),
            PROGRESS_TTL_SECONDS,
        )
