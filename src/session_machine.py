import asyncio
import logging
import traceback
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel

from cancellation import CancellationScope, OperationCancelled
from conf import AUTO_ADVANCE_GRACE_SECONDS, TIMER_TICK_SECONDS
from errors import MalformedResponseError, SyncError
from fetcher import ResilientFetcher
from gates import StageGate
from models import (
    IMPLICIT_COMPLETION_KINDS,
    ProgressRecord,
    ProgressStatus,
    Session,
    Stage,
    StageKind,
)
from synchronizer import ProgressSynchronizer, SyncOutcome
from timing import StageTimer


class MachineState(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    COMPLETED = "completed"
    ERROR = "error"


class Mode(StrEnum):
    PARTICIPANT = "participant"
    # Researchers previewing a session may step backwards
    INSPECTION = "inspection"


class AdvanceResult(StrEnum):
    ADVANCED = "advanced"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    IGNORED = "ignored"


class MachineSnapshot(BaseModel):
    state: MachineState
    mode: Mode
    session_id: Optional[str] = None
    session_name: Optional[str] = None
    current_index: int = 0
    stage_count: int = 0
    current_stage: Optional[Stage] = None
    time_remaining: int = 0
    progress_percentage: int = 0
    is_transitioning: bool = False
    load_error: Optional[str] = None
    progress: Optional[ProgressRecord] = None
    progress_persisted: bool = True


class SessionStateMachine:
    """Drives one participant through the stages of a session.

    Owns the stage list, the pointer into it and the countdown of the current stage.
    Progress is never written here directly: every transition goes through the
    ProgressSynchronizer, which also holds the record this machine reads back.

    Invariants:
        - 0 <= current_index < len(session.stages) whenever a session is loaded
        - at most one advance() is in flight (concurrent calls are ignored)
        - the timer and the auto-advance grace belong to the current stage only and
          are released on every stage change and on close()
    """

    def __init__(
        self,
        fetcher: ResilientFetcher,
        synchronizer: ProgressSynchronizer,
        mode: Mode = Mode.PARTICIPANT,
        tick_seconds: float = TIMER_TICK_SECONDS,
        auto_advance_grace_seconds: float = AUTO_ADVANCE_GRACE_SECONDS,
        prefetch: bool = True,
    ) -> None:
        self.fetcher = fetcher
        self.synchronizer = synchronizer
        self.mode = mode
        self.tick_seconds = tick_seconds
        self.auto_advance_grace_seconds = auto_advance_grace_seconds
        self.prefetch = prefetch

        self.session: Session | None = None
        self.state = MachineState.IDLE
        self.current_index = 0
        self.load_error: str | None = None
        self.last_sync: SyncOutcome | None = None

        self._timer: StageTimer | None = None
        self._auto_advance_task: asyncio.Task | None = None
        self._gates: dict[str, StageGate] = {}
        self._transitioning = False
        self._generation = 0
        self._loading_id: str | None = None
        self._scope = CancellationScope("session")

    # ==============================================================================
    # Read side

    @property
    def current_stage(self) -> Stage | None:
        if self.session is None:
            return None
        return self.session.stages[self.current_index]

    @property
    def progress(self) -> ProgressRecord | None:
        if self.session is None:
            return None
        return self.synchronizer.current(self.session.id)

    @property
    def time_remaining(self) -> int:
        if self._timer is None or self.state == MachineState.COMPLETED:
            return 0
        return self._timer.remaining

    @property
    def progress_percentage(self) -> int:
        if self.session is None:
            return 0
        return round((self.current_index + 1) / len(self.session.stages) * 100)

    @property
    def is_transitioning(self) -> bool:
        return self._transitioning

    def snapshot(self) -> MachineSnapshot:
        return MachineSnapshot(
            state=self.state,
            mode=self.mode,
            session_id=None if self.session is None else self.session.id,
            session_name=None if self.session is None else self.session.name,
            current_index=self.current_index,
            stage_count=0 if self.session is None else len(self.session.stages),
            current_stage=self.current_stage,
            time_remaining=self.time_remaining,
            progress_percentage=self.progress_percentage,
            is_transitioning=self._transitioning,
            load_error=self.load_error,
            progress=self.progress,
            progress_persisted=True if self.last_sync is None else self.last_sync.persisted,
        )

    # ==============================================================================
    # Gates

    def attach_gate(self, stage_id: str, gate: StageGate) -> None:
        self._gates[stage_id] = gate

    def detach_gate(self, stage_id: str) -> None:
        self._gates.pop(stage_id, None)

    def gate_for(self, stage_id: str) -> StageGate | None:
        return self._gates.get(stage_id)

    # ==============================================================================
    # Transitions

    async def load_session(self, session_id: str, bypass_cache: bool = False) -> bool:
        """Loads the session and the participant's progress, positions the pointer
        and starts the timer.

        Returns False when the load failed (state becomes ERROR, see load_error) or
        when a newer load/close superseded it (state untouched by this call).
        """
        self._generation += 1
        generation = self._generation

        self._release_stage()
        for owned_id in self._owned_ids() - {session_id}:
            self._cancel_owned(owned_id)
        self._loading_id = session_id

        self.state = MachineState.LOADING
        self.load_error = None
        logging.info(f"[ SessionStateMachine.load_session ] Loading session {session_id}")

        fetch_token = self._scope.begin("session", "session load")
        try:
            session_result, progress_result = await asyncio.gather(
                fetch_token.run(
                    self.fetcher.get_session(session_id, bypass_cache=bypass_cache)
                ),
                self.synchronizer.load(session_id),
                return_exceptions=True,
            )
        finally:
            self._scope.finish(fetch_token)

        if generation != self._generation:
            logging.info(
                f"[ SessionStateMachine.load_session ] Load of {session_id} was superseded"
            )
            return False
        self._loading_id = None

        for result in (session_result, progress_result):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result

        if isinstance(session_result, OperationCancelled) or isinstance(
            progress_result, OperationCancelled
        ):
            logging.info(
                f"[ SessionStateMachine.load_session ] Load of {session_id} was cancelled"
            )
            self.state = MachineState.IDLE
            return False

        if isinstance(session_result, Exception):
            return self._fail_load(session_id, session_result)
        if isinstance(progress_result, Exception):
            raise progress_result

        session: Session = session_result
        outcome: SyncOutcome = progress_result
        self.session = session
        self.last_sync = outcome
        self._gates = {}

        record = outcome.record
        index = session.index_of(record.current_stage_id)

        if record.is_completed:
            # A finished session is never started over
            self._enter_stage(session.last_index if index is None else index, start_timer=False)
            self.state = MachineState.COMPLETED
            logging.info(
                f"[ SessionStateMachine.load_session ] Session {session_id} was already completed"
            )
            return True

        self._enter_stage(0 if index is None else index)
        self.state = MachineState.READY

        if record.status == ProgressStatus.NOT_STARTED:
            await self._sync(
                generation,
                status=ProgressStatus.IN_PROGRESS,
                current_stage_id=self.current_stage.id,
            )

        if generation != self._generation:
            return False

        if self.prefetch:
            self.fetcher.schedule_prefetch(session)

        logging.info(
            f"[ SessionStateMachine.load_session ] Session {session_id} loaded at stage {self.current_index}"
        )
        return True

    def _fail_load(self, session_id: str, error: Exception) -> bool:
        if isinstance(error, MalformedResponseError):
            reason = f"Invalid session data: {error}"
        elif isinstance(error, SyncError):
            reason = str(error)
        else:
            logging.error(
                f"[ SessionStateMachine.load_session ] Unexpected error: {''.join(traceback.format_exception(error))}"
            )
            reason = f"Unexpected error: {error!r}"

        logging.error(
            f"[ SessionStateMachine.load_session ] Failed to load session {session_id}: {reason}"
        )
        self.session = None
        self.current_index = 0
        self.load_error = reason
        self.state = MachineState.ERROR
        return False

    async def advance(self) -> AdvanceResult:
        """Moves to the next stage, or completes the session on the last one."""
        if self.session is None or self.state != MachineState.READY:
            return AdvanceResult.IGNORED
        if self._transitioning:
            logging.info("[ SessionStateMachine.advance ] A transition is already in flight")
            return AdvanceResult.IGNORED

        stage = self.current_stage
        gate = self._gates.get(stage.id)
        if gate is not None and not gate.can_advance():
            logging.info(
                f"[ SessionStateMachine.advance ] Stage {stage.id} is not done yet"
            )
            return AdvanceResult.BLOCKED

        self._transitioning = True
        generation = self._generation
        try:
            if self.current_index >= self.session.last_index:
                return await self._complete(generation, stage)

            if stage.kind in IMPLICIT_COMPLETION_KINDS:
                await self._sync(generation, completed_stage_id=stage.id)
                if generation != self._generation:
                    return AdvanceResult.IGNORED

            self._enter_stage(self.current_index + 1)
            await self._sync(
                generation,
                status=ProgressStatus.IN_PROGRESS,
                current_stage_id=self.current_stage.id,
            )
            return AdvanceResult.ADVANCED
        finally:
            self._transitioning = False

    async def _complete(self, generation: int, stage: Stage) -> AdvanceResult:
        if self._timer is not None:
            self._timer.cancel()

        outcome = await self._sync(
            generation,
            status=ProgressStatus.COMPLETED,
            completed_stage_id=stage.id if stage.kind in IMPLICIT_COMPLETION_KINDS else None,
        )
        if outcome is None or generation != self._generation:
            return AdvanceResult.IGNORED

        self.state = MachineState.COMPLETED
        logging.info(
            f"[ SessionStateMachine._complete ] Session {self.session.id} completed"
        )
        return AdvanceResult.COMPLETED

    async def retreat(self) -> bool:
        if self.mode != Mode.INSPECTION:
            logging.warning(
                "[ SessionStateMachine.retreat ] Going back is only allowed while inspecting a session"
            )
            return False
        if self.session is None or self.state != MachineState.READY:
            return False
        if self._transitioning or self.current_index <= 0:
            return False

        self._transitioning = True
        generation = self._generation
        try:
            self._enter_stage(self.current_index - 1)
            await self._sync(
                generation,
                status=ProgressStatus.IN_PROGRESS,
                current_stage_id=self.current_stage.id,
            )
            return True
        finally:
            self._transitioning = False

    def reset_timer(self) -> None:
        if self.session is None or self.state != MachineState.READY or self._timer is None:
            return
        self._cancel_auto_advance()
        self._timer.reset()

    async def record_stage_completion(self, stage_id: str) -> SyncOutcome | None:
        """Marks a stage as done without moving the pointer. Stage consumers call this
        once their response has been collected."""
        if self.session is None:
            raise RuntimeError(
                "[ SessionStateMachine.record_stage_completion ] No session is loaded"
            )
        if self.session.index_of(stage_id) is None:
            raise ValueError(
                f"[ SessionStateMachine.record_stage_completion ] Stage {stage_id} is not part of session {self.session.id}"
            )
        return await self._sync(self._generation, completed_stage_id=stage_id)

    async def refresh_progress(self) -> SyncOutcome | None:
        if self.session is None:
            return None
        generation = self._generation
        try:
            outcome = await self.synchronizer.load(self.session.id)
        except OperationCancelled:
            return None
        if generation == self._generation:
            self.last_sync = outcome
        return outcome

    async def close(self) -> None:
        """Tears down everything owned by the loaded session. Late answers for it are
        discarded."""
        self._generation += 1
        self._release_stage()
        self._scope.cancel_all()
        for owned_id in self._owned_ids():
            self._cancel_owned(owned_id)
        self._loading_id = None
        if self.session is not None:
            logging.info(
                f"[ SessionStateMachine.close ] Session {self.session.id} unloaded"
            )
        self.session = None
        self.current_index = 0
        self._gates = {}
        self.state = MachineState.IDLE

    async def __aenter__(self) -> "SessionStateMachine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ==============================================================================
    # Internals

    async def _sync(self, generation: int, **fields) -> SyncOutcome | None:
        session_id = self.session.id
        try:
            outcome = await self.synchronizer.update(session_id, **fields)
        except OperationCancelled:
            return None
        if generation == self._generation:
            self.last_sync = outcome
        return outcome

    def _owned_ids(self) -> set[str]:
        ids = {self._loading_id}
        if self.session is not None:
            ids.add(self.session.id)
        ids.discard(None)
        return ids

    def _cancel_owned(self, session_id: str) -> None:
        self.synchronizer.cancel(session_id)
        self.fetcher.cancel_prefetch(session_id)

    def _enter_stage(self, index: int, start_timer: bool = True) -> None:
        self._release_stage()
        self.current_index = index
        stage = self.session.stages[index]
        self._timer = StageTimer(
            stage.duration_seconds,
            on_expire=self._on_timer_expired,
            tick_seconds=self.tick_seconds,
        )
        if start_timer:
            self._timer.start()

    def _release_stage(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._cancel_auto_advance()

    def _cancel_auto_advance(self) -> None:
        task = self._auto_advance_task
        self._auto_advance_task = None
        # The grace task releases the stage itself when it advances
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _on_timer_expired(self) -> None:
        stage = self.current_stage
        if stage is None or self.state != MachineState.READY:
            return
        if stage.kind == StageKind.INSTRUCTIONS:
            logging.info(
                f"[ SessionStateMachine._on_timer_expired ] Advancing past {stage.id} in {self.auto_advance_grace_seconds} seconds"
            )
            self._auto_advance_task = asyncio.create_task(self._auto_advance(stage.id))
        else:
            logging.info(
                f"[ SessionStateMachine._on_timer_expired ] Time is up for {stage.id}, waiting for the stage to finish"
            )

    async def _auto_advance(self, stage_id: str) -> None:
        await asyncio.sleep(self.auto_advance_grace_seconds)
        stage = self.current_stage
        if stage is None or stage.id != stage_id:
            return
        await self.advance()
