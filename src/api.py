import logging
import json

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, status, HTTPException

from cache import CacheStats, CacheStore
from fetcher import ResilientFetcher
from gates import ScenarioGate, SurveyGate, gate_for_stage
from participant import Participant
from services import BackendService
from session_machine import MachineSnapshot, MachineState, Mode, SessionStateMachine
from synchronizer import ProgressSynchronizer


def create_app(
    backend: BackendService,
    cache: CacheStore,
    fetcher: ResilientFetcher,
    synchronizer: ProgressSynchronizer,
    **machine_options,
) -> FastAPI:
    """Local host view for the participant's browser. One state machine per loaded
    session; the frontend polls the snapshot and posts interactions."""
    machines: dict[str, SessionStateMachine] = {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await cache.load()
        yield
        for machine in list(machines.values()):
            await machine.close()
        machines.clear()
        synchronizer.cancel_all()
        await cache.close()

    app = FastAPI(lifespan=lifespan)

    def get_machine(session_id: str) -> SessionStateMachine:
        machine = machines.get(session_id)
        if machine is None:
            raise HTTPException(
                status.HTTP_404_NOT_FOUND,
                {"status": "err", "message": f"Session {session_id} is not loaded"},
            )
        return machine

    def get_loaded_machine(session_id: str) -> SessionStateMachine:
        machine = get_machine(session_id)
        if machine.session is None:
            raise HTTPException(
                status.HTTP_409_CONFLICT,
                {"status": "err", "message": f"Session {session_id} did not load, load it again"},
            )
        return machine

    def get_stage_gate(machine: SessionStateMachine, stage_id: str, kind: type):
        gate = machine.gate_for(stage_id)
        if not isinstance(gate, kind):
            raise HTTPException(
                status.HTTP_400_BAD_REQUEST,
                {"status": "err", "message": f"Stage {stage_id} does not accept this"},
            )
        return gate

    @app.get("/health_check")
    async def health_check() -> dict:
        return {"status": "ok"}

    @app.post("/participant")
    async def set_participant(participant: Participant) -> None:
        logging.info(json.dumps(participant.model_dump(exclude={"token"})))
        backend.set_participant(participant)

    @app.get("/participant")
    async def get_participant() -> Participant:
        participant = backend.get_participant()
        if participant is not None:
            return participant
        else:
            message = "The user has not logged in on the web app yet"
            logging.info(message)
            raise HTTPException(
                status.HTTP_412_PRECONDITION_FAILED,
                {"status": "err", "message": message},
            )

    @app.post("/sessions/{session_id}/load")
    async def load_session(
        session_id: str, mode: Mode = Mode.PARTICIPANT, bypass_cache: bool = False
    ) -> MachineSnapshot:
        if mode == Mode.INSPECTION:
            participant = backend.get_participant()
            if participant is None or not participant.can_inspect:
                raise HTTPException(
                    status.HTTP_403_FORBIDDEN,
                    {"status": "err", "message": "Only researchers can inspect a session"},
                )

        machine = machines.get(session_id)
        if machine is None or machine.mode != mode:
            if machine is not None:
                await machine.close()
            machine = SessionStateMachine(fetcher, synchronizer, mode=mode, **machine_options)
            machines[session_id] = machine

        loaded = await machine.load_session(session_id, bypass_cache=bypass_cache)
        if not loaded:
            if machine.state == MachineState.ERROR:
                raise HTTPException(
                    status.HTTP_502_BAD_GATEWAY,
                    {"status": "err", "message": machine.load_error, "retry": True},
                )
            raise HTTPException(
                status.HTTP_409_CONFLICT,
                {"status": "err", "message": "A newer load of this session took over"},
            )

        for stage in machine.session.stages:
            machine.attach_gate(stage.id, gate_for_stage(stage))
        return machine.snapshot()

    @app.get("/sessions/{session_id}")
    async def get_session_state(session_id: str) -> MachineSnapshot:
        return get_machine(session_id).snapshot()

    @app.post("/sessions/{session_id}/advance")
    async def advance(session_id: str) -> dict:
        machine = get_machine(session_id)
        result = await machine.advance()
        return {
            "result": result,
            "state": machine.snapshot().model_dump(mode="json", by_alias=True),
        }

    @app.post("/sessions/{session_id}/retreat")
    async def retreat(session_id: str) -> dict:
        machine = get_machine(session_id)
        moved = await machine.retreat()
        return {
            "moved": moved,
            "state": machine.snapshot().model_dump(mode="json", by_alias=True),
        }

    @app.post("/sessions/{session_id}/timer/reset")
    async def reset_timer(session_id: str) -> MachineSnapshot:
        machine = get_machine(session_id)
        machine.reset_timer()
        return machine.snapshot()

    @app.post("/sessions/{session_id}/stages/{stage_id}/answers")
    async def answer_survey(
        session_id: str, stage_id: str, answers: dict[str, Any]
    ) -> dict:
        machine = get_loaded_machine(session_id)
        gate: SurveyGate = get_stage_gate(machine, stage_id, SurveyGate)
        try:
            for question_id, value in answers.items():
                gate.answer(question_id, value)
        except ValueError as e:
            raise HTTPException(
                status.HTTP_400_BAD_REQUEST, {"status": "err", "message": str(e)}
            )
        if gate.can_advance():
            await machine.record_stage_completion(stage_id)
        return {"complete": gate.can_advance(), "missing": sorted(gate.missing())}

    @app.post("/sessions/{session_id}/stages/{stage_id}/rounds")
    async def complete_round(session_id: str, stage_id: str) -> dict:
        machine = get_loaded_machine(session_id)
        gate: ScenarioGate = get_stage_gate(machine, stage_id, ScenarioGate)
        elapsed = gate.complete_round()
        if gate.can_advance():
            await machine.record_stage_completion(stage_id)
        return {"complete": gate.can_advance(), "roundsElapsed": elapsed}

    @app.post("/sessions/{session_id}/stages/{stage_id}/complete")
    async def complete_stage(session_id: str, stage_id: str) -> dict:
        machine = get_loaded_machine(session_id)
        try:
            outcome = await machine.record_stage_completion(stage_id)
        except ValueError as e:
            raise HTTPException(
                status.HTTP_404_NOT_FOUND, {"status": "err", "message": str(e)}
            )
        return {"persisted": outcome is not None and outcome.persisted}

    @app.delete("/sessions/{session_id}")
    async def unload_session(session_id: str) -> dict:
        machine = machines.pop(session_id, None)
        if machine is not None:
            await machine.close()
        synchronizer.forget(session_id)
        return {"status": "success", "message": f"Session {session_id} unloaded"}

    @app.get("/cache/stats")
    async def cache_stats() -> CacheStats:
        return cache.stats()

    return app
