from typing import Any, Protocol

from models import BreakStage, InstructionsStage, ScenarioStage, Stage, SurveyStage


class StageGate(Protocol):
    """Completion criteria owned by whoever presents a stage. The session machine
    asks before moving on and never looks inside."""

    def can_advance(self) -> bool: ...


class OpenGate:
    def can_advance(self) -> bool:
        return True


class SurveyGate:
    """Open once every required question has a non-empty answer."""

    def __init__(self, stage: SurveyStage) -> None:
        self.stage_id = stage.id
        self.question_ids = {q.id for q in stage.questions}
        self.required_question_ids = stage.required_question_ids
        self.answers: dict[str, Any] = {}

    def answer(self, question_id: str, value: Any) -> None:
        if question_id not in self.question_ids:
            raise ValueError(
                f"[ SurveyGate.answer ] Question {question_id} is not part of stage {self.stage_id}"
            )
        if value is None or value == "" or value == []:
            self.answers.pop(question_id, None)
        else:
            self.answers[question_id] = value

    def missing(self) -> set[str]:
        return self.required_question_ids - set(self.answers.keys())

    def can_advance(self) -> bool:
        return len(self.missing()) == 0


class ScenarioGate:
    """Open once all rounds of the scenario have elapsed."""

    def __init__(self, stage: ScenarioStage) -> None:
        self.stage_id = stage.id
        self.rounds = stage.rounds
        self.rounds_elapsed = 0

    def complete_round(self) -> int:
        if self.rounds_elapsed < self.rounds:
            self.rounds_elapsed += 1
        return self.rounds_elapsed

    def can_advance(self) -> bool:
        return self.rounds_elapsed >= self.rounds


def gate_for_stage(stage: Stage) -> StageGate:
    if isinstance(stage, SurveyStage):
        return SurveyGate(stage)
    elif isinstance(stage, ScenarioStage):
        return ScenarioGate(stage)
    elif isinstance(stage, (InstructionsStage, BreakStage)):
        return OpenGate()
    raise TypeError(f"[ gates.gate_for_stage ] Unknown stage kind: {stage!r}")
