import pytest
from datetime import datetime, timezone

from pydantic import ValidationError

from models import (
    BreakStage,
    InstructionsStage,
    ProgressRecord,
    ProgressStatus,
    ProgressUpdate,
    ScenarioStage,
    Session,
    SurveyStage,
    apply_update,
    fallback_progress,
    parse_stage,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
LATER = datetime(2024, 5, 1, 12, 5, tzinfo=timezone.utc)


class TestStages:
    def test_wire_stage_is_parsed_by_type(self):
        stage = parse_stage(
            {
                "_id": "s1",
                "type": "scenario",
                "title": "Trade",
                "order": 0,
                "scenarioId": "sc-1",
                "durationSeconds": 120,
            }
        )
        assert isinstance(stage, ScenarioStage)
        assert stage.id == "s1"
        assert stage.scenario_id == "sc-1"
        assert stage.rounds == 1
        assert stage.is_timed

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_stage({"id": "s1", "kind": "video", "title": "x", "order": 0})

    def test_negative_duration_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_stage(
                {"id": "s1", "kind": "break", "title": "x", "order": 0, "durationSeconds": -1}
            )

    def test_survey_required_questions(self):
        stage = parse_stage(
            {
                "id": "s1",
                "kind": "survey",
                "title": "x",
                "order": 0,
                "questions": [
                    {"_id": "q1", "text": "a", "type": "text", "required": True},
                    {"id": "q2", "text": "b", "kind": "rating"},
                ],
            }
        )
        assert isinstance(stage, SurveyStage)
        assert stage.required_question_ids == {"q1"}


class TestSession:
    def test_stages_are_sorted_by_order(self, three_stage_document):
        session = Session.model_validate(three_stage_document)
        assert session.id == "exp-1"
        assert [s.id for s in session.stages] == [
            "stage-intro",
            "stage-survey",
            "stage-break",
        ]
        assert isinstance(session.stages[0], InstructionsStage)
        assert isinstance(session.stages[2], BreakStage)

    def test_empty_stage_list_is_rejected(self):
        with pytest.raises(ValidationError):
            Session.model_validate({"id": "x", "name": "x", "stages": []})

    def test_missing_stage_list_is_rejected(self):
        with pytest.raises(ValidationError):
            Session.model_validate({"id": "x", "name": "x"})

    def test_duplicate_order_is_rejected(self):
        with pytest.raises(ValidationError):
            Session.model_validate(
                {
                    "id": "x",
                    "name": "x",
                    "stages": [
                        {"id": "a", "kind": "break", "title": "a", "order": 1},
                        {"id": "b", "kind": "break", "title": "b", "order": 1},
                    ],
                }
            )

    def test_duplicate_id_is_rejected(self):
        with pytest.raises(ValidationError):
            Session.model_validate(
                {
                    "id": "x",
                    "name": "x",
                    "stages": [
                        {"id": "a", "kind": "break", "title": "a", "order": 0},
                        {"id": "a", "kind": "break", "title": "b", "order": 1},
                    ],
                }
            )

    def test_index_of(self, four_stage_document):
        session = Session.model_validate(four_stage_document)
        assert session.index_of("c") == 2
        assert session.index_of("missing") is None
        assert session.index_of(None) is None
        assert session.last_index == 3
        assert [s.id for s in session.scenario_stages()] == ["b"]

    def test_dump_and_validate_gives_the_same_session(self, three_stage_document):
        session = Session.model_validate(three_stage_document)
        again = Session.model_validate(session.model_dump(mode="json", by_alias=True))
        assert again == session


class TestProgressRecord:
    def test_backend_field_names_are_accepted(self):
        record = ProgressRecord.model_validate(
            {
                "experimentId": "exp-1",
                "status": "in_progress",
                "currentStageId": "s2",
                "completedStages": ["s1", 7],
            }
        )
        assert record.session_id == "exp-1"
        assert record.status == ProgressStatus.IN_PROGRESS
        assert record.completed_stage_ids == {"s1", "7"}

    def test_serializes_camel_case(self):
        record = ProgressRecord(session_id="exp-1", current_stage_id="s1")
        document = record.model_dump(mode="json", by_alias=True)
        assert document["sessionId"] == "exp-1"
        assert document["currentStageId"] == "s1"
        assert document["completedStageIds"] == []

    def test_update_payload_leaves_out_missing_fields(self):
        update = ProgressUpdate(status=ProgressStatus.IN_PROGRESS, current_stage_id="s1")
        assert update.to_payload() == {"status": "in_progress", "currentStageId": "s1"}
        assert ProgressUpdate().is_empty()


class TestApplyUpdate:
    def test_first_in_progress_sets_started_at(self):
        record = apply_update(
            ProgressRecord(session_id="x"),
            ProgressUpdate(status=ProgressStatus.IN_PROGRESS, current_stage_id="s1"),
            NOW,
        )
        assert record.status == ProgressStatus.IN_PROGRESS
        assert record.started_at == NOW
        assert record.last_activity_at == NOW
        assert record.current_stage_id == "s1"

    def test_started_at_is_kept(self):
        record = apply_update(
            ProgressRecord(session_id="x"),
            ProgressUpdate(status=ProgressStatus.IN_PROGRESS),
            NOW,
        )
        record = apply_update(
            record, ProgressUpdate(status=ProgressStatus.IN_PROGRESS), LATER
        )
        assert record.started_at == NOW
        assert record.last_activity_at == LATER

    def test_completed_stage_ids_accumulate(self):
        record = ProgressRecord(session_id="x")
        for stage_id in ["a", "b", "a"]:
            record = apply_update(
                record, ProgressUpdate(completed_stage_id=stage_id), NOW
            )
        assert record.completed_stage_ids == {"a", "b"}

    def test_stage_activity_starts_the_session(self):
        record = apply_update(
            ProgressRecord(session_id="x"), ProgressUpdate(completed_stage_id="a"), NOW
        )
        assert record.status == ProgressStatus.IN_PROGRESS
        assert record.started_at == NOW

    def test_completed_sets_completed_at(self):
        record = apply_update(
            ProgressRecord(session_id="x", status=ProgressStatus.IN_PROGRESS, started_at=NOW),
            ProgressUpdate(status=ProgressStatus.COMPLETED),
            LATER,
        )
        assert record.is_completed
        assert record.completed_at == LATER
        assert record.started_at == NOW

    @pytest.mark.parametrize(
        "status", [ProgressStatus.NOT_STARTED, ProgressStatus.IN_PROGRESS]
    )
    def test_completed_is_absorbing(self, status: ProgressStatus):
        completed = ProgressRecord(
            session_id="x", status=ProgressStatus.COMPLETED, completed_at=NOW
        )
        record = apply_update(
            completed, ProgressUpdate(status=status, current_stage_id="s1"), LATER
        )
        assert record.status == ProgressStatus.COMPLETED
        assert record.completed_at == NOW
        assert record.current_stage_id == "s1"


class TestFallbackProgress:
    def test_same_session_gives_same_record(self):
        assert fallback_progress("exp-1") == fallback_progress("exp-1")

    def test_is_not_started(self):
        record = fallback_progress("exp-1")
        assert record.session_id == "exp-1"
        assert record.status == ProgressStatus.NOT_STARTED
        assert record.current_stage_id is None
        assert record.completed_stage_ids == set()
