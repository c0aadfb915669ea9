import pytest

from mock_server import make_backend


@pytest.fixture(autouse=True)
def environment(monkeypatch, tmp_path):
    monkeypatch.setenv("BACKEND_HOST", "localhost")
    monkeypatch.setenv("BACKEND_PORT", "8000")
    monkeypatch.setenv("PATH_PREFIX", "/api")
    monkeypatch.setenv("ENV", "TEST")
    monkeypatch.setenv("SQLITE_DB_PATH", str(tmp_path / "cache.db"))


@pytest.fixture
def three_stage_document():
    """instructions -> survey (one required question) -> break"""
    return {
        "_id": "exp-1",
        "name": "Risk perception",
        "description": "Three stage session",
        "stages": [
            {
                "_id": "stage-break",
                "type": "break",
                "title": "Pause",
                "description": "Take a breath",
                "durationSeconds": 0,
                "required": True,
                "order": 2,
                "message": "Thanks, almost done",
            },
            {
                "_id": "stage-intro",
                "type": "instructions",
                "title": "Welcome",
                "description": "Read this first",
                "durationSeconds": 0,
                "required": True,
                "order": 0,
                "content": "## Hello",
                "format": "markdown",
            },
            {
                "_id": "stage-survey",
                "type": "survey",
                "title": "About you",
                "description": "A single question",
                "durationSeconds": 0,
                "required": True,
                "order": 1,
                "questions": [
                    {
                        "id": "q1",
                        "text": "How confident are you?",
                        "type": "rating",
                        "required": True,
                    }
                ],
            },
        ],
    }


@pytest.fixture
def four_stage_document():
    return {
        "id": "exp-2",
        "name": "Trading",
        "stages": [
            {"id": "a", "kind": "instructions", "title": "A", "order": 0},
            {
                "id": "b",
                "kind": "scenario",
                "title": "B",
                "order": 1,
                "scenarioId": "sc-1",
                "rounds": 2,
                "walletId": "w-1",
            },
            {"id": "c", "kind": "survey", "title": "C", "order": 2},
            {"id": "d", "kind": "break", "title": "D", "order": 3},
        ],
    }


@pytest.fixture
def backend(three_stage_document, four_stage_document):
    return make_backend([three_stage_document, four_stage_document])


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
