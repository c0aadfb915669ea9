from pydantic import BaseModel
from enum import StrEnum, auto


class Role(StrEnum):
    RESEARCHER = auto()
    PARTICIPANT = auto()


class Participant(BaseModel):
    """Who the local server is running sessions for. The backend resolves the
    progress record from the bearer token, so the token is all it needs."""

    username: str
    token: str
    role: Role = Role.PARTICIPANT

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    @property
    def can_inspect(self) -> bool:
        return self.role == Role.RESEARCHER
