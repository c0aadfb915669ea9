from pydantic import PlainSerializer
from typing import Annotated
from datetime import datetime, timezone

SerializableDateTime = Annotated[
    datetime,
    PlainSerializer(lambda date: date.isoformat(), return_type=str),
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
