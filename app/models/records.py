from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class Role(str, Enum):
    NORMAL = "normal"
    ADMIN = "admin"


class Kind(str, Enum):
    IMAGE = "image"
    TEXT = "text"
    FILE = "file"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ObjectRecord(BaseModel):
    type: Literal["object"] = "object"
    id: str
    content_type: str
    kind: Kind
    size_bytes: int = Field(ge=0)
    created_at: datetime
    role_at_upload: Role
    extension: str = "bin"

    @property
    def filename(self) -> str:
        return f"{self.id}.{self.extension}"


class ShortLinkRecord(BaseModel):
    type: Literal["short"] = "short"
    id: str
    target_url: str
    created_at: datetime
    role_at_upload: Role = Role.NORMAL


class ReservationRecord(BaseModel):
    """Placeholder claiming an identifier while its blob is being written."""

    type: Literal["reserved"] = "reserved"
    id: str
    created_at: datetime


StoredRecord = Annotated[
    Union[ObjectRecord, ShortLinkRecord, ReservationRecord],
    Field(discriminator="type"),
]

_record_adapter = TypeAdapter(StoredRecord)


def dump_record(record: Union[ObjectRecord, ShortLinkRecord, ReservationRecord]) -> str:
    return record.model_dump_json()


def load_record(payload: Union[str, bytes]) -> Union[ObjectRecord, ShortLinkRecord, ReservationRecord]:
    return _record_adapter.validate_json(payload)
