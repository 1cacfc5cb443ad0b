# app/models/common_models.py
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from datetime import datetime, timezone
from typing import Annotated
import uuid
from bson import ObjectId


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    # Mongo without tz_aware hands back naive datetimes; they are UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _validate_object_id(v):
    # 允许已经是ObjectId或UUID实例的情况
    if isinstance(v, (ObjectId, uuid.UUID)):
        return str(v)
    if isinstance(v, str):
        try:
            uuid.UUID(v)
            return v
        except ValueError:
            if ObjectId.is_valid(v):
                return v
            raise ValueError(f"'{v}' is not a valid UUID or ObjectId string")
    raise ValueError(f"Value must be a string, ObjectId or UUID, got {type(v)}")


PyObjectId = Annotated[str, BeforeValidator(_validate_object_id)]


class BaseDBModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,  # 允许使用alias _id
        from_attributes=True,
        use_enum_values=True,
    )

    id: PyObjectId = Field(default_factory=lambda: str(uuid.uuid4()), alias="_id")
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)

    def to_document(self) -> dict:
        """BSON-ready dict: keeps datetimes native so range queries work."""
        return self.model_dump(by_alias=True)
