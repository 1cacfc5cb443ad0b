# app/models/location_models.py
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from app.models.common_models import BaseDBModel, PyObjectId


class LocationReport(BaseModel):
    deviceId: str
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)
    altitude: Optional[float] = None
    speed: Optional[float] = Field(None, ge=0)
    heading: Optional[float] = Field(None, ge=0, le=360)
    batteryLevel: Optional[int] = Field(None, ge=0, le=100)


class LocationInDB(BaseDBModel):
    deviceId: str
    parentId: str
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    batteryLevel: Optional[int] = None
    timestamp: datetime


class LocationPublic(LocationInDB):
    id: PyObjectId

    @classmethod
    def from_location(cls, location: LocationInDB) -> "LocationPublic":
        return cls.model_validate(location.model_dump())


class LocationHistory(BaseModel):
    count: int
    locations: List[LocationPublic]


class LocationDayStats(BaseModel):
    date: str = Field(description="UTC day, YYYY-MM-DD")
    count: int
    avgAccuracy: Optional[float] = None


class LocationStats(BaseModel):
    days: int
    stats: List[LocationDayStats]
