from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class TurnDetectionMode(str, Enum):
    MANUAL = "none"
    AUTOMATIC = "server_vad"


class SetMemoryRequest(BaseModel):
    key: str = Field(
        min_length=1,
        description="The key of the memory value. Always use lowercase and underscores, no other characters.",
    )
    value: str = Field(description="Value can be anything represented as a string")

    @field_validator("key")
    @classmethod
    def validate_key(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("key must not be blank")
        return value.strip()


class SetMemoryResponse(BaseModel):
    ok: bool = True


class GetWeatherRequest(BaseModel):
    lat: float = Field(ge=-90, le=90, description="Latitude")
    lng: float = Field(ge=-180, le=180, description="Longitude")
    location: str = Field(description="Name of the location")


class Measurement(BaseModel):
    value: float
    units: str


class WeatherReport(BaseModel):
    location: str
    lat: float
    lng: float
    temperature: Measurement
    wind_speed: Measurement


class Coordinates(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    location: Optional[str] = None
    temperature: Optional[Measurement] = None
    wind_speed: Optional[Measurement] = None


class ContextResponse(BaseModel):
    message: str = ""
