from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .domain import ChannelThresholds, ThresholdBand, ThresholdConfig


class BandIn(BaseModel):
    lower: Optional[float] = None
    upper: Optional[float] = None

    def to_domain(self) -> ThresholdBand:
        return ThresholdBand(lower=self.lower, upper=self.upper)


class ChannelThresholdsIn(BaseModel):
    warning: BandIn = Field(default_factory=BandIn)
    critical: BandIn = Field(default_factory=BandIn)

    def to_domain(self) -> ChannelThresholds:
        return ChannelThresholds(
            warning=self.warning.to_domain(),
            critical=self.critical.to_domain(),
        )


class ThresholdsIn(BaseModel):
    primary: ChannelThresholdsIn = Field(default_factory=ChannelThresholdsIn)
    # Solo para tipos compuestos (temperature_humidity, co2_humidity, ...)
    secondary: Optional[ChannelThresholdsIn] = None

    def to_domain(self) -> ThresholdConfig:
        return ThresholdConfig(
            primary=self.primary.to_domain(),
            secondary=self.secondary.to_domain() if self.secondary is not None else None,
        )


class RegisterSensorIn(BaseModel):
    user_id: str = Field(..., min_length=1)
    physical_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    building_id: Optional[str] = None
    location: Optional[str] = None
    thresholds: ThresholdsIn = Field(default_factory=ThresholdsIn)


class RegisterSensorOut(BaseModel):
    sensor_id: int
    physical_id: str
    user_id: str
    sensor_type: str
    unit: str
    secondary_unit: Optional[str] = None
    status: str
    threshold_warnings: List[str] = Field(default_factory=list)


class ReleaseSensorOut(BaseModel):
    sensor_id: int
    physical_id: str
    released: bool = True


class ThresholdUpdateOut(BaseModel):
    sensor_id: int
    threshold_warnings: List[str] = Field(default_factory=list)


class ReadingOut(BaseModel):
    id: int
    value: float
    secondary_value: Optional[float] = None
    unit: str
    battery_level: Optional[float] = None
    timestamp: datetime


class SensorStatusOut(BaseModel):
    sensor_id: int
    physical_id: str
    name: str
    sensor_type: str
    status: str
    current_value: Optional[float] = None
    secondary_value: Optional[float] = None
    unit: str
    secondary_unit: Optional[str] = None
    battery_level: Optional[float] = None
    last_communication: Optional[datetime] = None
    recent_readings: List[ReadingOut] = Field(default_factory=list)


class OwnershipRecordOut(BaseModel):
    physical_id: str
    user_id: str
    sensor_id: int
    registered_at: Optional[datetime] = None
    released_at: datetime
