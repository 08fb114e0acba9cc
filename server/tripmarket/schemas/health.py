"""Liveness, readiness and service description payloads."""

from datetime import datetime
from enum import Enum
from typing import Dict

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    READY = "ready"
    NOT_READY = "not_ready"


class HealthResponse(BaseModel):
    """Liveness answer; never touches the database."""

    status: HealthStatus = Field(HealthStatus.HEALTHY)
    service: str
    version: str
    environment: str
    timestamp: datetime = Field(..., description="Server time, naive UTC")


class ReadinessChecks(BaseModel):
    database: str = Field(..., description="ok or unavailable")
    workers: Dict[str, bool] = Field(default_factory=dict, description="Background worker name -> running")


class ReadinessResponse(BaseModel):
    status: HealthStatus
    service: str
    checks: ReadinessChecks


class ServiceInfo(BaseModel):
    """Static facts a client needs before quoting: currency and hold window."""

    service: str
    version: str
    environment: str
    currency: str
    hold_duration_seconds: int
    features: Dict[str, bool]
