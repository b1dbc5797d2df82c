"""
Pydantic schemas for the monitoring backend's REST surface.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str


class ErrorResponse(BaseModel):
    kind: str
    message: str


class DeviceResponse(BaseModel):
    id: str
    name: str
    type: str = "Temperature"
    location: str
    status: str
    value: float
    unit: str = "°C"
    lastUpdated: Optional[str] = None


class HistoryPoint(BaseModel):
    id: Optional[str] = None
    timestamp: Optional[str] = None
    value: float


class CurrentTemperature(BaseModel):
    deviceId: str
    temperature: float
    timestamp: Optional[str] = None
    location: Optional[str] = None
    name: Optional[str] = None


class TemperatureReadingPayload(BaseModel):
    deviceId: str = Field(..., min_length=1, max_length=128)
    temperature: float
    location: Optional[str] = None
    alertLimit: Optional[float] = None
    deviceName: Optional[str] = None
    ttl: int = Field(default=3600, ge=0)


class ReadingWriteResponse(BaseModel):
    success: bool
    message: str
    data: dict


class AlertPayload(BaseModel):
    deviceId: str = Field(..., min_length=1, max_length=128)
    temperature: float
    limit: float
    severity: Optional[Literal["high", "critical"]] = None
    title: Optional[str] = None
    message: Optional[str] = None
    deviceName: Optional[str] = None
    resolved: bool = False


class AlertWriteResponse(BaseModel):
    success: bool
    message: str
    documentId: Optional[str] = None


class DocumentListResponse(BaseModel):
    result: list[dict]
    latestDocument: Optional[dict] = None
    error: Optional[str] = None


class DeviceDocumentsResponse(BaseModel):
    deviceId: str
    documents: list[dict]
    count: int


class ConnectionTestResponse(BaseModel):
    status: Literal["success"]
    message: str
    documentsCount: int
    timestamp: str
