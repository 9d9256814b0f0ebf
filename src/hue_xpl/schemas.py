from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    ok: bool = Field(..., description="Process is alive.")


class ReadinessResponse(BaseModel):
    ready: bool = Field(..., description="True once a full sync succeeded and the bridge is not failing.")
    reason: str | None = Field(
        default=None,
        description="When not ready, a short machine-readable reason (e.g. not_synced).",
    )
    details: Any | None = Field(default=None, description="Optional extra details; do not rely on this shape.")


class CachedDevice(BaseModel):
    kind: str = Field(..., description="light, sensor or group.")
    bridgeIds: list[str] = Field(..., description="Bridge ids sharing this routing key.")
    attributes: dict[str, Any] = Field(..., description="Last published raw bridge values.")


class StateResponse(BaseModel):
    state: str = Field(..., description="Scheduler state (idle, syncing-lights, executing, ...).")
    errorCount: int = Field(..., description="Consecutive bridge failures.")
    lastSyncAt: str | None = Field(default=None, description="UTC time of the last completed sync.")
    devices: dict[str, CachedDevice] = Field(default_factory=dict)


class TargetFailure(BaseModel):
    target: str
    error: str


class CommandResponse(BaseModel):
    ok: bool = Field(..., description="True when every target accepted the mutation.")
    op: str | None = Field(default=None, description="Normalized operation.")
    applied: list[str] = Field(default_factory=list)
    failed: list[TargetFailure] = Field(default_factory=list)


class CommandError(BaseModel):
    code: str = Field(..., description="Machine-readable error code.")
    message: str = Field(..., description="Human-readable reason.")


class CommandRejectedResponse(BaseModel):
    ok: bool = False
    error: CommandError
