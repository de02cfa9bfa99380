from __future__ import annotations

from pydantic import BaseModel, Field


class BackendModel(BaseModel):
    id: str
    host: str = Field(..., description="host:port HAProxy connects to")
    health_check_port: str
    is_running: bool
    is_primary: bool


class StatusResponse(BaseModel):
    scope: str
    state: str = Field(..., description="awaiting_leader|reconciling|idle|stopped")
    cycles: int = Field(..., ge=0)
    applies: int = Field(..., ge=0)
    leader: str | None = None
    primary: BackendModel | None = None
    replicas: list[BackendModel] = Field(default_factory=list)
    pid: int | None = None
    restarts: int = 0
    last_applied_at: str | None = None
    pending_apply: bool = False
    last_error: str | None = None
    active_watches: int = 0


class EventModel(BaseModel):
    id: int
    ts: str
    level: str
    scope: str | None = None
    message: str
