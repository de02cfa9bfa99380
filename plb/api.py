from __future__ import annotations

from dataclasses import asdict

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import PlainTextResponse

from . import db
from .api_models import BackendModel, EventModel, StatusResponse
from .reconciler import LoopState, ReconcileLoop


def create_app(loop: ReconcileLoop) -> FastAPI:
    app = FastAPI(title="patroni-lb", description="HAProxy config reconciler for a Patroni cluster")

    @app.get("/health")
    def health() -> dict[str, str]:
        status = "healthy" if loop.fatal is None and loop.state != LoopState.STOPPED else "stopped"
        return {"status": status}

    @app.get("/status", response_model=StatusResponse)
    def status() -> StatusResponse:
        st = loop.status()
        primary = st.pop("primary")
        replicas = st.pop("replicas")
        return StatusResponse(
            primary=BackendModel(**asdict(primary)) if primary else None,
            replicas=[BackendModel(**asdict(b)) for b in replicas],
            **st,
        )

    @app.get("/config", response_class=PlainTextResponse)
    def config() -> str:
        if loop.current_config is None:
            raise HTTPException(status_code=404, detail="No config applied yet")
        return loop.current_config

    @app.get("/events", response_model=list[EventModel])
    def events(limit: int = Query(50, ge=1, le=1000)) -> list[EventModel]:
        return [EventModel(**row) for row in db.latest_events(limit)]

    return app
