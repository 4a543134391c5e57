"""Operator dashboard API for a running StreamService.

Routes:
    GET  /api/status   service state, per-device streams and send stats
    GET  /api/events   recent events, oldest first (terminal failures too)
    POST /api/start    manual start with a host and restart policy
    POST /api/stop     operator stop

Example:
    >>> app = create_app(StreamService(config))
    >>> uvicorn.run(app, host="127.0.0.1", port=8080)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from camstream.errors import InvalidTargetError, StreamError
from camstream.observability import get_logger

if TYPE_CHECKING:
    from camstream.service import StreamService

logger = get_logger(__name__)

__all__ = ["StartRequest", "create_app"]


class StartRequest(BaseModel):
    """Body of POST /api/start."""

    host: str | None = None
    restart_on_failure: bool | None = None


def create_app(service: StreamService) -> FastAPI:
    """Build the dashboard API bound to ``service``.

    Args:
        service: The service the routes inspect and control.

    Returns:
        FastAPI application, ready for uvicorn or TestClient.
    """
    app = FastAPI(
        title="camstream",
        description="Capture-to-socket streaming control",
        version="0.1.0",
    )
    app.state.service = service

    @app.get("/api/status")
    async def api_status() -> dict[str, Any]:
        """Service state, per-device streams and statistics."""
        return service.status()

    @app.get("/api/events")
    async def api_events(
        limit: int = Query(50, ge=1, le=500, description="Most recent N events"),
        kind: str | None = Query(None, description="Event class name filter"),
    ) -> dict[str, Any]:
        """Recent events, oldest first."""
        events = [e.to_dict() for e in service.events.recent()]
        if kind:
            events = [e for e in events if e["kind"] == kind]
        return {"count": len(events[-limit:]), "events": events[-limit:]}

    @app.post("/api/start")
    def api_start(request: StartRequest) -> dict[str, Any]:
        """Operator start.

        Returns 400 for an invalid host, 409 when already running and 503
        when the devices cannot be set up.
        """
        try:
            started = service.start(
                request.host,
                manual_start=True,
                restart_on_failure=request.restart_on_failure,
            )
        except InvalidTargetError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except StreamError as e:
            logger.warning("Start from dashboard failed", error=str(e))
            raise HTTPException(status_code=503, detail=str(e)) from e
        if not started:
            raise HTTPException(status_code=409, detail="Service already running")
        return {"started": True, "host": service.last_host}

    @app.post("/api/stop")
    def api_stop() -> dict[str, Any]:
        """Operator stop; also cancels a pending automatic restart."""
        stopped = service.stop()
        return {"stopped": stopped, "state": service.state.value}

    return app
