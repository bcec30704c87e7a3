"""Control API routes."""

from typing import Any

from pydantic import BaseModel
from fastapi import APIRouter, HTTPException

from ...app import Application
from ..errors import to_http
from ..schemas import StatusResponse


class ConnectionResponse(BaseModel):
    """Response model for connection control."""

    connected: bool


# Global SIM instance (will be set by main app)
_sim_instance: Any = None


def set_sim_instance(sim: Any) -> None:
    """Set the global SIM instance."""
    global _sim_instance
    _sim_instance = sim


def get_sim_instance() -> Any:
    """Get the global SIM instance."""
    return _sim_instance


def create_control_router(app: Application) -> APIRouter:
    """Create control router."""
    router = APIRouter(prefix="/api/control", tags=["control"])

    @router.post("/reset", response_model=StatusResponse)
    async def reset_system() -> dict:
        """Reset system data between test runs."""
        try:
            await app.reset()
        except Exception as e:
            raise to_http(e) from e
        return {"status": "ok"}

    @router.post("/connection/drop", response_model=ConnectionResponse)
    async def drop_connection() -> ConnectionResponse:
        """Simulate transport loss; armed on-disconnect writes are applied."""
        try:
            await app.store.drop_connection()
        except Exception as e:
            raise to_http(e) from e
        return ConnectionResponse(connected=app.store.is_connected)

    @router.post("/connection/restore", response_model=ConnectionResponse)
    async def restore_connection() -> ConnectionResponse:
        await app.store.reconnect()
        return ConnectionResponse(connected=app.store.is_connected)

    @router.post("/sim/start", response_model=StatusResponse)
    async def start_sim() -> dict:
        """Start SIM simulation."""
        if not _sim_instance:
            raise HTTPException(status_code=404, detail="SIM not configured")
        try:
            await _sim_instance.start()
        except Exception as e:
            raise to_http(e) from e
        return {"status": "ok"}

    @router.post("/sim/stop", response_model=StatusResponse)
    async def stop_sim() -> dict:
        """Stop SIM simulation."""
        if not _sim_instance:
            raise HTTPException(status_code=404, detail="SIM not configured")
        try:
            await _sim_instance.stop()
        except Exception as e:
            raise to_http(e) from e
        return {"status": "ok"}

    return router
