"""Session API routes."""

from pydantic import BaseModel
from fastapi import APIRouter, HTTPException

from ...app import Application
from ..errors import to_http
from ..schemas import IdentityResponse, StatusResponse, identity_response


class SignUpRequest(BaseModel):
    """Request model for sign-up."""

    email: str
    password: str
    name: str


class SignInRequest(BaseModel):
    """Request model for sign-in."""

    email: str
    password: str


class PresenceRequest(BaseModel):
    """Request model for a presence change."""

    is_online: bool


class SessionResponse(BaseModel):
    """Response model for the current session."""

    identity: IdentityResponse | None = None
    connected: bool


def create_session_router(app: Application) -> APIRouter:
    """Create session router."""
    router = APIRouter(prefix="/api/session", tags=["session"])

    @router.get("", response_model=SessionResponse)
    async def get_session() -> SessionResponse:
        """Current identity and connection state."""
        identity = app.session.current_identity()
        return SessionResponse(
            identity=identity_response(identity) if identity else None,
            connected=app.connectivity.is_connected,
        )

    @router.post("/signup", response_model=IdentityResponse)
    async def sign_up(request: SignUpRequest) -> IdentityResponse:
        """Register and sign in."""
        try:
            identity = await app.session.sign_up(
                request.email, request.password, request.name
            )
        except Exception as e:
            raise to_http(e) from e
        return identity_response(identity)

    @router.post("/signin", response_model=IdentityResponse)
    async def sign_in(request: SignInRequest) -> IdentityResponse:
        """Sign in with existing credentials."""
        try:
            identity = await app.session.sign_in(request.email, request.password)
        except Exception as e:
            raise to_http(e) from e
        return identity_response(identity)

    @router.post("/signout", response_model=StatusResponse)
    async def sign_out() -> dict:
        """Go offline and end the session."""
        try:
            await app.close_conversations()
            await app.session.sign_out()
            return {"status": "ok"}
        except Exception as e:
            raise to_http(e) from e

    @router.post("/presence", response_model=StatusResponse)
    async def set_presence(request: PresenceRequest) -> dict:
        """Publish online/offline presence for the signed-in identity."""
        if app.session.current_identity() is None:
            raise HTTPException(status_code=401, detail="Not signed in")
        await app.session.set_presence(request.is_online)
        return {"status": "ok"}

    return router
