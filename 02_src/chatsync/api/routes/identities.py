"""Identity API routes."""

from fastapi import APIRouter

from ...app import Application
from ..errors import to_http
from ..schemas import IdentityResponse, identity_response


def create_identities_router(app: Application) -> APIRouter:
    """Create identities router."""
    router = APIRouter(prefix="/api/identities", tags=["identities"])

    @router.get("", response_model=list[IdentityResponse])
    async def list_identities() -> list[IdentityResponse]:
        """Everyone except the signed-in identity."""
        current = app.session.current_identity()
        try:
            identities = await app.directory.list_identities(
                exclude=current.key if current else None
            )
        except Exception as e:
            raise to_http(e) from e
        return [identity_response(i) for i in identities]

    @router.get("/{identity_id}", response_model=IdentityResponse)
    async def get_identity(identity_id: str) -> IdentityResponse:
        try:
            identity = await app.directory.get(identity_id)
        except Exception as e:
            raise to_http(e) from e
        return identity_response(identity)

    return router
