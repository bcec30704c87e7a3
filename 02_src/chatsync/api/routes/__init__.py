"""API routes."""

from ...errors import SyncError, SyncErrorKind
from ...models import Identity
from ...app import Application


def require_identity(app: Application) -> Identity:
    """Signed-in identity, or SyncError(not_authenticated)."""
    identity = app.session.current_identity()
    if identity is None:
        raise SyncError(SyncErrorKind.NOT_AUTHENTICATED)
    return identity
