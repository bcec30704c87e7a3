"""Mapping of domain errors onto HTTP status codes."""

from fastapi import HTTPException

from ..errors import AuthError, AuthErrorKind, SyncError, SyncErrorKind

_AUTH_STATUS = {
    AuthErrorKind.INVALID_CREDENTIAL_FORMAT: 400,
    AuthErrorKind.WEAK_CREDENTIAL: 400,
    AuthErrorKind.IDENTITY_ALREADY_REGISTERED: 409,
    AuthErrorKind.IDENTITY_NOT_FOUND: 401,
    AuthErrorKind.CREDENTIAL_MISMATCH: 401,
    AuthErrorKind.TRANSPORT_ERROR: 502,
    AuthErrorKind.UNKNOWN: 500,
}

_SYNC_STATUS = {
    SyncErrorKind.NOT_AUTHENTICATED: 401,
    SyncErrorKind.NOT_FOUND: 404,
    SyncErrorKind.TRANSPORT_ERROR: 502,
    SyncErrorKind.MALFORMED_REMOTE_RECORD: 502,
}


def to_http(error: Exception) -> HTTPException:
    """HTTPException for a domain error; 500 for anything else."""
    if isinstance(error, AuthError):
        return HTTPException(
            status_code=_AUTH_STATUS[error.kind],
            detail={"kind": error.kind.value, "message": error.message},
        )
    if isinstance(error, SyncError):
        return HTTPException(
            status_code=_SYNC_STATUS[error.kind],
            detail={"kind": error.kind.value, "message": str(error)},
        )
    if isinstance(error, ValueError):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
