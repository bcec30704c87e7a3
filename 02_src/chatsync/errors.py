"""Error taxonomy surfaced to callers of the session and sync layers."""

from enum import Enum


class AuthErrorKind(str, Enum):
    """Closed set of authentication failures."""

    INVALID_CREDENTIAL_FORMAT = "invalid_credential_format"
    WEAK_CREDENTIAL = "weak_credential"
    IDENTITY_ALREADY_REGISTERED = "identity_already_registered"
    IDENTITY_NOT_FOUND = "identity_not_found"
    CREDENTIAL_MISMATCH = "credential_mismatch"
    TRANSPORT_ERROR = "transport_error"
    UNKNOWN = "unknown"


_AUTH_MESSAGES = {
    AuthErrorKind.INVALID_CREDENTIAL_FORMAT: "Please enter a valid email address",
    AuthErrorKind.WEAK_CREDENTIAL: "Password must be at least 6 characters",
    AuthErrorKind.IDENTITY_ALREADY_REGISTERED: "This email is already registered",
    AuthErrorKind.IDENTITY_NOT_FOUND: "No account found with this email",
    AuthErrorKind.CREDENTIAL_MISMATCH: "Incorrect password",
    AuthErrorKind.TRANSPORT_ERROR: "Network error. Please check your connection",
}


class AuthError(Exception):
    """Authentication failure, safe to show to the user."""

    def __init__(
        self,
        kind: AuthErrorKind,
        detail: str | None = None,
        message: str | None = None,
    ):
        self.kind = kind
        self.detail = detail
        self._message = message
        super().__init__(self.message)

    @property
    def message(self) -> str:
        if self._message:
            return self._message
        if self.kind is AuthErrorKind.UNKNOWN:
            return self.detail or "An unexpected error occurred"
        return _AUTH_MESSAGES[self.kind]

    def __repr__(self) -> str:
        return f"AuthError({self.kind.value!r}, {self.detail!r})"


class SyncErrorKind(str, Enum):
    """Failures of store reads, writes and subscriptions."""

    NOT_AUTHENTICATED = "not_authenticated"
    NOT_FOUND = "not_found"
    TRANSPORT_ERROR = "transport_error"
    MALFORMED_REMOTE_RECORD = "malformed_remote_record"


class SyncError(Exception):
    """Failure talking to the remote store or blob storage."""

    def __init__(self, kind: SyncErrorKind, detail: str | None = None):
        self.kind = kind
        self.detail = detail
        text = kind.value if detail is None else f"{kind.value}: {detail}"
        super().__init__(text)

    @classmethod
    def transport(cls, exc: BaseException) -> "SyncError":
        """Wrap a driver-level exception."""
        return cls(SyncErrorKind.TRANSPORT_ERROR, str(exc) or type(exc).__name__)

    def __repr__(self) -> str:
        return f"SyncError({self.kind.value!r}, {self.detail!r})"
