"""Credential service backing the session gate."""

import hashlib
import hmac
import os
import re
import uuid
from collections.abc import Callable
from contextlib import contextmanager
from typing import Protocol

from ..errors import AuthError, AuthErrorKind, SyncError
from ..logging_config import get_logger
from ..store import IDocumentStore, join_path

logger = get_logger(__name__)

ACCOUNTS = "accounts"
MIN_PASSWORD_LENGTH = 6
EMAIL_PATTERN = re.compile(r"^[A-Z0-9a-z._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,64}$")

StateListener = Callable[[str | None], None]


class IAuthProvider(Protocol):
    """Black-box credential service."""

    async def create_identity(self, email: str, password: str) -> str:
        """Register credentials, sign in, return the new identity key."""
        ...

    async def authenticate(self, email: str, password: str) -> str:
        """Check credentials, sign in, return the identity key."""
        ...

    async def deauthenticate(self) -> None:
        """Sign out."""
        ...

    def current_identity(self) -> str | None:
        """Key of the signed-in identity, if any."""
        ...

    def add_state_listener(self, listener: StateListener) -> None:
        """Call ``listener`` with the identity key on every auth change."""
        ...


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email.strip()))


def _email_key(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode("utf-8")).hexdigest()


@contextmanager
def _auth_errors():
    """Map anything but AuthError onto the closed taxonomy."""
    try:
        yield
    except AuthError:
        raise
    except SyncError as e:
        raise AuthError(AuthErrorKind.TRANSPORT_ERROR, str(e)) from e
    except Exception as e:
        raise AuthError(AuthErrorKind.UNKNOWN, str(e)) from e


class LocalAuthProvider:
    """Email/password accounts kept in the document store.

    Passwords are stored as salted PBKDF2-SHA256 hashes.
    """

    def __init__(self, store: IDocumentStore, iterations: int = 100_000):
        self._store = store
        self._iterations = iterations
        self._current: str | None = None
        self._listeners: list[StateListener] = []

    def _hash(self, password: str, salt: str, iterations: int) -> str:
        return hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), bytes.fromhex(salt), iterations
        ).hex()

    def _set_current(self, uid: str | None) -> None:
        changed = uid != self._current
        self._current = uid
        if changed:
            for listener in list(self._listeners):
                listener(uid)

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def current_identity(self) -> str | None:
        return self._current

    async def create_identity(self, email: str, password: str) -> str:
        """Register credentials, sign in, return the new identity key."""
        if not is_valid_email(email):
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL_FORMAT)
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError(AuthErrorKind.WEAK_CREDENTIAL)

        uid = uuid.uuid4().hex
        salt = os.urandom(16).hex()
        account = {
            "uid": uid,
            "email": email.strip().lower(),
            "salt": salt,
            "iterations": self._iterations,
            "passwordHash": self._hash(password, salt, self._iterations),
        }

        def _create(current):
            # Someone else holds this email already
            if current is not None:
                return None
            return account

        with _auth_errors():
            committed = await self._store.transaction(
                join_path(ACCOUNTS, _email_key(email)), _create
            )
        if committed is None:
            raise AuthError(AuthErrorKind.IDENTITY_ALREADY_REGISTERED)

        logger.info("Registered identity %s", uid, extra={"identity": uid})
        self._set_current(uid)
        return uid

    async def authenticate(self, email: str, password: str) -> str:
        """Check credentials, sign in, return the identity key."""
        if not is_valid_email(email):
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL_FORMAT)

        with _auth_errors():
            snapshot = await self._store.get(join_path(ACCOUNTS, _email_key(email)))
            account = snapshot.value
            if not isinstance(account, dict):
                raise AuthError(AuthErrorKind.IDENTITY_NOT_FOUND)

            expected = account.get("passwordHash", "")
            actual = self._hash(
                password,
                account["salt"],
                int(account.get("iterations", self._iterations)),
            )
            if not hmac.compare_digest(expected, actual):
                raise AuthError(AuthErrorKind.CREDENTIAL_MISMATCH)
            uid = account["uid"]

        self._set_current(uid)
        return uid

    async def deauthenticate(self) -> None:
        self._set_current(None)

    def invalidate(self) -> None:
        """Drop the session as if the token expired server-side."""
        if self._current is not None:
            logger.warning("Session token invalidated", extra={"identity": self._current})
        self._set_current(None)
