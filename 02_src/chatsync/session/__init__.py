"""Session module: credentials, identity and presence."""

from .auth import IAuthProvider, LocalAuthProvider
from .connectivity import ConnectivityMonitor
from .gate import ISessionGate, SessionGate

__all__ = [
    "ConnectivityMonitor",
    "IAuthProvider",
    "ISessionGate",
    "LocalAuthProvider",
    "SessionGate",
]
