from __future__ import annotations

from blackletter_core.remote.base import (
    RemoteService,
    ServiceApplicationError,
    ServiceError,
    ServiceTransportError,
)
from blackletter_core.remote.client import HttpRemoteService

__all__ = [
    "HttpRemoteService",
    "RemoteService",
    "ServiceApplicationError",
    "ServiceError",
    "ServiceTransportError",
]
