from __future__ import annotations

from typing import Any, Dict, List, Optional


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP status at the API boundary."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, detail: str, *, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(detail)
        self.detail = detail
        self.errors: List[Dict[str, Any]] = list(errors or [])


class ValidationError(ServiceError):
    """Malformed or out-of-range input. Carries one entry per failing field."""

    status_code = 400
    code = "validation_error"

    @property
    def fields(self) -> List[str]:
        return [str(e.get("field", "")) for e in self.errors]


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"


class AuthorizationError(ServiceError):
    status_code = 403
    code = "forbidden"


class ConflictError(ServiceError):
    """The entity's current state does not allow the requested transition."""

    status_code = 409
    code = "conflict"


class ServiceUnavailableError(ServiceError):
    status_code = 503
    code = "service_unavailable"


class InternalError(ServiceError):
    status_code = 500
    code = "internal_error"


class TransportError(Exception):
    """Broker-level failure raised by the transport router."""


class NotConnectedError(TransportError):
    """Raised when subscribe/publish is attempted without a live broker connection."""


class TransportConnectionError(TransportError, ConnectionError):
    """connect() did not reach the Connected state within the configured timeout."""
