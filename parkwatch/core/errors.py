"""
Error taxonomy shared by the lifecycle engine, the notification emitter and
the realtime layer.

Routers never build HTTPExceptions for these; a single exception handler
installed in ``parkwatch.main`` maps them onto status codes so that callers
can tell "bad input" (400) from "stale state, please refetch" (409).
"""
from typing import Any, Dict, Optional


class ParkwatchError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, detail: str, **context: Any):
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "detail": self.detail}
        if self.context:
            body["context"] = self.context
        return body


class ValidationError(ParkwatchError):
    status_code = 400
    code = "validation_error"


class StateConflictError(ParkwatchError):
    status_code = 409
    code = "conflict"

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["refetch"] = True
        return body


class InvalidActionError(ValidationError, StateConflictError):
    """A review action outside approve/deny/under_review.

    It is bad input and an attempted transition that is not on the state
    graph at the same time, so it is catchable as either.
    """
    status_code = 400
    code = "invalid_action"

    def to_dict(self) -> Dict[str, Any]:
        return ParkwatchError.to_dict(self)


class NotFoundError(ParkwatchError):
    status_code = 404
    code = "not_found"


class PermissionDeniedError(ParkwatchError):
    status_code = 403
    code = "forbidden"


class TransportError(ParkwatchError):
    code = "transport_error"


class PersistenceError(ParkwatchError):
    code = "persistence_error"

    def __init__(self, detail: str, original: Optional[BaseException] = None, **context: Any):
        super().__init__(detail, **context)
        self.original = original
