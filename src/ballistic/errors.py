"""
Error taxonomy for Ballistic.

Domain errors are raised by the decision components (policy, recurrence) and the
service layer. Outer surfaces (REST, MCP tools, CLI) translate them into their
own response formats; nothing here retries or recovers.
"""

from typing import Dict, List, Optional, Iterable


class BallisticError(Exception):
    """Base class for all domain errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, object]:
        return {"error": type(self).__name__, "message": self.message}


class Unauthorized(BallisticError):
    """Actor lacks permission for the requested operation or field set."""

    status_code = 403

    def __init__(self, message: str = "You do not have permission to perform this action.",
                 denied_fields: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.denied_fields = sorted(denied_fields or [])

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        if self.denied_fields:
            data["denied_fields"] = self.denied_fields
        return data


class MalformedFieldSet(Unauthorized):
    """A changed-field set references names outside the item schema."""

    def __init__(self, unknown_fields: Iterable[str]):
        unknown = sorted(unknown_fields)
        super().__init__(f"Unknown fields: {', '.join(unknown)}", denied_fields=unknown)
        self.unknown_fields = unknown


class InvalidRecurrenceRule(BallisticError):
    """Recurrence rule string is malformed or unsupported."""

    status_code = 422

    def __init__(self, rule: Optional[str], reason: str):
        super().__init__(f"Invalid recurrence rule {rule!r}: {reason}")
        self.rule = rule
        self.reason = reason


class NotFound(BallisticError):
    """Requested resource does not exist or is not visible to the actor."""

    status_code = 404

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found" if resource_id is None else f"{resource} {resource_id} not found"
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class ValidationFailed(BallisticError):
    """Payload failed validation; carries a field -> messages mapping."""

    status_code = 422

    def __init__(self, errors: Dict[str, List[str]], message: str = "The given data was invalid."):
        super().__init__(message)
        self.errors = errors

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationFailed":
        return cls({field: [message]}, message)


class RateLimited(BallisticError):
    """Too many requests for the named limit."""

    status_code = 429

    def __init__(self, limit_name: str, retry_after: int):
        super().__init__(f"Too many requests ({limit_name}). Retry after {retry_after}s.")
        self.limit_name = limit_name
        self.retry_after = retry_after
