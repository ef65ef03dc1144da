"""Error taxonomy shared by the upstream client, the coordinators and the HTTP layer."""

from typing import Any, List, Optional


class DraftServerError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, detail: Any = None, status_code: Optional[int] = None):
        self.message = message or self.default_message
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body: dict = {"message": self.message}
        if self.detail is not None:
            body["error"] = self.detail
        return body


class ValidationError(DraftServerError):
    status_code = 400
    default_message = "Validation failed"

    def to_dict(self) -> dict:
        if isinstance(self.detail, list):
            return {"message": self.message, "errors": self.detail}
        return super().to_dict()

    @classmethod
    def from_pydantic(cls, exc: Any, source: str = "body") -> "ValidationError":
        """Build from a pydantic ``ValidationError`` (or FastAPI's request variant)."""
        return cls(detail=format_validation_errors(exc.errors(), source))


def format_validation_errors(errors: List[dict], source: str = "body") -> List[dict]:
    formatted = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p != source]
        formatted.append({"field": ".".join(loc), "message": err.get("msg", "")})
    return formatted


class NotFoundError(DraftServerError):
    status_code = 404
    default_message = "Not found"


class InvalidStateError(DraftServerError):
    status_code = 409
    default_message = "Operation not allowed in current state"


class UpstreamError(DraftServerError):
    """Non-2xx answer (or transport failure) from the Shopify Admin API."""

    status_code = 502
    default_message = "Shopify API error"


class ConfigurationError(DraftServerError):
    status_code = 503
    default_message = "Server configuration error"


class InternalError(DraftServerError):
    status_code = 500
