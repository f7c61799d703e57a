from typing import Optional


class GatewayError(Exception):
    status_code = 400
    default_reason = "bad_request"

    def __init__(self, reason: Optional[str] = None, message: Optional[str] = None):
        self.reason = reason or self.default_reason
        self.message = message or self.reason.replace("_", " ").capitalize() + "."
        super().__init__(self.message)

    def payload(self) -> dict:
        return {"status": "error", "error": self.reason, "detail": self.message}


class Unauthorized(GatewayError):
    status_code = 401
    default_reason = "invalid_credential"


class Forbidden(GatewayError):
    status_code = 403
    default_reason = "forbidden"


class MissingParameter(GatewayError):
    status_code = 400
    default_reason = "missing_parameter"


class InvalidTransition(GatewayError):
    status_code = 400
    default_reason = "invalid_transition"


class NotFound(GatewayError):
    status_code = 404
    default_reason = "not_found"


class ExternalServiceFailure(GatewayError):
    status_code = 502
    default_reason = "external_service_failure"


class StoreUnreadable(GatewayError):
    status_code = 500
    default_reason = "store_unreadable"
