from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base for every failure the gateway reports to its clients."""

    status_code: int = 500
    error_type: str = "internal_error"
    code: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_body(self) -> Dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            }
        }


class InvalidRequest(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_request"


class NoProvidersAvailable(GatewayError):
    status_code = 503
    error_type = "service_unavailable"
    code = "no_provider_available"

    def __init__(self, message: str = "No providers available"):
        super().__init__(message)


class ModelNotFound(GatewayError):
    status_code = 503
    error_type = "service_unavailable"
    code = "model_not_found"

    def __init__(self, model: str):
        super().__init__(f"No provider found for model: {model}")
        self.model = model


class InsufficientBalance(GatewayError):
    status_code = 402
    error_type = "insufficient_balance"
    code = "insufficient_balance"

    def __init__(self, message: str = "Insufficient balance in 0G account"):
        super().__init__(message)


class ProviderError(GatewayError):
    error_type = "provider_error"
    code = "provider_error"

    def __init__(self, status: int, body: str):
        super().__init__(f"Provider error: {body}", status_code=status)
        self.upstream_status = status
        self.body = body


class StreamingError(GatewayError):
    error_type = "streaming_error"
    code = "streaming_error"


class InternalError(GatewayError):
    pass


class BrokerNotInitialized(InternalError):
    code = "broker_not_initialized"

    def __init__(self, message: str = "Service initialization error"):
        super().__init__(message)
