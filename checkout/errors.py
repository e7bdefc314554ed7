"""
Common error constants and exception types.

Business-rule rejections are not exceptions (see WebhookReason); only
transport failures, malformed gateway responses and fatal configuration
problems are raised.
"""

# HTTP error details (avoid string duplication)
ERROR_UNAUTHORIZED = "Unauthorized"
ERROR_SESSION_NOT_FOUND = "Session not found"
ERROR_ACCESS_DENIED = "Access denied: This session does not belong to you"
ERROR_DENIED = "Denied"


class ConfigurationError(RuntimeError):
    """Required configuration is missing or invalid. The process must not start."""


class GatewayError(Exception):
    """Transient gateway failure: timeout, transport error or non-2xx status."""

    def __init__(self, message: str, *, operation: str = "", status_code: int | None = None):
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class GatewayResponseError(GatewayError):
    """Gateway answered 2xx but the body does not match the expected shape."""


class CredentialError(GatewayError):
    """Bearer credential could not be obtained from the gateway."""


class InvalidTransitionError(Exception):
    """A status write was attempted that the state machine forbids."""

    def __init__(self, session_id: str, current: str | None, target: str):
        super().__init__(f"Session {session_id}: {current} -> {target} is not allowed")
        self.session_id = session_id
        self.current = current
        self.target = target
