"""Custom exception hierarchy for the escrow engine."""


class EscrowEngineError(Exception):
    """Base exception for all escrow engine errors."""


# --- Configuration ---
class ConfigError(EscrowEngineError):
    """Invalid or missing configuration."""


# --- Input ---
class ValidationError(EscrowEngineError):
    """Request input is malformed or incomplete."""


class InvalidAmount(ValidationError):
    """Monetary amount is zero, negative or otherwise unusable."""


# --- Lifecycle ---
class InvalidTransition(EscrowEngineError):
    """Requested transition is not allowed from the current state."""

    def __init__(self, message: str, *, current: str | None = None, target: str | None = None):
        self.current = current
        self.target = target
        super().__init__(message)


class ConflictError(InvalidTransition):
    """A concurrent writer changed the aggregate first."""


class Unauthorized(EscrowEngineError):
    """Actor lacks permission for the requested operation."""


class NotFound(EscrowEngineError):
    """Referenced order, item or transaction does not exist."""


class ConsistencyError(EscrowEngineError):
    """A money or state invariant would be violated. Always fatal."""


# --- Payment gateway ---
class GatewayError(EscrowEngineError):
    """Payment gateway communication error."""

    def __init__(self, message: str, *, operation: str = "", status_code: int | None = None):
        self.operation = operation
        self.status_code = status_code
        super().__init__(message)


class RetryableGatewayError(GatewayError):
    """Transient failure (timeout, 5xx, rate limit). Safe to retry later."""


class TerminalGatewayError(GatewayError):
    """Permanent failure (declined, rejected request). Retrying will not help."""


class WebhookSignatureError(GatewayError):
    """Webhook payload signature did not verify."""
