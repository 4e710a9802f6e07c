"""Service-layer exceptions translated to HTTP responses in main.py."""
from typing import Optional


class PushHubError(Exception):
    """Base exception for service errors."""
    pass


class ValidationError(PushHubError):
    """Raised when a required field is missing or malformed."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class NotFoundError(PushHubError):
    """Raised when a requested record does not exist."""

    def __init__(self, resource: str, identifier):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class RegistryWriteError(PushHubError):
    """Raised when a device registry upsert or deactivation cannot be stored."""

    def __init__(self, operation: str, token_prefix: str, cause: Exception):
        self.operation = operation
        self.token_prefix = token_prefix
        self.cause = cause
        super().__init__(f"Registry {operation} failed for {token_prefix}: {cause}")
