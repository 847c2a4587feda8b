"""Error handling module for crafthub.

This module defines error codes, exception classes, and response models.

Error Response Format:
{
    "error": {
        "code": "INSTANCE_NOT_FOUND",
        "message": "Instance not found"
    }
}

Error classes (HTTP status):
- validation (400): bad name shape, unknown version, immutable field
- conflict (409): duplicate name, port, grant or container
- not-found (404): missing instance or user
- runtime (502): container runtime and upstream failures
- access (401/403): authentication and authorization

Usage:
    from crafthub.core.errors import InstanceNotFoundError, PortInUseError

    raise InstanceNotFoundError()
    raise PortInUseError("server", 25565)
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes."""

    # Access
    UNAUTHORIZED = "UNAUTHORIZED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    FORBIDDEN = "FORBIDDEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_NAME = "INVALID_NAME"
    INVALID_MINECRAFT_VERSION = "INVALID_MINECRAFT_VERSION"
    INVALID_FABRIC_VERSION = "INVALID_FABRIC_VERSION"
    NAME_IMMUTABLE = "NAME_IMMUTABLE"

    # Conflict
    NAME_EXISTS = "NAME_EXISTS"
    PORT_IN_USE = "PORT_IN_USE"
    GRANT_EXISTS = "GRANT_EXISTS"
    CONTAINER_EXISTS = "CONTAINER_EXISTS"

    # Not found
    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"

    # Runtime / upstream
    RUNTIME_ERROR = "RUNTIME_ERROR"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    RCON_CONNECT_FAILED = "RCON_CONNECT_FAILED"
    RCON_COMMAND_FAILED = "RCON_COMMAND_FAILED"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response format."""

    error: ErrorDetail


class CraftHubError(Exception):
    """Base exception for crafthub.

    All crafthub specific exceptions inherit from this class so FastAPI can
    translate them with a single exception handler.

    Attributes:
        code: The error code from ErrorCode enum
        message: Human-readable error message
        status_code: HTTP status code to return
    """

    def __init__(self, code: ErrorCode, message: str, status_code: int) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse model."""
        return ErrorResponse(
            error=ErrorDetail(code=self.code.value, message=self.message)
        )


# =============================================================================
# Access
# =============================================================================


class UnauthorizedError(CraftHubError):
    """401 Unauthorized - Authentication required or token invalid."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(ErrorCode.UNAUTHORIZED, message, 401)


class TokenExpiredError(CraftHubError):
    """401 Unauthorized - Token expired."""

    def __init__(self, message: str = "Token expired") -> None:
        super().__init__(ErrorCode.TOKEN_EXPIRED, message, 401)


class ForbiddenError(CraftHubError):
    """403 Forbidden - Permission denied."""

    def __init__(self, message: str = "Permission denied") -> None:
        super().__init__(ErrorCode.FORBIDDEN, message, 403)


# =============================================================================
# Validation
# =============================================================================


class InvalidRequestError(CraftHubError):
    """400 Bad Request - Malformed or missing field."""

    def __init__(self, message: str = "Invalid request") -> None:
        super().__init__(ErrorCode.VALIDATION_ERROR, message, 400)


class InvalidInstanceNameError(CraftHubError):
    """400 Bad Request - Name is not a DNS-safe identifier."""

    def __init__(
        self,
        message: str = (
            "Instance name must be 3-32 characters of lowercase letters, digits "
            "and hyphens, and cannot start or end with a hyphen"
        ),
    ) -> None:
        super().__init__(ErrorCode.INVALID_NAME, message, 400)


class InvalidVersionError(CraftHubError):
    """400 Bad Request - Version not recognized by the version catalog."""

    def __init__(self, kind: str, version: str) -> None:
        self.kind = kind
        self.version = version
        code = (
            ErrorCode.INVALID_FABRIC_VERSION
            if kind == "fabric"
            else ErrorCode.INVALID_MINECRAFT_VERSION
        )
        label = "Fabric" if kind == "fabric" else "Minecraft"
        super().__init__(code, f"Invalid {label} version: {version}", 400)


class NameImmutableError(CraftHubError):
    """400 Bad Request - Instance name cannot be updated."""

    def __init__(
        self, message: str = "Instance name cannot be changed after creation"
    ) -> None:
        super().__init__(ErrorCode.NAME_IMMUTABLE, message, 400)


# =============================================================================
# Conflict
# =============================================================================


class NameExistsError(CraftHubError):
    """409 Conflict - Instance name already taken."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(
            ErrorCode.NAME_EXISTS, f"Instance with name '{name}' already exists", 409
        )


class PortInUseError(CraftHubError):
    """409 Conflict - Port already claimed by another instance."""

    def __init__(self, port_kind: str, port: int | None = None) -> None:
        self.port_kind = port_kind
        self.port = port
        if port is None:
            message = f"{port_kind.capitalize()} port is already in use"
        else:
            message = f"{port_kind.capitalize()} port {port} is already in use"
        super().__init__(ErrorCode.PORT_IN_USE, message, 409)


class GrantExistsError(CraftHubError):
    """409 Conflict - Access grant already exists."""

    def __init__(self, message: str = "User already has access to this instance") -> None:
        super().__init__(ErrorCode.GRANT_EXISTS, message, 409)


class ContainerExistsError(CraftHubError):
    """409 Conflict - A container with the derived name already exists."""

    def __init__(self, container_name: str) -> None:
        self.container_name = container_name
        super().__init__(
            ErrorCode.CONTAINER_EXISTS,
            f"Container with name {container_name} already exists",
            409,
        )


# =============================================================================
# Not found
# =============================================================================


class InstanceNotFoundError(CraftHubError):
    """404 Not Found - Instance not found."""

    def __init__(self, message: str = "Instance not found") -> None:
        super().__init__(ErrorCode.INSTANCE_NOT_FOUND, message, 404)


class UserNotFoundError(CraftHubError):
    """404 Not Found - Referenced user does not exist."""

    def __init__(self, message: str = "User not found") -> None:
        super().__init__(ErrorCode.USER_NOT_FOUND, message, 404)


# =============================================================================
# Runtime / upstream
# =============================================================================


class RuntimeOperationError(CraftHubError):
    """502 Bad Gateway - Container runtime operation failed.

    The runtime's own message is kept in ``message`` and the failed
    operation in ``operation``.
    """

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(
            ErrorCode.RUNTIME_ERROR, f"Failed to {operation}: {message}", 502
        )


class UpstreamUnavailableError(CraftHubError):
    """502 Bad Gateway - Upstream service unavailable."""

    def __init__(self, message: str = "Upstream service unavailable") -> None:
        super().__init__(ErrorCode.UPSTREAM_UNAVAILABLE, message, 502)


class CommandConnectError(CraftHubError):
    """502 Bad Gateway - Could not open or authenticate an RCON connection."""

    def __init__(self, message: str = "Failed to connect to RCON") -> None:
        super().__init__(ErrorCode.RCON_CONNECT_FAILED, message, 502)


class CommandFailedError(CraftHubError):
    """502 Bad Gateway - RCON command failed on an open connection."""

    def __init__(self, message: str = "Failed to execute RCON command") -> None:
        super().__init__(ErrorCode.RCON_COMMAND_FAILED, message, 502)
