"""Tests for error handling classes."""

import pytest

from crafthub.core.domain import PortKind
from crafthub.core.errors import (
    CommandConnectError,
    CommandFailedError,
    ContainerExistsError,
    CraftHubError,
    ErrorCode,
    ForbiddenError,
    GrantExistsError,
    InstanceNotFoundError,
    InvalidInstanceNameError,
    InvalidRequestError,
    InvalidVersionError,
    NameExistsError,
    NameImmutableError,
    PortInUseError,
    RuntimeOperationError,
    TokenExpiredError,
    UnauthorizedError,
    UpstreamUnavailableError,
    UserNotFoundError,
)


class TestNameImmutableError:
    """Tests for NameImmutableError."""

    def test_inherits_crafthub_error(self) -> None:
        exc = NameImmutableError()
        assert isinstance(exc, CraftHubError)
        assert isinstance(exc, Exception)

    def test_code_and_status(self) -> None:
        exc = NameImmutableError()
        assert exc.code == ErrorCode.NAME_IMMUTABLE
        assert exc.status_code == 400

    def test_default_message(self) -> None:
        assert NameImmutableError().message == "Instance name cannot be changed after creation"

    def test_to_response(self) -> None:
        """to_response() should return ErrorResponse with correct fields."""
        resp = NameImmutableError().to_response()

        assert resp.error.code == "NAME_IMMUTABLE"
        assert resp.model_dump() == {
            "error": {
                "code": "NAME_IMMUTABLE",
                "message": "Instance name cannot be changed after creation",
            }
        }


class TestPortInUseError:
    """Tests for PortInUseError."""

    def test_carries_kind_and_port(self) -> None:
        exc = PortInUseError(PortKind.RCON, 25575)

        assert exc.port_kind == PortKind.RCON
        assert exc.port == 25575
        assert exc.status_code == 409
        assert exc.message == "Rcon port 25575 is already in use"

    def test_without_port(self) -> None:
        """Store-level conflicts may not know the port value."""
        assert PortInUseError(PortKind.SERVER).message == "Server port is already in use"


class TestInvalidVersionError:
    """Tests for InvalidVersionError."""

    def test_minecraft(self) -> None:
        exc = InvalidVersionError("minecraft", "0.0.1")

        assert exc.code == ErrorCode.INVALID_MINECRAFT_VERSION
        assert exc.message == "Invalid Minecraft version: 0.0.1"

    def test_fabric(self) -> None:
        exc = InvalidVersionError("fabric", "9.9.9")

        assert exc.code == ErrorCode.INVALID_FABRIC_VERSION
        assert exc.kind == "fabric"


class TestRuntimeOperationError:
    """Tests for RuntimeOperationError."""

    def test_preserves_runtime_message(self) -> None:
        exc = RuntimeOperationError("start container", "port is already allocated")

        assert exc.operation == "start container"
        assert exc.message == "Failed to start container: port is already allocated"
        assert exc.status_code == 502


class TestStatusMapping:
    """Every error maps to its taxonomy status."""

    @pytest.mark.parametrize(
        ("exc", "status", "code"),
        [
            (UnauthorizedError(), 401, ErrorCode.UNAUTHORIZED),
            (TokenExpiredError(), 401, ErrorCode.TOKEN_EXPIRED),
            (ForbiddenError(), 403, ErrorCode.FORBIDDEN),
            (InvalidRequestError(), 400, ErrorCode.VALIDATION_ERROR),
            (InvalidInstanceNameError(), 400, ErrorCode.INVALID_NAME),
            (NameExistsError("a"), 409, ErrorCode.NAME_EXISTS),
            (GrantExistsError(), 409, ErrorCode.GRANT_EXISTS),
            (ContainerExistsError("mck-minecraft-a"), 409, ErrorCode.CONTAINER_EXISTS),
            (InstanceNotFoundError(), 404, ErrorCode.INSTANCE_NOT_FOUND),
            (UserNotFoundError(), 404, ErrorCode.USER_NOT_FOUND),
            (UpstreamUnavailableError(), 502, ErrorCode.UPSTREAM_UNAVAILABLE),
            (CommandConnectError(), 502, ErrorCode.RCON_CONNECT_FAILED),
            (CommandFailedError(), 502, ErrorCode.RCON_COMMAND_FAILED),
        ],
    )
    def test_status(self, exc: CraftHubError, status: int, code: ErrorCode) -> None:
        assert exc.status_code == status
        assert exc.code == code
