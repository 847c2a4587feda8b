"""JWT bearer token verification (PyJWT)."""

import jwt

from crafthub.app.config import AuthConfig, get_settings
from crafthub.core.domain import Principal, Role
from crafthub.core.errors import TokenExpiredError, UnauthorizedError
from crafthub.core.interfaces import TokenVerifier


class JwtTokenVerifier(TokenVerifier):
    """Verifies HS256 (or configured) access tokens.

    Subject is read from ``sub`` or, for tokens minted by the legacy auth
    service, ``userId``. The ``role`` claim must name a known role.
    """

    def __init__(self, config: AuthConfig | None = None) -> None:
        self._config = config or get_settings().auth

    async def verify(self, token: str) -> Principal:
        try:
            claims = jwt.decode(
                token,
                self._config.jwt_secret,
                algorithms=[self._config.jwt_algorithm],
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError() from e
        except jwt.PyJWTError as e:
            raise UnauthorizedError("Invalid token") from e

        subject = claims.get("sub") or claims.get("userId")
        if subject is None:
            raise UnauthorizedError("Invalid token")
        try:
            role = Role(claims.get("role"))
        except ValueError as e:
            raise UnauthorizedError("Invalid token") from e
        return Principal(subject_id=str(subject), role=role)
