"""Token verification interface."""

from abc import ABC, abstractmethod

from crafthub.core.domain import Principal


class TokenVerifier(ABC):
    """Verifies bearer tokens issued by the authentication service.

    Implementations: JwtTokenVerifier
    """

    @abstractmethod
    async def verify(self, token: str) -> Principal:
        """Verify token and return its subject.

        Raises:
            TokenExpiredError: Token is past its expiry
            UnauthorizedError: Token is malformed or its signature is invalid
        """
        ...
