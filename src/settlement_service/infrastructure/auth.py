from typing import Protocol

import structlog
from jose import JWTError, jwt

from settlement_service.domain.exceptions import AuthError


logger = structlog.get_logger()


class Authenticator(Protocol):
    async def verify(self, token: str) -> str: ...


class JwtAuthenticator:
    """Verifies identity tokens and returns the stable user id from the ``sub`` claim."""

    def __init__(
        self,
        secret: str,
        algorithms: list[str] | None = None,
        audience: str | None = None,
        issuer: str | None = None,
    ) -> None:
        self._secret = secret
        self._algorithms = algorithms or ["HS256"]
        self._audience = audience
        self._issuer = issuer

    async def verify(self, token: str) -> str:
        if not token:
            raise AuthError("Missing bearer token")
        if not self._secret:
            logger.error("auth_secret_missing")
            raise AuthError("Identity verification is not configured")

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=self._algorithms,
                audience=self._audience,
                issuer=self._issuer,
                options={"verify_aud": self._audience is not None},
            )
        except JWTError as e:
            logger.info("identity_token_rejected", error=str(e))
            raise AuthError("Invalid identity token") from e

        user_id = claims.get("sub")
        if not user_id:
            logger.info("identity_token_without_subject")
            raise AuthError("Identity token has no subject")
        return str(user_id)
