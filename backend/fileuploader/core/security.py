from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from fileuploader.core.config import Settings

TOKEN_ALGORITHM = "HS256"

Clock = Callable[[], datetime]


class TokenError(Exception):
    """Raised when token validation fails."""


@dataclass(frozen=True)
class AuthClaims:
    subject_id: str
    issued_at: datetime
    expires_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Issues and verifies HS256 identity tokens signed with a shared secret."""

    def __init__(self, secret: str, lifetime: timedelta, clock: Clock = _utcnow) -> None:
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret
        self._lifetime = lifetime
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(settings.jwt_secret_key, settings.token_lifetime)

    def issue(self, subject_id: str) -> str:
        if not subject_id:
            raise ValueError("Subject id must not be empty")
        issued_at = self._clock()
        expires_at = issued_at + self._lifetime
        to_encode: dict[str, Any] = {
            "sub": subject_id,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(to_encode, self._secret, algorithm=TOKEN_ALGORITHM)

    def verify(self, token: str) -> AuthClaims:
        if not token:
            raise TokenError("Missing token")

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenError("Malformed token") from exc
        # Compared before any key is used so a token cannot pick its own algorithm.
        if header.get("alg") != TOKEN_ALGORITHM:
            raise TokenError(f"Unexpected signing algorithm: {header.get('alg')!r}")

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise TokenError("Invalid token") from exc

        subject_id = payload.get("sub")
        expires = payload.get("exp")
        issued = payload.get("iat", 0)
        if not isinstance(subject_id, str) or not subject_id:
            raise TokenError("Invalid token payload")
        if not isinstance(expires, (int, float)) or isinstance(expires, bool):
            raise TokenError("Invalid token payload")
        if not isinstance(issued, (int, float)) or isinstance(issued, bool):
            raise TokenError("Invalid token payload")

        if self._clock().timestamp() >= expires:
            raise TokenError("Token expired")

        return AuthClaims(
            subject_id=subject_id,
            issued_at=datetime.fromtimestamp(issued, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
        )
