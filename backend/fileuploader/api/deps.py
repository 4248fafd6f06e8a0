import logging

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from fileuploader.core.errors import RateLimitedError, UnauthenticatedError
from fileuploader.core.security import AuthClaims, TokenError, TokenService
from fileuploader.services.ingestion import IngestionService
from fileuploader.services.rate_limiter import SlidingWindowRateLimiter, rate_limit_key

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _client_host(request: Request) -> str | None:
    return request.client.host if request.client else None


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    return request.app.state.rate_limiter


def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion_service


async def get_current_claims(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    token_service: TokenService = Depends(get_token_service),
) -> AuthClaims:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise UnauthenticatedError()

    try:
        claims = token_service.verify(credentials.credentials)
    except TokenError as exc:
        logger.warning("Invalid token from %s: %s", _client_host(request), exc)
        raise UnauthenticatedError() from None

    request.state.subject_id = claims.subject_id
    return claims


async def enforce_rate_limit(
    request: Request,
    claims: AuthClaims = Depends(get_current_claims),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
) -> AuthClaims:
    key = rate_limit_key(claims, _client_host(request))
    if not limiter.allow(key):
        logger.warning("Rate limit exceeded for %s (ip=%s)", key, _client_host(request))
        raise RateLimitedError(limiter.retry_after(key))
    return claims
