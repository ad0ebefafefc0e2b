"""Pipeline API auth: shared worker token in the X-Worker-Token header."""
import hmac
from typing import Optional

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import APIKeyHeader

from .config import settings

WORKER_TOKEN_HEADER = "X-Worker-Token"

worker_token_header = APIKeyHeader(name=WORKER_TOKEN_HEADER, auto_error=False)


def token_matches(provided: Optional[str]) -> bool:
    if not provided or not settings.worker_token:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), settings.worker_token.encode("utf-8"))


def _check(provided: Optional[str]) -> None:
    if not settings.worker_token:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Auth not configured. Set WORKER_TOKEN.",
        )
    if not token_matches(provided):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing worker token",
        )


async def require_worker_token(token: Optional[str] = Depends(worker_token_header)) -> None:
    _check(token)


async def require_worker_token_for_sse(
    token: Optional[str] = Query(None),
    header_token: Optional[str] = Depends(worker_token_header),
) -> None:
    """EventSource cannot set headers, so ?token= is accepted as well."""
    _check(header_token or token)
