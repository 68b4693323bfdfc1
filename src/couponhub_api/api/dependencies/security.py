import hmac

from fastapi import Header, HTTPException, status

from couponhub_api.core.logging import security_logger
from couponhub_api.core.settings import settings


async def require_internal_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    """Gate collaborator endpoints; open when no key is configured."""

    if not settings.internal_api_key:
        return

    if not hmac.compare_digest(x_api_key.encode("utf-8"), settings.internal_api_key.encode("utf-8")):
        security_logger.warning("Rejected request with invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
