"""Request dependencies: the service container and the bearer token gate."""
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from afms.container import Container

logger = logging.getLogger(__name__)


def get_container(request: Request) -> Container:
    return request.app.state.container


async def verify_token(
    authorization: Optional[str] = Header(None),
    container: Container = Depends(get_container),
) -> None:
    """
    Require "Authorization: Bearer <API_TOKEN>" when API_TOKEN is configured.

    Raises:
        HTTPException: 401 if the header is missing, malformed or wrong
    """
    expected = container.settings.API_TOKEN
    if not expected:
        return

    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authentication scheme. Use Bearer token.")

    if not hmac.compare_digest(token.strip().encode(), expected.encode()):
        logger.warning("Rejected request with invalid API token")
        raise HTTPException(status_code=401, detail="Invalid token")
