import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from crmsync.services.container import SyncServices, get_services

# Operator token header name
TOKEN_HEADER = "X-Operations-Token"


def current_services() -> SyncServices:
    """The configured SyncServices; 503 until the app has wired them."""
    try:
        return get_services()
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


def require_operator(
    x_operations_token: Optional[str] = Header(default=None, alias=TOKEN_HEADER),
    services: SyncServices = Depends(current_services),
) -> None:
    """Check X-Operations-Token when OPERATIONS_API_TOKEN is configured."""
    expected = services.settings.OPERATIONS_API_TOKEN
    if not expected:
        return
    if not x_operations_token or not hmac.compare_digest(x_operations_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid operations token")
