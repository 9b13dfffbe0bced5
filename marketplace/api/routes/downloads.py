"""Download redemption route. The token itself is the credential."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from marketplace.api.deps import get_entitlement_service
from marketplace.schemas.download import DownloadResponse
from marketplace.services.entitlement_service import EntitlementService

router = APIRouter(prefix="/downloads", tags=["downloads"])


def get_client_ip(request: Request) -> str | None:
    """Peer address. Behind a trusted proxy uvicorn has already applied X-Forwarded-For."""
    return request.client.host if request.client else None


@router.get(
    "/{token}",
    response_model=DownloadResponse,
    summary="Redeem download token",
    description=(
        "Consumes one download and returns a short-lived file location. "
        "404 unknown or revoked, 410 expired, 403 limit reached."
    ),
)
def redeem_download(
    token: str,
    service: Annotated[EntitlementService, Depends(get_entitlement_service)],
    caller_ip: Annotated[str | None, Depends(get_client_ip)],
) -> DownloadResponse:
    return service.redeem(token, caller_ip)
