from fastapi import HTTPException, Request, status

from relayer.core.config import get_settings
from relayer.services.relayer import RelayerService


def get_relayer(request: Request) -> RelayerService:
    """The process-wide relayer service built in the app lifespan."""
    relayer = getattr(request.app.state, "relayer", None)
    if relayer is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Relayer service not initialized",
        )
    return relayer


def require_diagnostics() -> None:
    """Hide operational endpoints unless diagnostics are enabled."""
    if not get_settings().is_diagnostics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
