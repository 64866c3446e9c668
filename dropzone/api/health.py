"""Health check endpoint."""

from pydantic import BaseModel

from dropzone.core.logger import LogIcon, logger
from dropzone.core.router import Router
from dropzone.core.settings import settings as st

router = Router(prefix="/")


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    service: str
    version: str
    storage_ready: bool


@router.get("/health")
async def health_check(global_dependencies) -> HealthResponse:
    state = global_dependencies.get("state")
    storage_ready = state is not None and "storage" in state
    logger.info("Health check requested", icon=LogIcon.HEALTHCHECK, storage_ready=storage_ready)
    return HealthResponse(
        status="healthy" if storage_ready else "starting",
        service=st.API_NAME,
        version=st.API_VERSION,
        storage_ready=storage_ready,
    )
