"""Access to the process-wide batch job manager."""

from typing import Annotated

from fastapi import Depends, Request

from services.batch.manager import BatchJobManager


def get_batch_manager(request: Request) -> BatchJobManager:
    """Return the manager created in the application lifespan."""
    return request.app.state.batch_manager


BatchManager = Annotated[BatchJobManager, Depends(get_batch_manager)]
