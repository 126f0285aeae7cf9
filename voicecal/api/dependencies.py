"""FastAPI dependencies for the database and pipeline collaborators."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.orm import Session

from voicecal.database import get_db
from voicecal.services.context import PipelineContext, PipelineResources, get_resources


def get_pipeline_resources() -> PipelineResources:
    """Get the process-wide collaborators created at startup."""
    return get_resources()


def get_pipeline_context(
    db: Annotated[Session, Depends(get_db)],
    resources: Annotated[PipelineResources, Depends(get_pipeline_resources)],
) -> PipelineContext:
    """Bind the request's session to the collaborators."""
    return PipelineContext.from_resources(db, resources)
