"""Routes mounted for every role."""

from fastapi import APIRouter, Depends

from chatrelay.api.deps import get_pipeline
from chatrelay.domain.pipeline import MessagePipeline

router = APIRouter()


@router.get("/health")
def health(pipeline: MessagePipeline = Depends(get_pipeline)) -> dict:
    """Health check endpoint."""
    return {"status": "ok", "store": pipeline.store_kind}
