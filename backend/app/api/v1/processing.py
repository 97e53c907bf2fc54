"""
Manual Processing API Router
POST /api/v1/process

Runs one processing pass synchronously, outside the queue. Used for
re-processing a single document and in environments without a queue
(standalone mode).

  400  documentId / vertical missing, unknown vertical, tenant not resolvable
  500  processing failed (document is marked failed; message included)
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.core.exceptions import InvalidJobError, TenantValidationError
from app.schemas.documents import ErrorResponse, ProcessRequest, ProcessResponse
from app.workers.consumer import QueueConsumer
from app.workers.jobs import build_job

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Processing"])


def get_consumer(request: Request) -> QueueConsumer:
    consumer = getattr(request.app.state, "consumer", None)
    if consumer is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Processing service not initialised")
    return consumer


@router.post(
    "/process",
    response_model=ProcessResponse,
    response_model_by_alias=True,
    responses={
        400: {"model": ErrorResponse, "description": "Missing or invalid job fields"},
        500: {"model": ErrorResponse, "description": "Processing failed"},
    },
    summary="Process one document now",
)
async def process_document(
    body: ProcessRequest,
    consumer: QueueConsumer = Depends(get_consumer),
) -> ProcessResponse:
    if not body.document_id or not body.vertical:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="documentId and vertical are required")

    try:
        job = build_job(
            (body.model_dump(by_alias=True, exclude_none=True),),
            job_id=f"manual-{uuid.uuid4()}",
        )
    except (InvalidJobError, TenantValidationError) as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        await consumer.process_job(job)
    except TenantValidationError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logger.error("Manual processing failed | doc=%s error=%s", job.document_id, exc)
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Processing failed: {exc}",
        ) from exc

    return ProcessResponse(
        success=True,
        message="Document processed successfully",
        document_id=str(job.document_id),
    )
