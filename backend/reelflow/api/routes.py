"""API route handlers and Pydantic response schemas."""

import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from reelflow import __version__
from reelflow.orchestrator.progress import Progress
from reelflow.orchestrator.service import WorkflowService
from reelflow.schemas.inputs import (
    ImageBatchInput,
    RetryItemInput,
    StartWorkflowInput,
    UpdateItemInput,
)
from reelflow.schemas.script import ScriptData
from reelflow.schemas.workflow import WorkflowDocument

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class StartResponse(BaseModel):
    id: uuid.UUID
    stage: str
    status: str


class DocumentResponse(BaseModel):
    """Full document with item collections as ordered arrays."""

    document: dict


class StatusResponse(BaseModel):
    document: dict
    progress: Progress


class WorkflowListItem(BaseModel):
    id: uuid.UUID
    kind: str
    title: str
    stage: str
    status: str
    merged_video_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DeleteResponse(BaseModel):
    id: uuid.UUID
    deleted: bool = True


def get_service(request: Request) -> WorkflowService:
    return request.app.state.service


def _document(doc: WorkflowDocument) -> DocumentResponse:
    return DocumentResponse(document=doc.dump_ordered())


async def _start_response(service: WorkflowService, doc_id: uuid.UUID) -> StartResponse:
    doc = await service.store.read(doc_id)
    return StartResponse(id=doc.id, stage=doc.stage, status=doc.status)


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


@router.post("/workflows", status_code=202, response_model=StartResponse)
async def start_workflow(request: StartWorkflowInput, service: WorkflowService = Depends(get_service)):
    """Create a workflow from script data or a source video."""
    doc_id = await service.start_workflow(request)
    return await _start_response(service, doc_id)


@router.get("/workflows", response_model=list[WorkflowListItem])
async def list_workflows(
    kind: Optional[str] = None,
    limit: int = 50,
    service: WorkflowService = Depends(get_service),
):
    docs = await service.list_workflows(kind=kind, limit=limit)
    return [
        WorkflowListItem(
            id=d.id,
            kind=d.kind,
            title=d.title,
            stage=d.stage,
            status=d.status,
            merged_video_url=d.merged_video_url,
            created_at=d.created_at,
            updated_at=d.updated_at,
        )
        for d in docs
    ]


@router.get("/workflows/{workflow_id}", response_model=StatusResponse)
async def get_workflow_status(workflow_id: uuid.UUID, service: WorkflowService = Depends(get_service)):
    """Status read; also repairs stuck items and resumes in-flight work."""
    report = await service.get_status(workflow_id)
    return StatusResponse(document=report.document.dump_ordered(), progress=report.progress)


@router.post("/workflows/{workflow_id}/continue", status_code=202, response_model=DocumentResponse)
async def continue_workflow(workflow_id: uuid.UUID, service: WorkflowService = Depends(get_service)):
    return _document(await service.continue_workflow(workflow_id))


@router.post("/workflows/{workflow_id}/stop", response_model=DocumentResponse)
async def stop_workflow(workflow_id: uuid.UUID, service: WorkflowService = Depends(get_service)):
    return _document(await service.stop_workflow(workflow_id))


@router.post("/workflows/{workflow_id}/retry", status_code=202, response_model=DocumentResponse)
async def retry_item(
    workflow_id: uuid.UUID,
    request: RetryItemInput,
    service: WorkflowService = Depends(get_service),
):
    doc = await service.retry_item(
        workflow_id,
        request.kind,
        request.index,
        new_prompt=request.new_prompt,
        video_model_name=request.video_model,
        video_mode=request.video_mode,
    )
    return _document(doc)


@router.post("/workflows/{workflow_id}/items", response_model=DocumentResponse)
async def update_item(
    workflow_id: uuid.UUID,
    request: UpdateItemInput,
    service: WorkflowService = Depends(get_service),
):
    doc = await service.update_item(workflow_id, request.kind, request.index, request.patch)
    return _document(doc)


@router.post("/workflows/{workflow_id}/script", response_model=DocumentResponse)
async def update_script(
    workflow_id: uuid.UUID,
    script: ScriptData,
    service: WorkflowService = Depends(get_service),
):
    return _document(await service.update_script(workflow_id, script))


@router.post("/workflows/{workflow_id}/merge", status_code=202, response_model=DocumentResponse)
async def retry_merge(workflow_id: uuid.UUID, service: WorkflowService = Depends(get_service)):
    return _document(await service.retry_merge(workflow_id))


@router.delete("/workflows/{workflow_id}", response_model=DeleteResponse)
async def delete_workflow(workflow_id: uuid.UUID, service: WorkflowService = Depends(get_service)):
    await service.delete_workflow(workflow_id)
    return DeleteResponse(id=workflow_id)


# ---------------------------------------------------------------------------
# Image batches
# ---------------------------------------------------------------------------


@router.post("/image-batches", status_code=202, response_model=StartResponse)
async def start_image_batch(request: ImageBatchInput, service: WorkflowService = Depends(get_service)):
    doc_id = await service.start_image_batch(request)
    return await _start_response(service, doc_id)


@router.post("/image-batches/{batch_id}/stop", response_model=DocumentResponse)
async def stop_image_batch(batch_id: uuid.UUID, service: WorkflowService = Depends(get_service)):
    return _document(await service.stop_image_batch(batch_id))


@router.get("/health")
async def health():
    return {"status": "ok", "version": __version__}
