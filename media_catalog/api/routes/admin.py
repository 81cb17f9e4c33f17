"""Admin repair endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from media_catalog.api.dependencies import get_services, require_api_key
from media_catalog.domain.models import ProcessingStats, RepairResult
from media_catalog.use_cases.pipeline_factories import PipelineServices

router = APIRouter(dependencies=[Depends(require_api_key)])


class GroupSyncRequest(BaseModel):
    source_message_id: str = Field(..., min_length=1)
    force: bool = False


@router.post("/reset-stuck", response_model=RepairResult)
def reset_stuck(services: PipelineServices = Depends(get_services)) -> RepairResult:
    return services.repair.reset_stuck_messages()


@router.post("/process-pending", response_model=RepairResult)
def process_pending(
    batch_size: int | None = Query(default=None, ge=1, le=1000),
    services: PipelineServices = Depends(get_services),
) -> RepairResult:
    return services.repair.process_pending_messages(batch_size)


@router.post("/media-groups/sync-pending", response_model=RepairResult)
def sync_pending_media_groups(
    batch_size: int | None = Query(default=None, ge=1, le=1000),
    services: PipelineServices = Depends(get_services),
) -> RepairResult:
    return services.repair.sync_pending_media_groups(batch_size)


@router.post("/media-groups/{group_id}/sync", response_model=RepairResult)
def sync_media_group(
    group_id: str,
    request: GroupSyncRequest,
    services: PipelineServices = Depends(get_services),
) -> RepairResult:
    return services.repair.sync_media_group_content(
        group_id, request.source_message_id, request.force
    )


@router.post("/messages/{message_id}/fix-content-disposition", response_model=RepairResult)
def fix_content_disposition(
    message_id: str, services: PipelineServices = Depends(get_services)
) -> RepairResult:
    return services.repair.fix_content_disposition(message_id)


@router.post("/messages/{message_id}/redownload", response_model=RepairResult)
def redownload_media(
    message_id: str, services: PipelineServices = Depends(get_services)
) -> RepairResult:
    return services.repair.redownload_media(message_id)


@router.get("/stats", response_model=ProcessingStats)
def processing_stats(
    services: PipelineServices = Depends(get_services),
) -> ProcessingStats:
    return services.repair.get_processing_stats()


@router.get("/messages/{message_id}/audit")
def message_audit_log(
    message_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    services: PipelineServices = Depends(get_services),
) -> list[dict[str, Any]]:
    entries = services.repository.get_audit_logs(message_id=message_id, limit=limit)
    return [entry.model_dump(mode="json") for entry in entries]
