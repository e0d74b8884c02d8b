"""
Survey endpoints: dashboard list and direct record edits
"""

import math
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, get_enum_cache, get_row_sink, verify_api_key
from schemas.api import (
    PaginationMetadata,
    SurveyCreateRequest,
    SurveyListResponse,
    SurveyQueryParams,
    SurveyResponse,
    SurveyUpdateRequest,
)
from services.survey_service import SurveyService
from reconciliation.base import RowSink
from reconciliation.enum_cache import EnumCache
from core.exceptions import ConflictError, RecordNotFoundError, SyncException
from core.sanitizer import sanitize_error
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/surveys", tags=["Surveys"])


def get_survey_service(
    db: AsyncSession = Depends(get_db),
    enum_cache: EnumCache = Depends(get_enum_cache),
    sink: Optional[RowSink] = Depends(get_row_sink)
) -> SurveyService:
    return SurveyService(db, enum_cache, sink=sink)


def _to_http_error(error: Exception, fallback: str) -> HTTPException:
    if isinstance(error, RecordNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, ConflictError):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=sanitize_error(error, fallback))


@router.get("", response_model=SurveyListResponse)
async def list_surveys(
    request: Request,
    params: SurveyQueryParams = Depends(),
    service: SurveyService = Depends(get_survey_service)
):
    """
    Paginated, filtered survey list.

    Filters: search, job_status, service_area, exchange_code,
    budget range and master input year.
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] GET /surveys - page={params.page}, page_size={params.page_size}")

    summaries, total_items = await service.list_summaries(params)
    total_pages = math.ceil(total_items / params.page_size) if total_items > 0 else 0

    filters_applied = params.model_dump(exclude_none=True, exclude={"page", "page_size"})
    return SurveyListResponse(
        items=await service.to_responses(summaries),
        pagination=PaginationMetadata(
            total_items=total_items,
            total_pages=total_pages,
            current_page=params.page,
            page_size=params.page_size,
            has_next=params.page < total_pages,
            has_previous=params.page > 1
        ),
        filters_applied={k: str(v) for k, v in filters_applied.items()}
    )


@router.get("/{case_id}", response_model=SurveyResponse)
async def get_survey(case_id: str, service: SurveyService = Depends(get_survey_service)):
    try:
        summary = await service.get_summary(case_id)
    except SyncException as e:
        raise _to_http_error(e, "Failed to load survey")
    return (await service.to_responses([summary]))[0]


@router.post(
    "",
    response_model=SurveyResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)]
)
async def create_survey(
    data: SurveyCreateRequest,
    service: SurveyService = Depends(get_survey_service)
):
    try:
        summary = await service.create_summary(data)
    except SyncException as e:
        raise _to_http_error(e, "Failed to create survey")
    return (await service.to_responses([summary]))[0]


@router.patch("/{case_id}", response_model=SurveyResponse, dependencies=[Depends(verify_api_key)])
async def update_survey(
    case_id: str,
    changes: SurveyUpdateRequest,
    service: SurveyService = Depends(get_survey_service)
):
    """Update a survey; status fields are mirrored onto the master record"""
    try:
        summary = await service.update_summary(case_id, changes)
    except SyncException as e:
        raise _to_http_error(e, "Failed to update survey")
    return (await service.to_responses([summary]))[0]


@router.delete(
    "/{case_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(verify_api_key)]
)
async def delete_survey(case_id: str, service: SurveyService = Depends(get_survey_service)):
    try:
        await service.delete_summary(case_id)
    except SyncException as e:
        raise _to_http_error(e, "Failed to delete survey")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
