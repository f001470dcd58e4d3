"""Doubt API: create, browse, update, answer and rate doubts.

Endpoints:
- ``GET  /api/doubts``: visible doubts, newest first
- ``POST /api/doubts``: raise a doubt (students)
- ``GET  /api/doubts/analytics/overview``: staff analytics
- ``GET  /api/doubts/{id}``: doubt with thread and ratings
- ``PUT  /api/doubts/{id}``: status / assignment / fields
- ``POST /api/doubts/{id}/responses``: reply in the thread
- ``POST /api/doubts/{id}/rate``: rate a resolved doubt
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from models.doubt import Doubt, DoubtDetail, DoubtPriority, DoubtRating, DoubtResponse, DoubtStatus
from models.principal import Principal
from models.request import (
    DoubtCreateRequest,
    DoubtFilters,
    DoubtPage,
    DoubtUpdateRequest,
    RatingRequest,
    ResponseCreateRequest,
)
from services.analytics import AnalyticsOverview, Period
from services.auth import get_principal
from services.container import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/doubts", tags=["doubts"])


@router.get("", response_model=DoubtPage)
async def list_doubts(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: DoubtStatus | None = None,
    subject: str | None = Query(None, min_length=1, max_length=100),
    priority: DoubtPriority | None = None,
    student_id: str | None = None,
    educator_id: str | None = None,
    search: str | None = Query(None, min_length=1, max_length=255),
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    filters = DoubtFilters(
        status=status,
        subject=subject,
        priority=priority,
        student_id=student_id,
        educator_id=educator_id,
        search=search,
    )
    return await services.manager.list_doubts(principal, filters, page=page, limit=limit)


@router.post("", response_model=Doubt, status_code=201)
async def create_doubt(
    req: DoubtCreateRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.manager.create_doubt(principal, req)


@router.get("/analytics/overview", response_model=AnalyticsOverview)
async def analytics_overview(
    period: Period = Period.WEEK,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.analytics.overview(principal, period)


@router.get("/{doubt_id}", response_model=DoubtDetail)
async def get_doubt(
    doubt_id: str,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.manager.get_doubt(principal, doubt_id)


@router.put("/{doubt_id}", response_model=Doubt)
async def update_doubt(
    doubt_id: str,
    req: DoubtUpdateRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.manager.update_doubt(principal, doubt_id, req)


@router.post("/{doubt_id}/responses", response_model=DoubtResponse, status_code=201)
async def add_response(
    doubt_id: str,
    req: ResponseCreateRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.manager.add_response(principal, doubt_id, req)


@router.post("/{doubt_id}/rate", response_model=DoubtRating, status_code=201)
async def rate_doubt(
    doubt_id: str,
    req: RatingRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.manager.rate_doubt(principal, doubt_id, req)
