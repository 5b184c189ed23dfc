from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from mobilecrm.api.responses import Envelope, success
from mobilecrm.core.auth import ActorUser, get_current_user
from mobilecrm.core.database import get_db
from mobilecrm.reporting.schemas import DashboardStats, ForecastData, RecentActivitiesData
from mobilecrm.reporting.service import dashboard_service, forecast_service

dashboard_router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])
forecast_router = APIRouter(prefix="/api/forecast", tags=["forecast"])


@dashboard_router.get("/stats", response_model=Envelope[DashboardStats])
def dashboard_stats(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[DashboardStats]:
    return success(dashboard_service.stats(db, user))


@dashboard_router.get("/recent-activities", response_model=Envelope[RecentActivitiesData])
def recent_activities(
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[RecentActivitiesData]:
    return success(dashboard_service.recent_activities(db, user, limit))


@forecast_router.get("", response_model=Envelope[ForecastData])
def get_forecast(
    team_id: uuid.UUID | None = Query(default=None, alias="teamId"),
    user_id: uuid.UUID | None = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[ForecastData]:
    return success(forecast_service.forecast(db, user, team_id=team_id, user_id=user_id))
