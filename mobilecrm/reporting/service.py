from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import Select, and_, func, select
from sqlalchemy.orm import Session

from mobilecrm.api.responses import as_utc
from mobilecrm.core.auth import ActorUser
from mobilecrm.crm.models import CRMActivity, CRMOpportunity
from mobilecrm.crm.repositories import ActivityRepository, OpportunityRepository
from mobilecrm.crm.service import ActivityService, OpportunityService, utcnow
from mobilecrm.crm.schemas import ActivityRead
from mobilecrm.crm.stages import round_amount, weighted_value
from mobilecrm.reporting.schemas import (
    DashboardStats,
    ForecastData,
    OpportunityOverview,
    PipelineOverview,
    RecentActivitiesData,
    StageBreakdownRow,
    StatusBreakdownRow,
)

logger = logging.getLogger("mobilecrm.reporting")

UPCOMING_WINDOW = timedelta(days=30)
EXPECTED_WINDOW = timedelta(days=60)
DASHBOARD_RECENT_LIMIT = 5


class _Bucket:
    __slots__ = ("count", "total_value", "weighted_value")

    def __init__(self) -> None:
        self.count = 0
        self.total_value = Decimal("0")
        self.weighted_value = Decimal("0")

    def add(self, opportunity: CRMOpportunity) -> None:
        self.count += 1
        self.total_value += Decimal(str(opportunity.value))
        self.weighted_value += weighted_value(opportunity.value, opportunity.probability)


def _group(opportunities: Iterable[CRMOpportunity], attribute: str) -> dict[str, _Bucket]:
    buckets: dict[str, _Bucket] = {}
    for opportunity in opportunities:
        buckets.setdefault(getattr(opportunity, attribute), _Bucket()).add(opportunity)
    return buckets


def _stage_rows(opportunities: Iterable[CRMOpportunity]) -> list[StageBreakdownRow]:
    buckets = _group(opportunities, "stage")
    ordered = sorted(buckets.items(), key=lambda item: (-item[1].count, item[0]))
    return [
        StageBreakdownRow(
            stage=stage,
            count=bucket.count,
            total_value=round_amount(bucket.total_value),
            weighted_value=round_amount(bucket.weighted_value),
        )
        for stage, bucket in ordered
    ]


def _in_window(opportunity: CRMOpportunity, now: datetime, window: timedelta) -> bool:
    close_date = as_utc(opportunity.expected_close_date)
    return close_date is not None and now <= close_date <= now + window


def _narrow(stmt: Select, team_id: uuid.UUID | None, user_id: uuid.UUID | None) -> Select:
    if team_id is not None:
        stmt = stmt.where(CRMOpportunity.team_id == team_id)
    if user_id is not None:
        stmt = stmt.where(CRMOpportunity.salesperson_id == user_id)
    return stmt


@dataclass(slots=True)
class DashboardService:
    opportunity_repository: OpportunityRepository = OpportunityRepository()
    activity_repository: ActivityRepository = ActivityRepository()
    activity_service: ActivityService = ActivityService()

    def stats(self, session: Session, actor_user: ActorUser) -> DashboardStats:
        stmt = select(CRMOpportunity).where(
            and_(CRMOpportunity.status == "open", CRMOpportunity.is_active.is_(True))
        )
        stmt = self.opportunity_repository.apply_scope_query(stmt, actor_user, strict=True)
        opportunities = session.scalars(stmt).all()

        now = utcnow()
        total_value = sum((Decimal(str(item.value)) for item in opportunities), Decimal("0"))
        total_weighted = sum(
            (weighted_value(item.value, item.probability) for item in opportunities),
            Decimal("0"),
        )

        pending_activities = session.scalar(
            select(func.count())
            .select_from(CRMActivity)
            .where(
                and_(
                    CRMActivity.assigned_to_id == actor_user.user_id,
                    CRMActivity.status.in_(["pending", "in_progress"]),
                    CRMActivity.is_active.is_(True),
                )
            )
        ) or 0

        logger.info(
            "dashboard.stats",
            extra={"user_id": str(actor_user.user_id), "entity_type": "crm.opportunity"},
        )
        return DashboardStats(
            total_opportunities=len(opportunities),
            total_value=round_amount(total_value),
            weighted_value=round_amount(total_weighted),
            upcoming_closing=sum(1 for item in opportunities if _in_window(item, now, UPCOMING_WINDOW)),
            expected_closing=sum(1 for item in opportunities if _in_window(item, now, EXPECTED_WINDOW)),
            pending_activities=pending_activities,
            recent_activities=self._recent(session, actor_user, DASHBOARD_RECENT_LIMIT),
            pipeline_breakdown=_stage_rows(opportunities),
        )

    def recent_activities(self, session: Session, actor_user: ActorUser, limit: int) -> RecentActivitiesData:
        return RecentActivitiesData(activities=self._recent(session, actor_user, limit))

    def _recent(self, session: Session, actor_user: ActorUser, limit: int) -> list[ActivityRead]:
        stmt = select(CRMActivity).where(CRMActivity.is_active.is_(True))
        stmt = self.activity_repository.apply_scope_query(stmt, actor_user, strict=True)
        activities = session.scalars(stmt.order_by(CRMActivity.created_at.desc()).limit(limit)).all()
        return self.activity_service.to_reads(session, activities)


@dataclass(slots=True)
class ForecastService:
    opportunity_repository: OpportunityRepository = OpportunityRepository()

    def forecast(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        team_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
    ) -> ForecastData:
        stmt = select(CRMOpportunity).where(
            and_(CRMOpportunity.status == "open", CRMOpportunity.is_active.is_(True))
        )
        stmt = _narrow(self.opportunity_repository.apply_scope_query(stmt, actor_user), team_id, user_id)
        opportunities = session.scalars(
            stmt.order_by(CRMOpportunity.expected_close_date.asc(), CRMOpportunity.created_at.asc())
        ).all()

        now = utcnow()
        upcoming = [item for item in opportunities if _in_window(item, now, UPCOMING_WINDOW)]
        expected = [item for item in opportunities if _in_window(item, now, EXPECTED_WINDOW)]
        return ForecastData(
            upcoming_closing=OpportunityService.to_reads(session, upcoming),
            expected_closing=OpportunityService.to_reads(session, expected),
            total_value=round_amount(sum((Decimal(str(item.value)) for item in opportunities), Decimal("0"))),
            weighted_value=round_amount(
                sum((weighted_value(item.value, item.probability) for item in opportunities), Decimal("0"))
            ),
        )


@dataclass(slots=True)
class OpportunityStatsService:
    opportunity_repository: OpportunityRepository = OpportunityRepository()

    def overview(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        team_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
    ) -> OpportunityOverview:
        stmt = select(CRMOpportunity).where(CRMOpportunity.is_active.is_(True))
        stmt = _narrow(self.opportunity_repository.apply_scope_query(stmt, actor_user, strict=True), team_id, user_id)
        opportunities = session.scalars(stmt).all()

        status_buckets = _group(opportunities, "status")
        status_stats = [
            StatusBreakdownRow(
                status=status_name,
                count=bucket.count,
                total_value=round_amount(bucket.total_value),
                weighted_value=round_amount(bucket.weighted_value),
            )
            for status_name, bucket in sorted(status_buckets.items(), key=lambda item: (-item[1].count, item[0]))
        ]
        return OpportunityOverview(
            status_stats=status_stats,
            stage_stats=_stage_rows(item for item in opportunities if item.status == "open"),
            total_opportunities=len(opportunities),
        )


@dataclass(slots=True)
class PipelineStatsService:
    opportunity_repository: OpportunityRepository = OpportunityRepository()

    def overview(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        pipeline_id: uuid.UUID | None = None,
        team_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
    ) -> PipelineOverview:
        stmt = select(CRMOpportunity).where(
            and_(CRMOpportunity.status == "open", CRMOpportunity.is_active.is_(True))
        )
        if pipeline_id is not None:
            stmt = stmt.where(CRMOpportunity.pipeline_id == pipeline_id)
        stmt = _narrow(self.opportunity_repository.apply_scope_query(stmt, actor_user), team_id, user_id)
        opportunities = session.scalars(stmt).all()

        return PipelineOverview(
            stage_stats=_stage_rows(opportunities),
            total_opportunities=len(opportunities),
            total_value=round_amount(sum((Decimal(str(item.value)) for item in opportunities), Decimal("0"))),
        )


dashboard_service = DashboardService()
forecast_service = ForecastService()
