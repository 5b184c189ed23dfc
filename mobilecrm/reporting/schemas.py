from __future__ import annotations

from pydantic import BaseModel

from mobilecrm.crm.schemas import ActivityRead, OpportunityRead


class StageBreakdownRow(BaseModel):
    stage: str
    count: int
    total_value: int
    weighted_value: int


class StatusBreakdownRow(BaseModel):
    status: str
    count: int
    total_value: int
    weighted_value: int


class DashboardStats(BaseModel):
    total_opportunities: int
    total_value: int
    weighted_value: int
    upcoming_closing: int
    expected_closing: int
    pending_activities: int
    recent_activities: list[ActivityRead]
    pipeline_breakdown: list[StageBreakdownRow]


class RecentActivitiesData(BaseModel):
    activities: list[ActivityRead]


class ForecastData(BaseModel):
    upcoming_closing: list[OpportunityRead]
    expected_closing: list[OpportunityRead]
    total_value: int
    weighted_value: int


class OpportunityOverview(BaseModel):
    status_stats: list[StatusBreakdownRow]
    stage_stats: list[StageBreakdownRow]
    total_opportunities: int


class PipelineOverview(BaseModel):
    stage_stats: list[StageBreakdownRow]
    total_opportunities: int
    total_value: int
