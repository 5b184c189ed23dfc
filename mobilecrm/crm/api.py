from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from mobilecrm.api.responses import Envelope, MessageEnvelope, PageParams, page_params, success
from mobilecrm.core.auth import ActorUser, get_current_user
from mobilecrm.core.database import get_db
from mobilecrm.core.rbac import require_roles
from mobilecrm.crm.schemas import (
    ActivityCreate,
    ActivityData,
    ActivityListData,
    ActivityStatus,
    ActivityType,
    ActivityTypesData,
    ActivityUpdate,
    ConfigOption,
    CustomerCreate,
    CustomerData,
    CustomerListData,
    CustomerStatus,
    CustomerUpdate,
    LeadConvertData,
    LeadConvertRequest,
    LeadCreate,
    LeadData,
    LeadListData,
    LeadSource,
    LeadSourcesData,
    LeadStatus,
    LeadUpdate,
    OpportunityCreate,
    OpportunityData,
    OpportunityListData,
    OpportunityStatus,
    OpportunityStatusesData,
    OpportunityUpdate,
    PipelineCreate,
    PipelineData,
    PipelineDetailData,
    PipelineListData,
    PipelineUpdate,
    SortOrder,
)
from mobilecrm.crm.service import (
    ActivityService,
    CustomerService,
    LeadService,
    OpportunityService,
    PipelineService,
)
from mobilecrm.reporting.schemas import OpportunityOverview, PipelineOverview
from mobilecrm.reporting.service import OpportunityStatsService, PipelineStatsService

customers_router = APIRouter(prefix="/api/customers", tags=["customers"])
leads_router = APIRouter(prefix="/api/leads", tags=["leads"])
activities_router = APIRouter(prefix="/api/activities", tags=["activities"])
pipeline_router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])
opportunities_router = APIRouter(prefix="/api/opportunities", tags=["opportunities"])
config_router = APIRouter(prefix="/api/config", tags=["config"])

customer_service = CustomerService()
lead_service = LeadService()
activity_service = ActivityService()
pipeline_service = PipelineService()
opportunity_service = OpportunityService()
opportunity_stats_service = OpportunityStatsService()
pipeline_stats_service = PipelineStatsService()

require_pipeline_admin = require_roles("admin", "manager")

ACTIVITY_TYPE_OPTIONS = [
    ConfigOption(value="call", label="Phone Call"),
    ConfigOption(value="email", label="Email"),
    ConfigOption(value="meeting", label="Meeting"),
    ConfigOption(value="task", label="Task"),
    ConfigOption(value="note", label="Note"),
    ConfigOption(value="demo", label="Demo"),
    ConfigOption(value="proposal", label="Proposal"),
    ConfigOption(value="follow_up", label="Follow Up"),
]
LEAD_SOURCE_OPTIONS = [
    ConfigOption(value="website", label="Website"),
    ConfigOption(value="referral", label="Referral"),
    ConfigOption(value="cold_call", label="Cold Call"),
    ConfigOption(value="email", label="Email"),
    ConfigOption(value="social_media", label="Social Media"),
    ConfigOption(value="advertisement", label="Advertisement"),
    ConfigOption(value="event", label="Event"),
    ConfigOption(value="other", label="Other"),
]
OPPORTUNITY_STATUS_OPTIONS = [
    ConfigOption(value="open", label="Open"),
    ConfigOption(value="won", label="Won"),
    ConfigOption(value="lost", label="Lost"),
    ConfigOption(value="cancelled", label="Cancelled"),
]


# customers


@customers_router.get("", response_model=Envelope[CustomerListData])
def list_customers(
    search: str | None = Query(default=None),
    status_filter: CustomerStatus | None = Query(default=None, alias="status"),
    team_id: uuid.UUID | None = Query(default=None, alias="teamId"),
    salesperson_id: uuid.UUID | None = Query(default=None, alias="salesperson"),
    sort_by: str | None = Query(default=None, alias="sortBy"),
    sort_order: SortOrder = Query(default="desc", alias="sortOrder"),
    page: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[CustomerListData]:
    return success(
        customer_service.list_customers(
            db,
            user,
            page,
            status_filter=status_filter,
            team_id=team_id,
            salesperson_id=salesperson_id,
            search=search,
            sort_by=sort_by,
            sort_order=sort_order,
        )
    )


@customers_router.get("/{customer_id}", response_model=Envelope[CustomerData])
def get_customer(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[CustomerData]:
    return success(CustomerData(customer=customer_service.get_customer(db, user, customer_id)))


@customers_router.post("", response_model=Envelope[CustomerData], status_code=status.HTTP_201_CREATED)
def create_customer(
    dto: CustomerCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[CustomerData]:
    return success(CustomerData(customer=customer_service.create_customer(db, user, dto)), "Customer created successfully")


@customers_router.put("/{customer_id}", response_model=Envelope[CustomerData])
def update_customer(
    customer_id: uuid.UUID,
    dto: CustomerUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[CustomerData]:
    updated = customer_service.update_customer(db, user, customer_id, dto)
    return success(CustomerData(customer=updated), "Customer updated successfully")


@customers_router.delete("/{customer_id}", response_model=MessageEnvelope)
def delete_customer(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageEnvelope:
    customer_service.soft_delete_customer(db, user, customer_id)
    return MessageEnvelope(message="Customer deleted successfully")


# leads


@leads_router.get("", response_model=Envelope[LeadListData])
def list_leads(
    search: str | None = Query(default=None),
    status_filter: LeadStatus | None = Query(default=None, alias="status"),
    source: LeadSource | None = Query(default=None),
    assigned_to_id: uuid.UUID | None = Query(default=None, alias="assignedTo"),
    team_id: uuid.UUID | None = Query(default=None, alias="teamId"),
    sort_by: str | None = Query(default=None, alias="sortBy"),
    sort_order: SortOrder = Query(default="desc", alias="sortOrder"),
    page: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[LeadListData]:
    return success(
        lead_service.list_leads(
            db,
            user,
            page,
            status_filter=status_filter,
            source=source,
            assigned_to_id=assigned_to_id,
            team_id=team_id,
            search=search,
            sort_by=sort_by,
            sort_order=sort_order,
        )
    )


@leads_router.get("/{lead_id}", response_model=Envelope[LeadData])
def get_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[LeadData]:
    return success(LeadData(lead=lead_service.get_lead(db, user, lead_id)))


@leads_router.post("", response_model=Envelope[LeadData], status_code=status.HTTP_201_CREATED)
def create_lead(
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[LeadData]:
    return success(LeadData(lead=lead_service.create_lead(db, user, dto)), "Lead created successfully")


@leads_router.put("/{lead_id}", response_model=Envelope[LeadData])
def update_lead(
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[LeadData]:
    return success(LeadData(lead=lead_service.update_lead(db, user, lead_id, dto)), "Lead updated successfully")


@leads_router.post("/{lead_id}/convert", response_model=Envelope[LeadConvertData])
def convert_lead(
    lead_id: uuid.UUID,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[LeadConvertData]:
    return success(lead_service.convert_lead(db, user, lead_id, dto), "Lead converted successfully")


@leads_router.delete("/{lead_id}", response_model=MessageEnvelope)
def delete_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageEnvelope:
    lead_service.soft_delete_lead(db, user, lead_id)
    return MessageEnvelope(message="Lead deleted successfully")


# activities


@activities_router.get("", response_model=Envelope[ActivityListData])
def list_activities(
    activity_type: ActivityType | None = Query(default=None, alias="type"),
    status_filter: ActivityStatus | None = Query(default=None, alias="status"),
    assigned_to_id: uuid.UUID | None = Query(default=None, alias="assignedTo"),
    customer_id: uuid.UUID | None = Query(default=None, alias="customer"),
    opportunity_id: uuid.UUID | None = Query(default=None, alias="opportunity"),
    team_id: uuid.UUID | None = Query(default=None, alias="teamId"),
    overdue: bool = Query(default=False),
    due_date: date | None = Query(default=None, alias="dueDate"),
    sort_by: str | None = Query(default=None, alias="sortBy"),
    sort_order: SortOrder = Query(default="asc", alias="sortOrder"),
    page: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[ActivityListData]:
    due_on = datetime.combine(due_date, time.min, tzinfo=timezone.utc) if due_date else None
    return success(
        activity_service.list_activities(
            db,
            user,
            page,
            activity_type=activity_type,
            status_filter=status_filter,
            assigned_to_id=assigned_to_id,
            customer_id=customer_id,
            opportunity_id=opportunity_id,
            team_id=team_id,
            overdue=overdue,
            due_on=due_on,
            sort_by=sort_by,
            sort_order=sort_order,
        )
    )


@activities_router.get("/{activity_id}", response_model=Envelope[ActivityData])
def get_activity(
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[ActivityData]:
    return success(ActivityData(activity=activity_service.get_activity(db, user, activity_id)))


@activities_router.post("", response_model=Envelope[ActivityData], status_code=status.HTTP_201_CREATED)
def create_activity(
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[ActivityData]:
    return success(ActivityData(activity=activity_service.create_activity(db, user, dto)), "Activity created successfully")


@activities_router.put("/{activity_id}", response_model=Envelope[ActivityData])
def update_activity(
    activity_id: uuid.UUID,
    dto: ActivityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[ActivityData]:
    updated = activity_service.update_activity(db, user, activity_id, dto)
    return success(ActivityData(activity=updated), "Activity updated successfully")


@activities_router.delete("/{activity_id}", response_model=MessageEnvelope)
def delete_activity(
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageEnvelope:
    activity_service.soft_delete_activity(db, user, activity_id)
    return MessageEnvelope(message="Activity deleted successfully")


# pipelines


@pipeline_router.get("", response_model=Envelope[PipelineListData])
def list_pipelines(
    include_inactive: bool = Query(default=False, alias="includeInactive"),
    team_id: uuid.UUID | None = Query(default=None, alias="teamId"),
    page: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[PipelineListData]:
    return success(pipeline_service.list_pipelines(db, page, include_inactive=include_inactive, team_id=team_id))


@pipeline_router.get("/stats/overview", response_model=Envelope[PipelineOverview])
def pipeline_overview(
    pipeline_id: uuid.UUID | None = Query(default=None, alias="pipelineId"),
    team_id: uuid.UUID | None = Query(default=None, alias="teamId"),
    user_id: uuid.UUID | None = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[PipelineOverview]:
    return success(
        pipeline_stats_service.overview(db, user, pipeline_id=pipeline_id, team_id=team_id, user_id=user_id)
    )


@pipeline_router.get("/{pipeline_id}", response_model=Envelope[PipelineDetailData])
def get_pipeline(
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[PipelineDetailData]:
    return success(pipeline_service.get_pipeline_detail(db, user, pipeline_id))


@pipeline_router.get("/{pipeline_id}/opportunities", response_model=Envelope[OpportunityListData])
def list_pipeline_opportunities(
    pipeline_id: uuid.UUID,
    stage: str | None = Query(default=None),
    status_filter: OpportunityStatus | None = Query(default=None, alias="status"),
    page: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[OpportunityListData]:
    return success(
        pipeline_service.list_pipeline_opportunities(
            db, user, pipeline_id, page, stage=stage, status_filter=status_filter
        )
    )


@pipeline_router.post("", response_model=Envelope[PipelineData], status_code=status.HTTP_201_CREATED)
def create_pipeline(
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_pipeline_admin),
) -> Envelope[PipelineData]:
    return success(PipelineData(pipeline=pipeline_service.create_pipeline(db, user, dto)), "Pipeline created successfully")


@pipeline_router.put("/{pipeline_id}", response_model=Envelope[PipelineData])
def update_pipeline(
    pipeline_id: uuid.UUID,
    dto: PipelineUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_pipeline_admin),
) -> Envelope[PipelineData]:
    updated = pipeline_service.update_pipeline(db, user, pipeline_id, dto)
    return success(PipelineData(pipeline=updated), "Pipeline updated successfully")


@pipeline_router.delete("/{pipeline_id}", response_model=MessageEnvelope)
def delete_pipeline(
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_pipeline_admin),
) -> MessageEnvelope:
    pipeline_service.delete_pipeline(db, user, pipeline_id)
    return MessageEnvelope(message="Pipeline deleted successfully")


# opportunities


@opportunities_router.get("", response_model=Envelope[OpportunityListData])
def list_opportunities(
    status_filter: str = Query(default="open", alias="status"),
    stage: str | None = Query(default=None),
    pipeline_id: uuid.UUID | None = Query(default=None, alias="pipeline"),
    search: str | None = Query(default=None),
    sort_by: str | None = Query(default=None, alias="sortBy"),
    sort_order: SortOrder = Query(default="desc", alias="sortOrder"),
    page: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[OpportunityListData]:
    return success(
        opportunity_service.list_opportunities(
            db,
            user,
            page,
            status_filter=status_filter,
            stage=stage,
            pipeline_id=pipeline_id,
            search=search,
            sort_by=sort_by,
            sort_order=sort_order,
        )
    )


@opportunities_router.get("/stats/overview", response_model=Envelope[OpportunityOverview])
def opportunity_overview(
    team_id: uuid.UUID | None = Query(default=None, alias="teamId"),
    user_id: uuid.UUID | None = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[OpportunityOverview]:
    return success(opportunity_stats_service.overview(db, user, team_id=team_id, user_id=user_id))


@opportunities_router.get("/{opportunity_id}", response_model=Envelope[OpportunityData])
def get_opportunity(
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[OpportunityData]:
    return success(OpportunityData(opportunity=opportunity_service.get_opportunity(db, user, opportunity_id)))


@opportunities_router.post("", response_model=Envelope[OpportunityData], status_code=status.HTTP_201_CREATED)
def create_opportunity(
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[OpportunityData]:
    created = opportunity_service.create_opportunity(db, user, dto)
    return success(OpportunityData(opportunity=created), "Opportunity created successfully")


@opportunities_router.put("/{opportunity_id}", response_model=Envelope[OpportunityData])
def update_opportunity(
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[OpportunityData]:
    updated = opportunity_service.update_opportunity(db, user, opportunity_id, dto)
    return success(OpportunityData(opportunity=updated), "Opportunity updated successfully")


@opportunities_router.delete("/{opportunity_id}", response_model=MessageEnvelope)
def delete_opportunity(
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageEnvelope:
    opportunity_service.delete_opportunity(db, user, opportunity_id)
    return MessageEnvelope(message="Opportunity deleted successfully")


# config


@config_router.get("/activity-types", response_model=Envelope[ActivityTypesData])
def activity_types(user: ActorUser = Depends(get_current_user)) -> Envelope[ActivityTypesData]:
    return success(ActivityTypesData(activity_types=ACTIVITY_TYPE_OPTIONS))


@config_router.get("/lead-sources", response_model=Envelope[LeadSourcesData])
def lead_sources(user: ActorUser = Depends(get_current_user)) -> Envelope[LeadSourcesData]:
    return success(LeadSourcesData(lead_sources=LEAD_SOURCE_OPTIONS))


@config_router.get("/opportunity-statuses", response_model=Envelope[OpportunityStatusesData])
def opportunity_statuses(user: ActorUser = Depends(get_current_user)) -> Envelope[OpportunityStatusesData]:
    return success(OpportunityStatusesData(statuses=OPPORTUNITY_STATUS_OPTIONS))
