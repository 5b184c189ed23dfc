from __future__ import annotations

from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from mobilecrm.api.responses import Pagination, UTCDateTime
from mobilecrm.identity.schemas import UserSummary

CustomerStatus = Literal["lead", "prospect", "active", "inactive"]
CustomerSource = Literal["website", "referral", "cold_call", "email", "social_media", "other"]
LeadSource = Literal["website", "referral", "cold_call", "email", "social_media", "advertisement", "event", "other"]
LeadStatus = Literal["new", "contacted", "qualified", "unqualified", "converted", "lost"]
OpportunityStatus = Literal["open", "won", "lost", "cancelled"]
OpportunitySource = Literal["website", "referral", "cold_call", "email", "social_media", "other"]
ActivityType = Literal["call", "email", "meeting", "task", "note", "demo", "proposal", "follow_up"]
ActivityStatus = Literal["pending", "in_progress", "completed", "cancelled"]
ActivityPriority = Literal["low", "medium", "high", "urgent"]
RecurringFrequency = Literal["daily", "weekly", "monthly", "yearly"]
CustomFieldType = Literal["text", "number", "date", "boolean", "select"]
SortOrder = Literal["asc", "desc"]


class StageInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    probability: int = Field(ge=0, le=100)
    color: str = Field(default="#2196F3", max_length=16)
    order: int | None = Field(default=None, ge=1)
    is_active: bool = True


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    probability: int
    color: str
    order: int
    is_active: bool


class PipelineCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    stages: list[StageInput] = Field(min_length=1)
    team_id: UUID | None = None
    is_default: bool = False

    @model_validator(mode="after")
    def _unique_stage_names(self) -> PipelineCreate:
        names = [stage.name for stage in self.stages]
        if len(names) != len(set(names)):
            raise ValueError("stage names must be unique within a pipeline")
        return self


class PipelineUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    stages: list[StageInput] | None = Field(default=None, min_length=1)
    is_default: bool | None = None
    is_active: bool | None = None

    @model_validator(mode="after")
    def _unique_stage_names(self) -> PipelineUpdate:
        if self.stages is not None:
            names = [stage.name for stage in self.stages]
            if len(names) != len(set(names)):
                raise ValueError("stage names must be unique within a pipeline")
        return self


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    stages: list[StageRead]
    team_id: UUID | None
    created_by_id: UUID
    is_default: bool
    is_active: bool
    created_at: UTCDateTime
    updated_at: UTCDateTime


class Address(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    zip_code: str | None = None


class CustomField(BaseModel):
    field_name: str = Field(min_length=1)
    field_value: Any = None
    field_type: CustomFieldType = "text"


class CustomerSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    company: str | None
    email: str | None = None


class CustomerCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(min_length=1, max_length=32)
    company: str | None = Field(default=None, max_length=200)
    address: Address = Field(default_factory=Address)
    salesperson_id: UUID | None = None
    team_id: UUID | None = None
    status: CustomerStatus = "lead"
    source: CustomerSource = "other"
    gstin: str | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: list[CustomField] = Field(default_factory=list)
    notes: str | None = None


class CustomerUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, min_length=1, max_length=32)
    company: str | None = Field(default=None, max_length=200)
    address: Address | None = None
    salesperson_id: UUID | None = None
    team_id: UUID | None = None
    status: CustomerStatus | None = None
    source: CustomerSource | None = None
    gstin: str | None = None
    tags: list[str] | None = None
    custom_fields: list[CustomField] | None = None
    notes: str | None = None


class CustomerRead(BaseModel):
    id: UUID
    name: str
    email: str
    phone: str
    company: str | None
    address: Address
    salesperson: UserSummary | None
    team_id: UUID | None
    status: str
    source: str
    gstin: str | None
    tags: list[str]
    custom_fields: list[CustomField]
    total_value: float
    last_activity_at: UTCDateTime | None
    notes: str | None
    is_active: bool
    created_by_id: UUID
    created_at: UTCDateTime
    updated_at: UTCDateTime


class LeadCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=32)
    company: str | None = Field(default=None, max_length=200)
    job_title: str | None = Field(default=None, max_length=100)
    source: LeadSource = "other"
    status: LeadStatus = "new"
    score: int = Field(default=0, ge=0, le=100)
    assigned_to_id: UUID | None = None
    team_id: UUID | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: list[CustomField] = Field(default_factory=list)
    notes: str | None = None
    last_contact_date: UTCDateTime | None = None
    next_follow_up_date: UTCDateTime | None = None
    expected_close_date: UTCDateTime | None = None
    estimated_value: float | None = Field(default=None, ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=8)


class LeadUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=50)
    last_name: str | None = Field(default=None, min_length=1, max_length=50)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    company: str | None = Field(default=None, max_length=200)
    job_title: str | None = Field(default=None, max_length=100)
    source: LeadSource | None = None
    status: LeadStatus | None = None
    score: int | None = Field(default=None, ge=0, le=100)
    assigned_to_id: UUID | None = None
    team_id: UUID | None = None
    tags: list[str] | None = None
    custom_fields: list[CustomField] | None = None
    notes: str | None = None
    last_contact_date: UTCDateTime | None = None
    next_follow_up_date: UTCDateTime | None = None
    expected_close_date: UTCDateTime | None = None
    estimated_value: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=8)


class LeadConvertRequest(BaseModel):
    phone: str | None = Field(default=None, min_length=1, max_length=32)
    status: CustomerStatus = "prospect"
    notes: str | None = None


class LeadRead(BaseModel):
    id: UUID
    first_name: str
    last_name: str
    full_name: str
    email: str
    phone: str | None
    company: str | None
    job_title: str | None
    source: str
    status: str
    score: int
    assigned_to: UserSummary | None
    team_id: UUID | None
    tags: list[str]
    custom_fields: list[CustomField]
    notes: str | None
    last_contact_date: UTCDateTime | None
    days_since_last_contact: int | None
    next_follow_up_date: UTCDateTime | None
    expected_close_date: UTCDateTime | None
    estimated_value: float | None
    currency: str
    conversion_date: UTCDateTime | None
    converted_customer_id: UUID | None
    is_active: bool
    created_by_id: UUID
    created_at: UTCDateTime
    updated_at: UTCDateTime


class Product(BaseModel):
    name: str = Field(min_length=1)
    quantity: float = Field(default=1, ge=0)
    price: float = Field(default=0, ge=0)
    total: float | None = None

    @model_validator(mode="after")
    def _fill_total(self) -> Product:
        if self.total is None:
            self.total = round(self.quantity * self.price, 2)
        return self


class OpportunityCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=200)
    value: float = Field(ge=0)
    stage: str = Field(min_length=1, max_length=100)
    pipeline_id: UUID
    customer_id: UUID
    salesperson_id: UUID
    currency: str = Field(default="USD", min_length=3, max_length=8)
    source: OpportunitySource = "other"
    expected_close_date: UTCDateTime | None = None
    team_id: UUID | None = None
    tags: list[str] = Field(default_factory=list)
    description: str | None = None
    products: list[Product] = Field(default_factory=list)
    notes: str | None = None


class OpportunityUpdate(BaseModel):
    """Partial update; probability is derived from the stage and cannot be set directly."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str | None = Field(default=None, min_length=1, max_length=200)
    value: float | None = Field(default=None, ge=0)
    stage: str | None = Field(default=None, min_length=1, max_length=100)
    status: OpportunityStatus | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=8)
    source: OpportunitySource | None = None
    expected_close_date: UTCDateTime | None = None
    tags: list[str] | None = None
    description: str | None = None
    lost_reason: str | None = None
    products: list[Product] | None = None
    notes: str | None = None


class OpportunityRead(BaseModel):
    id: UUID
    title: str
    customer: CustomerSummary | None
    pipeline_id: UUID
    stage: str
    value: float
    currency: str
    probability: int
    weighted_value: float
    status: str
    source: str
    expected_close_date: UTCDateTime | None
    actual_close_date: UTCDateTime | None
    salesperson: UserSummary | None
    team_id: UUID | None
    tags: list[str]
    description: str | None
    lost_reason: str | None
    products: list[Product]
    notes: str | None
    is_active: bool
    created_by_id: UUID
    created_at: UTCDateTime
    updated_at: UTCDateTime


class Attendee(BaseModel):
    name: str | None = None
    email: EmailStr | None = None
    user_id: UUID | None = None


class RecurringPattern(BaseModel):
    frequency: RecurringFrequency
    interval: int = Field(default=1, ge=1)
    end_date: UTCDateTime | None = None


class ActivityCreate(BaseModel):
    type: ActivityType
    subject: str = Field(min_length=1, max_length=200)
    description: str | None = None
    customer_id: UUID | None = None
    opportunity_id: UUID | None = None
    assigned_to_id: UUID
    team_id: UUID | None = None
    status: ActivityStatus = "pending"
    priority: ActivityPriority = "medium"
    due_date: UTCDateTime | None = None
    duration: int | None = Field(default=None, ge=0)
    location: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    next_action: str | None = None
    next_action_date: UTCDateTime | None = None
    tags: list[str] = Field(default_factory=list)
    is_recurring: bool = False
    recurring_pattern: RecurringPattern | None = None

    @model_validator(mode="after")
    def _pattern_when_recurring(self) -> ActivityCreate:
        if self.is_recurring and self.recurring_pattern is None:
            raise ValueError("recurring_pattern is required for recurring activities")
        return self


class ActivityUpdate(BaseModel):
    type: ActivityType | None = None
    subject: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    customer_id: UUID | None = None
    opportunity_id: UUID | None = None
    assigned_to_id: UUID | None = None
    status: ActivityStatus | None = None
    priority: ActivityPriority | None = None
    due_date: UTCDateTime | None = None
    duration: int | None = Field(default=None, ge=0)
    location: str | None = None
    attendees: list[Attendee] | None = None
    outcome: str | None = None
    next_action: str | None = None
    next_action_date: UTCDateTime | None = None
    tags: list[str] | None = None
    is_recurring: bool | None = None
    recurring_pattern: RecurringPattern | None = None


class ActivityRead(BaseModel):
    id: UUID
    type: str
    subject: str
    description: str | None
    customer: CustomerSummary | None
    opportunity_id: UUID | None
    assigned_to: UserSummary | None
    team_id: UUID | None
    status: str
    priority: str
    due_date: UTCDateTime | None
    completed_date: UTCDateTime | None
    is_overdue: bool
    duration: int | None
    location: str | None
    attendees: list[Attendee]
    outcome: str | None
    next_action: str | None
    next_action_date: UTCDateTime | None
    tags: list[str]
    is_recurring: bool
    recurring_pattern: RecurringPattern | None
    is_active: bool
    created_by_id: UUID
    created_at: UTCDateTime
    updated_at: UTCDateTime


class StageBucket(BaseModel):
    stage: str
    probability: int
    color: str
    count: int
    total_value: float
    opportunities: list[OpportunityRead]


class PipelineData(BaseModel):
    pipeline: PipelineRead


class PipelineDetailData(BaseModel):
    pipeline: PipelineRead
    stage_data: list[StageBucket]
    total_opportunities: int


class PipelineListData(BaseModel):
    pipelines: list[PipelineRead]
    pagination: Pagination


class CustomerData(BaseModel):
    customer: CustomerRead


class CustomerListData(BaseModel):
    customers: list[CustomerRead]
    pagination: Pagination


class LeadData(BaseModel):
    lead: LeadRead


class LeadListData(BaseModel):
    leads: list[LeadRead]
    pagination: Pagination


class LeadConvertData(BaseModel):
    lead: LeadRead
    customer: CustomerRead


class OpportunityData(BaseModel):
    opportunity: OpportunityRead


class OpportunityListData(BaseModel):
    opportunities: list[OpportunityRead]
    pagination: Pagination


class ActivityData(BaseModel):
    activity: ActivityRead


class ActivityListData(BaseModel):
    activities: list[ActivityRead]
    pagination: Pagination


class ConfigOption(BaseModel):
    value: str
    label: str


class ActivityTypesData(BaseModel):
    activity_types: list[ConfigOption]


class LeadSourcesData(BaseModel):
    lead_sources: list[ConfigOption]


class OpportunityStatusesData(BaseModel):
    statuses: list[ConfigOption]
