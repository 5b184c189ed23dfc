from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from mobilecrm import audit, events
from mobilecrm.api.responses import PageParams, as_utc
from mobilecrm.core.auth import ActorUser
from mobilecrm.crm.models import (
    CRMActivity,
    CRMCustomer,
    CRMLead,
    CRMOpportunity,
    CRMPipeline,
    CRMPipelineStage,
)
from mobilecrm.crm.repositories import (
    ActivityRepository,
    CustomerRepository,
    LeadRepository,
    OpportunityRepository,
)
from mobilecrm.crm.schemas import (
    ActivityCreate,
    ActivityListData,
    ActivityRead,
    ActivityUpdate,
    Address,
    CustomerCreate,
    CustomerListData,
    CustomerRead,
    CustomerSummary,
    CustomerUpdate,
    LeadConvertData,
    LeadConvertRequest,
    LeadCreate,
    LeadListData,
    LeadRead,
    LeadUpdate,
    OpportunityCreate,
    OpportunityListData,
    OpportunityRead,
    OpportunityUpdate,
    PipelineCreate,
    PipelineDetailData,
    PipelineListData,
    PipelineRead,
    PipelineUpdate,
    StageBucket,
    StageInput,
    StageRead,
)
from mobilecrm.crm.stages import resolve_stage_probability, weighted_value
from mobilecrm.identity.models import User
from mobilecrm.identity.schemas import UserSummary
from mobilecrm.metrics import observe_opportunity_transition


logger = logging.getLogger("mobilecrm.crm")
tracer = trace.get_tracer("mobilecrm.crm")

TERMINAL_STATUSES = {"won", "lost"}
CUSTOMER_SOURCES = {"website", "referral", "cold_call", "email", "social_media", "other"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_sort(
    model: Any,
    sort_by: str | None,
    sort_order: str,
    allowed: dict[str, str],
    default: str,
) -> Any:
    column_name = allowed.get(sort_by or default)
    if column_name is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid sort field: {sort_by}")
    column = getattr(model, column_name)
    return column.asc() if sort_order == "asc" else column.desc()


def count_rows(session: Session, stmt: Select[Any]) -> int:
    return session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0


def load_user_summaries(session: Session, user_ids: Iterable[uuid.UUID | None]) -> dict[uuid.UUID, UserSummary]:
    ids = {user_id for user_id in user_ids if user_id is not None}
    if not ids:
        return {}
    users = session.scalars(select(User).where(User.id.in_(ids))).all()
    return {user.id: UserSummary.model_validate(user) for user in users}


def load_customer_summaries(session: Session, customer_ids: Iterable[uuid.UUID | None]) -> dict[uuid.UUID, CustomerSummary]:
    ids = {customer_id for customer_id in customer_ids if customer_id is not None}
    if not ids:
        return {}
    customers = session.scalars(select(CRMCustomer).where(CRMCustomer.id.in_(ids))).all()
    return {customer.id: CustomerSummary.model_validate(customer) for customer in customers}


def require_active_user(session: Session, user_id: uuid.UUID, detail: str) -> User:
    user = session.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    return user


def require_active_customer(session: Session, customer_id: uuid.UUID) -> CRMCustomer:
    customer = session.get(CRMCustomer, customer_id)
    if customer is None or not customer.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    return customer


def _drop_nulls(payload: dict[str, Any], non_nullable: set[str]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if not (value is None and key in non_nullable)}


class PipelineService:
    entity_type = "crm.pipeline"

    def __init__(self) -> None:
        self.opportunity_repository = OpportunityRepository()

    def list_pipelines(
        self,
        session: Session,
        page: PageParams,
        *,
        include_inactive: bool = False,
        team_id: uuid.UUID | None = None,
    ) -> PipelineListData:
        stmt = select(CRMPipeline)
        if not include_inactive:
            stmt = stmt.where(CRMPipeline.is_active.is_(True))
        if team_id is not None:
            stmt = stmt.where(CRMPipeline.team_id == team_id)

        total = count_rows(session, stmt)
        pipelines = session.scalars(
            stmt.options(selectinload(CRMPipeline.stages))
            .order_by(CRMPipeline.is_default.desc(), CRMPipeline.created_at.desc())
            .offset(page.offset)
            .limit(page.limit)
        ).all()
        return PipelineListData(
            pipelines=[self._to_read(pipeline) for pipeline in pipelines],
            pagination=page.pagination(total),
        )

    def get_pipeline_detail(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> PipelineDetailData:
        pipeline = self.get_active_pipeline(session, pipeline_id)
        stmt = select(CRMOpportunity).where(
            and_(
                CRMOpportunity.pipeline_id == pipeline.id,
                CRMOpportunity.status == "open",
                CRMOpportunity.is_active.is_(True),
            )
        )
        stmt = self.opportunity_repository.apply_scope_query(stmt, actor_user)
        opportunities = session.scalars(stmt.order_by(CRMOpportunity.created_at.desc())).all()
        reads = OpportunityService.to_reads(session, opportunities)

        stage_data: list[StageBucket] = []
        for stage in self._sorted_stages(pipeline.stages):
            bucket = [read for read in reads if read.stage == stage.name]
            stage_data.append(
                StageBucket(
                    stage=stage.name,
                    probability=stage.probability,
                    color=stage.color,
                    count=len(bucket),
                    total_value=float(sum((Decimal(str(read.value)) for read in bucket), Decimal("0"))),
                    opportunities=bucket,
                )
            )
        return PipelineDetailData(
            pipeline=self._to_read(pipeline),
            stage_data=stage_data,
            total_opportunities=len(reads),
        )

    def create_pipeline(self, session: Session, actor_user: ActorUser, dto: PipelineCreate) -> PipelineRead:
        pipeline = CRMPipeline(
            name=dto.name.strip(),
            description=dto.description,
            team_id=dto.team_id or actor_user.team_id,
            created_by_id=actor_user.user_id,
            is_default=dto.is_default,
        )
        pipeline.stages = self._build_stages(dto.stages)
        session.add(pipeline)
        session.flush()

        if dto.is_default:
            self._unset_other_defaults(session, pipeline.id)

        read = self._to_read(pipeline)
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="create",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("crm.pipeline.created", str(actor_user.user_id), {"pipeline_id": str(pipeline.id)})
        )
        session.commit()
        return read

    def update_pipeline(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineUpdate,
    ) -> PipelineRead:
        pipeline = self._load(session, pipeline_id)
        before = self._to_read(pipeline).model_dump(mode="json")
        payload = _drop_nulls(dto.model_dump(exclude_unset=True), {"name", "stages", "is_default", "is_active"})

        if "name" in payload:
            pipeline.name = payload["name"].strip()
        if "description" in payload:
            pipeline.description = payload["description"]
        if "is_active" in payload:
            pipeline.is_active = payload["is_active"]
        if "is_default" in payload:
            pipeline.is_default = payload["is_default"]
        if dto.stages is not None and "stages" in payload:
            # existing opportunities keep the probability cached at their last stage assignment
            pipeline.stages.clear()
            session.flush()
            pipeline.stages.extend(self._build_stages(dto.stages))
        session.flush()

        if pipeline.is_default:
            self._unset_other_defaults(session, pipeline.id)

        after = self._to_read(pipeline)
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="update",
            before=before,
            after=after.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("crm.pipeline.updated", str(actor_user.user_id), {"pipeline_id": str(pipeline.id)})
        )
        session.commit()
        return after

    def delete_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> None:
        pipeline = self._load(session, pipeline_id)
        referencing = session.scalar(
            select(func.count()).select_from(CRMOpportunity).where(CRMOpportunity.pipeline_id == pipeline.id)
        )
        if referencing:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Cannot delete pipeline with existing opportunities",
            )

        before = self._to_read(pipeline).model_dump(mode="json")
        session.delete(pipeline)
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(pipeline_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("crm.pipeline.deleted", str(actor_user.user_id), {"pipeline_id": str(pipeline_id)})
        )
        session.commit()

    def list_pipeline_opportunities(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        page: PageParams,
        *,
        stage: str | None = None,
        status_filter: str | None = None,
    ) -> OpportunityListData:
        self._load(session, pipeline_id)
        stmt = select(CRMOpportunity).where(
            and_(CRMOpportunity.pipeline_id == pipeline_id, CRMOpportunity.is_active.is_(True))
        )
        if stage:
            stmt = stmt.where(CRMOpportunity.stage == stage)
        if status_filter:
            stmt = stmt.where(CRMOpportunity.status == status_filter)
        stmt = self.opportunity_repository.apply_scope_query(stmt, actor_user)

        total = count_rows(session, stmt)
        opportunities = session.scalars(
            stmt.order_by(CRMOpportunity.created_at.desc()).offset(page.offset).limit(page.limit)
        ).all()
        return OpportunityListData(
            opportunities=OpportunityService.to_reads(session, opportunities),
            pagination=page.pagination(total),
        )

    def get_active_pipeline(self, session: Session, pipeline_id: uuid.UUID) -> CRMPipeline:
        pipeline = self._load(session, pipeline_id)
        if not pipeline.is_active:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pipeline not found")
        return pipeline

    def _load(self, session: Session, pipeline_id: uuid.UUID) -> CRMPipeline:
        pipeline = session.scalar(
            select(CRMPipeline).where(CRMPipeline.id == pipeline_id).options(selectinload(CRMPipeline.stages))
        )
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pipeline not found")
        return pipeline

    def _build_stages(self, inputs: list[StageInput]) -> list[CRMPipelineStage]:
        return [
            CRMPipelineStage(
                name=item.name.strip(),
                probability=item.probability,
                color=item.color,
                order=item.order if item.order is not None else index + 1,
                is_active=item.is_active,
            )
            for index, item in enumerate(inputs)
        ]

    def _unset_other_defaults(self, session: Session, pipeline_id: uuid.UUID) -> None:
        session.execute(
            update(CRMPipeline)
            .where(and_(CRMPipeline.id != pipeline_id, CRMPipeline.is_default.is_(True)))
            .values(is_default=False)
        )

    def _sorted_stages(self, stages: list[CRMPipelineStage]) -> list[CRMPipelineStage]:
        return sorted(stages, key=lambda stage: (stage.order, stage.name))

    def _to_read(self, pipeline: CRMPipeline) -> PipelineRead:
        return PipelineRead(
            id=pipeline.id,
            name=pipeline.name,
            description=pipeline.description,
            stages=[StageRead.model_validate(stage) for stage in self._sorted_stages(pipeline.stages)],
            team_id=pipeline.team_id,
            created_by_id=pipeline.created_by_id,
            is_default=pipeline.is_default,
            is_active=pipeline.is_active,
            created_at=pipeline.created_at,
            updated_at=pipeline.updated_at,
        )


class OpportunityService:
    entity_type = "crm.opportunity"
    sort_fields = {
        "expectedCloseDate": "expected_close_date",
        "expected_close_date": "expected_close_date",
        "createdAt": "created_at",
        "created_at": "created_at",
        "value": "value",
        "title": "title",
        "probability": "probability",
        "stage": "stage",
    }
    non_nullable = {"title", "value", "stage", "status", "currency", "source", "tags", "products"}

    def __init__(self) -> None:
        self.pipeline_service = PipelineService()
        self.repository = OpportunityRepository()

    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        with tracer.start_as_current_span("crm.opportunity.create"):
            pipeline = self.pipeline_service.get_active_pipeline(session, dto.pipeline_id)
            require_active_customer(session, dto.customer_id)
            require_active_user(session, dto.salesperson_id, "Salesperson not found")

            opportunity = CRMOpportunity(
                title=dto.title.strip(),
                customer_id=dto.customer_id,
                pipeline_id=pipeline.id,
                stage=dto.stage,
                value=Decimal(str(dto.value)),
                currency=dto.currency.upper(),
                probability=resolve_stage_probability(pipeline.stages, dto.stage),
                status="open",
                source=dto.source,
                expected_close_date=as_utc(dto.expected_close_date),
                salesperson_id=dto.salesperson_id,
                team_id=dto.team_id or actor_user.team_id,
                tags=list(dto.tags),
                description=dto.description,
                products=[product.model_dump() for product in dto.products],
                notes=dto.notes,
                created_by_id=actor_user.user_id,
            )
            session.add(opportunity)
            session.flush()

            read = self._to_read(session, opportunity)
            audit.record(
                actor_user_id=str(actor_user.user_id),
                entity_type=self.entity_type,
                entity_id=str(opportunity.id),
                action="create",
                before=None,
                after=read.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.opportunity.created",
                    str(actor_user.user_id),
                    {
                        "opportunity_id": str(opportunity.id),
                        "pipeline_id": str(opportunity.pipeline_id),
                        "stage": opportunity.stage,
                        "probability": opportunity.probability,
                    },
                )
            )
            session.commit()
            observe_opportunity_transition("created")
            logger.info(
                "opportunity.created",
                extra={"entity_type": self.entity_type, "entity_id": str(opportunity.id), "user_id": str(actor_user.user_id)},
            )
            return read

    def list_opportunities(
        self,
        session: Session,
        actor_user: ActorUser,
        page: PageParams,
        *,
        status_filter: str | None = "open",
        stage: str | None = None,
        pipeline_id: uuid.UUID | None = None,
        search: str | None = None,
        sort_by: str | None = None,
        sort_order: str = "desc",
    ) -> OpportunityListData:
        stmt = select(CRMOpportunity).where(CRMOpportunity.is_active.is_(True))
        stmt = self.repository.apply_scope_query(stmt, actor_user, strict=True)
        if status_filter and status_filter != "all":
            stmt = stmt.where(CRMOpportunity.status == status_filter)
        if stage:
            stmt = stmt.where(CRMOpportunity.stage == stage)
        if pipeline_id:
            stmt = stmt.where(CRMOpportunity.pipeline_id == pipeline_id)
        if search:
            stmt = stmt.where(CRMOpportunity.title.icontains(search.strip(), autoescape=True))

        total = count_rows(session, stmt)
        order = resolve_sort(CRMOpportunity, sort_by, sort_order, self.sort_fields, "expectedCloseDate")
        opportunities = session.scalars(
            stmt.order_by(order, CRMOpportunity.created_at.desc()).offset(page.offset).limit(page.limit)
        ).all()
        return OpportunityListData(
            opportunities=self.to_reads(session, opportunities),
            pagination=page.pagination(total),
        )

    def get_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: uuid.UUID) -> OpportunityRead:
        opportunity = self._get_visible_opportunity(session, actor_user, opportunity_id)
        return self._to_read(session, opportunity)

    def update_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        with tracer.start_as_current_span("crm.opportunity.update") as span:
            opportunity = self._get_owned_opportunity(session, actor_user, opportunity_id, "update")
            span.set_attribute("crm.opportunity_id", str(opportunity.id))

            payload = _drop_nulls(dto.model_dump(exclude_unset=True), self.non_nullable)
            if not payload:
                return self._to_read(session, opportunity)

            before = self._to_read(session, opportunity).model_dump(mode="json")
            previous_stage = opportunity.stage
            previous_status = opportunity.status

            if "stage" in payload:
                pipeline = self.pipeline_service._load(session, opportunity.pipeline_id)
                opportunity.stage = payload.pop("stage")
                opportunity.probability = resolve_stage_probability(pipeline.stages, opportunity.stage)

            if "status" in payload:
                new_status = payload.pop("status")
                if new_status in TERMINAL_STATUSES:
                    if opportunity.actual_close_date is None:
                        opportunity.actual_close_date = utcnow()
                else:
                    opportunity.actual_close_date = None
                opportunity.status = new_status

            if "value" in payload:
                payload["value"] = Decimal(str(payload["value"]))
            if "currency" in payload:
                payload["currency"] = payload["currency"].upper()
            if "expected_close_date" in payload:
                payload["expected_close_date"] = as_utc(payload["expected_close_date"])
            if "title" in payload:
                payload["title"] = payload["title"].strip()
            for key, value in payload.items():
                setattr(opportunity, key, value)

            session.flush()
            after = self._to_read(session, opportunity)
            audit.record(
                actor_user_id=str(actor_user.user_id),
                entity_type=self.entity_type,
                entity_id=str(opportunity.id),
                action="update",
                before=before,
                after=after.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            for transition in self._transitions(previous_stage, previous_status, opportunity):
                events.publish(
                    events.build_envelope(
                        f"crm.opportunity.{transition}",
                        str(actor_user.user_id),
                        {
                            "opportunity_id": str(opportunity.id),
                            "stage": opportunity.stage,
                            "probability": opportunity.probability,
                            "status": opportunity.status,
                        },
                    )
                )
                observe_opportunity_transition(transition)
            session.commit()
            logger.info(
                "opportunity.updated",
                extra={"entity_type": self.entity_type, "entity_id": str(opportunity.id), "user_id": str(actor_user.user_id)},
            )
            return after

    def delete_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: uuid.UUID) -> None:
        opportunity = self._get_owned_opportunity(session, actor_user, opportunity_id, "delete")
        before = self._to_read(session, opportunity).model_dump(mode="json")
        session.execute(
            update(CRMActivity).where(CRMActivity.opportunity_id == opportunity.id).values(opportunity_id=None)
        )
        session.delete(opportunity)
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(opportunity_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.opportunity.deleted",
                str(actor_user.user_id),
                {"opportunity_id": str(opportunity_id)},
            )
        )
        session.commit()
        observe_opportunity_transition("deleted")

    @staticmethod
    def to_reads(session: Session, opportunities: Iterable[CRMOpportunity]) -> list[OpportunityRead]:
        rows = list(opportunities)
        users = load_user_summaries(session, (row.salesperson_id for row in rows))
        customers = load_customer_summaries(session, (row.customer_id for row in rows))
        return [OpportunityService._build_read(row, users, customers) for row in rows]

    def _transitions(self, previous_stage: str, previous_status: str, opportunity: CRMOpportunity) -> list[str]:
        transitions = ["updated"]
        if opportunity.stage != previous_stage:
            transitions.append("stage_changed")
        if opportunity.status != previous_status:
            if opportunity.status == "won":
                transitions.append("closed_won")
            elif opportunity.status == "lost":
                transitions.append("closed_lost")
            elif previous_status in TERMINAL_STATUSES and opportunity.status == "open":
                transitions.append("reopened")
        return transitions

    def _get_visible_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: uuid.UUID) -> CRMOpportunity:
        opportunity = session.get(CRMOpportunity, opportunity_id)
        if opportunity is None or not opportunity.is_active or not self.repository.can_view(opportunity, actor_user):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Opportunity not found")
        return opportunity

    def _get_owned_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        action: str,
    ) -> CRMOpportunity:
        opportunity = session.get(CRMOpportunity, opportunity_id)
        if opportunity is None or not opportunity.is_active:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Opportunity not found")
        if not self.repository.is_owner(opportunity, actor_user):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Not authorized to {action} this opportunity",
            )
        return opportunity

    def _to_read(self, session: Session, opportunity: CRMOpportunity) -> OpportunityRead:
        return self.to_reads(session, [opportunity])[0]

    @staticmethod
    def _build_read(
        opportunity: CRMOpportunity,
        users: dict[uuid.UUID, UserSummary],
        customers: dict[uuid.UUID, CustomerSummary],
    ) -> OpportunityRead:
        return OpportunityRead(
            id=opportunity.id,
            title=opportunity.title,
            customer=customers.get(opportunity.customer_id),
            pipeline_id=opportunity.pipeline_id,
            stage=opportunity.stage,
            value=float(opportunity.value),
            currency=opportunity.currency,
            probability=opportunity.probability,
            weighted_value=float(weighted_value(opportunity.value, opportunity.probability)),
            status=opportunity.status,
            source=opportunity.source,
            expected_close_date=opportunity.expected_close_date,
            actual_close_date=opportunity.actual_close_date,
            salesperson=users.get(opportunity.salesperson_id),
            team_id=opportunity.team_id,
            tags=list(opportunity.tags or []),
            description=opportunity.description,
            lost_reason=opportunity.lost_reason,
            products=list(opportunity.products or []),
            notes=opportunity.notes,
            is_active=opportunity.is_active,
            created_by_id=opportunity.created_by_id,
            created_at=opportunity.created_at,
            updated_at=opportunity.updated_at,
        )


class CustomerService:
    entity_type = "crm.customer"
    sort_fields = {
        "createdAt": "created_at",
        "created_at": "created_at",
        "updatedAt": "updated_at",
        "name": "name",
        "company": "company",
        "email": "email",
        "status": "status",
        "totalValue": "total_value",
        "total_value": "total_value",
    }
    non_nullable = {"name", "email", "phone", "address", "salesperson_id", "status", "source", "tags", "custom_fields"}

    def __init__(self) -> None:
        self.repository = CustomerRepository()

    def list_customers(
        self,
        session: Session,
        actor_user: ActorUser,
        page: PageParams,
        *,
        status_filter: str | None = None,
        team_id: uuid.UUID | None = None,
        salesperson_id: uuid.UUID | None = None,
        search: str | None = None,
        sort_by: str | None = None,
        sort_order: str = "desc",
    ) -> CustomerListData:
        stmt = select(CRMCustomer).where(CRMCustomer.is_active.is_(True))
        stmt = self.repository.apply_scope_query(stmt, actor_user)
        if status_filter:
            stmt = stmt.where(CRMCustomer.status == status_filter)
        if team_id:
            stmt = stmt.where(CRMCustomer.team_id == team_id)
        if salesperson_id:
            stmt = stmt.where(CRMCustomer.salesperson_id == salesperson_id)
        if search and search.strip():
            term = search.strip()
            stmt = stmt.where(
                or_(
                    CRMCustomer.name.icontains(term, autoescape=True),
                    CRMCustomer.email.icontains(term, autoescape=True),
                    CRMCustomer.company.icontains(term, autoescape=True),
                )
            )

        total = count_rows(session, stmt)
        order = resolve_sort(CRMCustomer, sort_by, sort_order, self.sort_fields, "createdAt")
        customers = session.scalars(stmt.order_by(order).offset(page.offset).limit(page.limit)).all()
        return CustomerListData(customers=self._to_reads(session, customers), pagination=page.pagination(total))

    def get_customer(self, session: Session, actor_user: ActorUser, customer_id: uuid.UUID) -> CustomerRead:
        return self._to_reads(session, [self._get_visible(session, actor_user, customer_id)])[0]

    def create_customer(self, session: Session, actor_user: ActorUser, dto: CustomerCreate) -> CustomerRead:
        salesperson_id = dto.salesperson_id or actor_user.user_id
        if dto.salesperson_id is not None:
            require_active_user(session, dto.salesperson_id, "Salesperson not found")

        customer = CRMCustomer(
            name=dto.name.strip(),
            email=dto.email.lower(),
            phone=dto.phone.strip(),
            company=dto.company,
            address=dto.address.model_dump(),
            salesperson_id=salesperson_id,
            team_id=dto.team_id or actor_user.team_id,
            status=dto.status,
            source=dto.source,
            gstin=dto.gstin,
            tags=list(dto.tags),
            custom_fields=[field.model_dump() for field in dto.custom_fields],
            notes=dto.notes,
            created_by_id=actor_user.user_id,
        )
        session.add(customer)
        session.flush()

        read = self._to_reads(session, [customer])[0]
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(customer.id),
            action="create",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("crm.customer.created", str(actor_user.user_id), {"customer_id": str(customer.id)})
        )
        session.commit()
        return read

    def update_customer(
        self,
        session: Session,
        actor_user: ActorUser,
        customer_id: uuid.UUID,
        dto: CustomerUpdate,
    ) -> CustomerRead:
        customer = self._get_visible(session, actor_user, customer_id)
        payload = _drop_nulls(dto.model_dump(exclude_unset=True), self.non_nullable)
        if not payload:
            return self._to_reads(session, [customer])[0]

        before = self._to_reads(session, [customer])[0].model_dump(mode="json")
        if "salesperson_id" in payload:
            require_active_user(session, payload["salesperson_id"], "Salesperson not found")
        if "email" in payload:
            payload["email"] = payload["email"].lower()
        if "address" in payload:
            payload["address"] = Address.model_validate(payload["address"]).model_dump()
        for key, value in payload.items():
            setattr(customer, key, value)

        session.flush()
        after = self._to_reads(session, [customer])[0]
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(customer.id),
            action="update",
            before=before,
            after=after.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("crm.customer.updated", str(actor_user.user_id), {"customer_id": str(customer.id)})
        )
        session.commit()
        return after

    def soft_delete_customer(self, session: Session, actor_user: ActorUser, customer_id: uuid.UUID) -> None:
        customer = self._get_visible(session, actor_user, customer_id)
        customer.is_active = False
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(customer.id),
            action="soft_delete",
            before={"is_active": True},
            after={"is_active": False},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("crm.customer.deleted", str(actor_user.user_id), {"customer_id": str(customer.id)})
        )
        session.commit()

    def create_from_lead(self, session: Session, actor_user: ActorUser, lead: CRMLead, dto: LeadConvertRequest) -> CRMCustomer:
        phone = dto.phone or lead.phone
        if not phone:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Phone is required to convert a lead")

        customer = CRMCustomer(
            name=f"{lead.first_name} {lead.last_name}"[:100],
            email=lead.email.lower(),
            phone=phone,
            company=lead.company,
            address={},
            salesperson_id=lead.assigned_to_id,
            team_id=lead.team_id,
            status=dto.status,
            source=lead.source if lead.source in CUSTOMER_SOURCES else "other",
            tags=list(lead.tags or []),
            custom_fields=list(lead.custom_fields or []),
            notes=dto.notes if dto.notes is not None else lead.notes,
            created_by_id=actor_user.user_id,
        )
        session.add(customer)
        session.flush()
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(customer.id),
            action="create_from_lead",
            before=None,
            after={"lead_id": str(lead.id), "email": customer.email},
            correlation_id=actor_user.correlation_id,
        )
        return customer

    def to_read(self, session: Session, customer: CRMCustomer) -> CustomerRead:
        return self._to_reads(session, [customer])[0]

    def _get_visible(self, session: Session, actor_user: ActorUser, customer_id: uuid.UUID) -> CRMCustomer:
        customer = session.get(CRMCustomer, customer_id)
        if customer is None or not customer.is_active or not self.repository.can_view(customer, actor_user):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
        return customer

    def _to_reads(self, session: Session, customers: Iterable[CRMCustomer]) -> list[CustomerRead]:
        rows = list(customers)
        users = load_user_summaries(session, (row.salesperson_id for row in rows))
        return [
            CustomerRead(
                id=row.id,
                name=row.name,
                email=row.email,
                phone=row.phone,
                company=row.company,
                address=Address.model_validate(row.address or {}),
                salesperson=users.get(row.salesperson_id),
                team_id=row.team_id,
                status=row.status,
                source=row.source,
                gstin=row.gstin,
                tags=list(row.tags or []),
                custom_fields=list(row.custom_fields or []),
                total_value=float(row.total_value or 0),
                last_activity_at=row.last_activity_at,
                notes=row.notes,
                is_active=row.is_active,
                created_by_id=row.created_by_id,
                created_at=row.created_at,
                updated_at=row.updated_at,
            )
            for row in rows
        ]


class LeadService:
    entity_type = "crm.lead"
    sort_fields = {
        "createdAt": "created_at",
        "created_at": "created_at",
        "score": "score",
        "firstName": "first_name",
        "lastName": "last_name",
        "company": "company",
        "status": "status",
        "nextFollowUpDate": "next_follow_up_date",
    }
    non_nullable = {
        "first_name",
        "last_name",
        "email",
        "source",
        "status",
        "score",
        "assigned_to_id",
        "tags",
        "custom_fields",
        "currency",
    }

    def __init__(self) -> None:
        self.repository = LeadRepository()
        self.customer_service = CustomerService()

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        page: PageParams,
        *,
        status_filter: str | None = None,
        source: str | None = None,
        assigned_to_id: uuid.UUID | None = None,
        team_id: uuid.UUID | None = None,
        search: str | None = None,
        sort_by: str | None = None,
        sort_order: str = "desc",
    ) -> LeadListData:
        stmt = select(CRMLead).where(CRMLead.is_active.is_(True))
        stmt = self.repository.apply_scope_query(stmt, actor_user)
        if status_filter:
            stmt = stmt.where(CRMLead.status == status_filter)
        if source:
            stmt = stmt.where(CRMLead.source == source)
        if assigned_to_id:
            stmt = stmt.where(CRMLead.assigned_to_id == assigned_to_id)
        if team_id:
            stmt = stmt.where(CRMLead.team_id == team_id)
        if search and search.strip():
            term = search.strip()
            stmt = stmt.where(
                or_(
                    CRMLead.first_name.icontains(term, autoescape=True),
                    CRMLead.last_name.icontains(term, autoescape=True),
                    CRMLead.email.icontains(term, autoescape=True),
                    CRMLead.company.icontains(term, autoescape=True),
                )
            )

        total = count_rows(session, stmt)
        order = resolve_sort(CRMLead, sort_by, sort_order, self.sort_fields, "createdAt")
        leads = session.scalars(stmt.order_by(order).offset(page.offset).limit(page.limit)).all()
        return LeadListData(leads=self._to_reads(session, leads), pagination=page.pagination(total))

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return self._to_reads(session, [self._get_visible(session, actor_user, lead_id)])[0]

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        if dto.assigned_to_id is not None:
            require_active_user(session, dto.assigned_to_id, "Assigned user not found")

        payload = dto.model_dump(exclude={"custom_fields", "estimated_value", "assigned_to_id", "team_id"})
        lead = CRMLead(
            **payload,
            assigned_to_id=dto.assigned_to_id or actor_user.user_id,
            team_id=dto.team_id or actor_user.team_id,
            custom_fields=[field.model_dump() for field in dto.custom_fields],
            estimated_value=Decimal(str(dto.estimated_value)) if dto.estimated_value is not None else None,
            created_by_id=actor_user.user_id,
        )
        lead.email = lead.email.lower()
        for key in ("last_contact_date", "next_follow_up_date", "expected_close_date"):
            setattr(lead, key, as_utc(getattr(lead, key)))
        session.add(lead)
        session.flush()

        read = self._to_reads(session, [lead])[0]
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="create",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(events.build_envelope("crm.lead.created", str(actor_user.user_id), {"lead_id": str(lead.id)}))
        session.commit()
        return read

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._get_visible(session, actor_user, lead_id)
        payload = _drop_nulls(dto.model_dump(exclude_unset=True), self.non_nullable)
        if not payload:
            return self._to_reads(session, [lead])[0]

        if payload.get("status") == "converted" and lead.converted_customer_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Use the convert action to convert a lead",
            )
        before = self._to_reads(session, [lead])[0].model_dump(mode="json")
        if "assigned_to_id" in payload:
            require_active_user(session, payload["assigned_to_id"], "Assigned user not found")
        if "email" in payload:
            payload["email"] = payload["email"].lower()
        if "estimated_value" in payload and payload["estimated_value"] is not None:
            payload["estimated_value"] = Decimal(str(payload["estimated_value"]))
        for key in ("last_contact_date", "next_follow_up_date", "expected_close_date"):
            if key in payload:
                payload[key] = as_utc(payload[key])
        for key, value in payload.items():
            setattr(lead, key, value)

        session.flush()
        after = self._to_reads(session, [lead])[0]
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="update",
            before=before,
            after=after.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(events.build_envelope("crm.lead.updated", str(actor_user.user_id), {"lead_id": str(lead.id)}))
        session.commit()
        return after

    def convert_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
    ) -> LeadConvertData:
        lead = self._get_visible(session, actor_user, lead_id)
        if lead.status == "converted" or lead.converted_customer_id is not None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Lead already converted")
        if lead.status in {"lost", "unqualified"}:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Cannot convert a {lead.status} lead")

        customer = self.customer_service.create_from_lead(session, actor_user, lead, dto)
        lead.status = "converted"
        lead.conversion_date = utcnow()
        lead.converted_customer_id = customer.id
        session.flush()

        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="convert",
            before=None,
            after={"converted_customer_id": str(customer.id)},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.converted",
                str(actor_user.user_id),
                {"lead_id": str(lead.id), "customer_id": str(customer.id)},
            )
        )
        result = LeadConvertData(
            lead=self._to_reads(session, [lead])[0],
            customer=self.customer_service.to_read(session, customer),
        )
        session.commit()
        return result

    def soft_delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        lead = self._get_visible(session, actor_user, lead_id)
        lead.is_active = False
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="soft_delete",
            before={"is_active": True},
            after={"is_active": False},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def _get_visible(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> CRMLead:
        lead = session.get(CRMLead, lead_id)
        if lead is None or not lead.is_active or not self.repository.can_view(lead, actor_user):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lead not found")
        return lead

    def _to_reads(self, session: Session, leads: Iterable[CRMLead]) -> list[LeadRead]:
        rows = list(leads)
        users = load_user_summaries(session, (row.assigned_to_id for row in rows))
        now = utcnow()
        reads: list[LeadRead] = []
        for row in rows:
            last_contact = as_utc(row.last_contact_date)
            reads.append(
                LeadRead(
                    id=row.id,
                    first_name=row.first_name,
                    last_name=row.last_name,
                    full_name=f"{row.first_name} {row.last_name}",
                    email=row.email,
                    phone=row.phone,
                    company=row.company,
                    job_title=row.job_title,
                    source=row.source,
                    status=row.status,
                    score=row.score,
                    assigned_to=users.get(row.assigned_to_id),
                    team_id=row.team_id,
                    tags=list(row.tags or []),
                    custom_fields=list(row.custom_fields or []),
                    notes=row.notes,
                    last_contact_date=row.last_contact_date,
                    days_since_last_contact=(now - last_contact).days if last_contact else None,
                    next_follow_up_date=row.next_follow_up_date,
                    expected_close_date=row.expected_close_date,
                    estimated_value=float(row.estimated_value) if row.estimated_value is not None else None,
                    currency=row.currency,
                    conversion_date=row.conversion_date,
                    converted_customer_id=row.converted_customer_id,
                    is_active=row.is_active,
                    created_by_id=row.created_by_id,
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                )
            )
        return reads


class ActivityService:
    entity_type = "crm.activity"
    sort_fields = {
        "dueDate": "due_date",
        "due_date": "due_date",
        "createdAt": "created_at",
        "created_at": "created_at",
        "priority": "priority",
        "status": "status",
        "type": "type",
    }
    non_nullable = {"type", "subject", "assigned_to_id", "status", "priority", "attendees", "tags", "is_recurring"}

    def __init__(self) -> None:
        self.repository = ActivityRepository()

    def list_activities(
        self,
        session: Session,
        actor_user: ActorUser,
        page: PageParams,
        *,
        activity_type: str | None = None,
        status_filter: str | None = None,
        assigned_to_id: uuid.UUID | None = None,
        customer_id: uuid.UUID | None = None,
        opportunity_id: uuid.UUID | None = None,
        team_id: uuid.UUID | None = None,
        overdue: bool = False,
        due_on: datetime | None = None,
        sort_by: str | None = None,
        sort_order: str = "asc",
    ) -> ActivityListData:
        stmt = select(CRMActivity).where(CRMActivity.is_active.is_(True))
        stmt = self.repository.apply_scope_query(stmt, actor_user)
        if activity_type:
            stmt = stmt.where(CRMActivity.type == activity_type)
        if status_filter:
            stmt = stmt.where(CRMActivity.status == status_filter)
        if assigned_to_id:
            stmt = stmt.where(CRMActivity.assigned_to_id == assigned_to_id)
        if customer_id:
            stmt = stmt.where(CRMActivity.customer_id == customer_id)
        if opportunity_id:
            stmt = stmt.where(CRMActivity.opportunity_id == opportunity_id)
        if team_id:
            stmt = stmt.where(CRMActivity.team_id == team_id)
        if overdue:
            stmt = stmt.where(and_(CRMActivity.due_date < utcnow(), CRMActivity.status == "pending"))
        if due_on is not None:
            day_start = datetime.combine(due_on.date(), time.min, tzinfo=timezone.utc)
            stmt = stmt.where(
                and_(CRMActivity.due_date >= day_start, CRMActivity.due_date < day_start + timedelta(days=1))
            )

        total = count_rows(session, stmt)
        if sort_by:
            ordering = [resolve_sort(CRMActivity, sort_by, sort_order, self.sort_fields, "dueDate")]
        else:
            ordering = [CRMActivity.due_date.asc(), CRMActivity.created_at.desc()]
        activities = session.scalars(stmt.order_by(*ordering).offset(page.offset).limit(page.limit)).all()
        return ActivityListData(activities=self.to_reads(session, activities), pagination=page.pagination(total))

    def get_activity(self, session: Session, actor_user: ActorUser, activity_id: uuid.UUID) -> ActivityRead:
        return self.to_reads(session, [self._get_visible(session, actor_user, activity_id)])[0]

    def create_activity(self, session: Session, actor_user: ActorUser, dto: ActivityCreate) -> ActivityRead:
        require_active_user(session, dto.assigned_to_id, "Assigned user not found")
        self._validate_links(session, dto.customer_id, dto.opportunity_id)

        activity = CRMActivity(
            type=dto.type,
            subject=dto.subject.strip(),
            description=dto.description,
            customer_id=dto.customer_id,
            opportunity_id=dto.opportunity_id,
            assigned_to_id=dto.assigned_to_id,
            team_id=dto.team_id or actor_user.team_id,
            status=dto.status,
            priority=dto.priority,
            due_date=as_utc(dto.due_date),
            completed_date=utcnow() if dto.status == "completed" else None,
            duration=dto.duration,
            location=dto.location,
            attendees=[attendee.model_dump(mode="json") for attendee in dto.attendees],
            next_action=dto.next_action,
            next_action_date=as_utc(dto.next_action_date),
            tags=list(dto.tags),
            is_recurring=dto.is_recurring,
            recurring_pattern=dto.recurring_pattern.model_dump(mode="json") if dto.recurring_pattern else None,
            created_by_id=actor_user.user_id,
        )
        session.add(activity)
        session.flush()

        read = self.to_reads(session, [activity])[0]
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(activity.id),
            action="create",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("crm.activity.created", str(actor_user.user_id), {"activity_id": str(activity.id)})
        )
        session.commit()
        return read

    def update_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        activity_id: uuid.UUID,
        dto: ActivityUpdate,
    ) -> ActivityRead:
        activity = self._get_visible(session, actor_user, activity_id)
        payload = _drop_nulls(dto.model_dump(exclude_unset=True, mode="json"), self.non_nullable)
        if not payload:
            return self.to_reads(session, [activity])[0]

        before = self.to_reads(session, [activity])[0].model_dump(mode="json")
        if "assigned_to_id" in payload:
            payload["assigned_to_id"] = uuid.UUID(payload["assigned_to_id"])
            require_active_user(session, payload["assigned_to_id"], "Assigned user not found")
        for key in ("customer_id", "opportunity_id"):
            if payload.get(key) is not None:
                payload[key] = uuid.UUID(payload[key])
        self._validate_links(session, payload.get("customer_id"), payload.get("opportunity_id"))
        for key in ("due_date", "next_action_date"):
            if key in payload:
                payload[key] = as_utc(getattr(dto, key))
        if payload.get("status") == "completed" and activity.completed_date is None:
            activity.completed_date = utcnow()
        for key, value in payload.items():
            setattr(activity, key, value)

        session.flush()
        after = self.to_reads(session, [activity])[0]
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(activity.id),
            action="update",
            before=before,
            after=after.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("crm.activity.updated", str(actor_user.user_id), {"activity_id": str(activity.id)})
        )
        session.commit()
        return after

    def soft_delete_activity(self, session: Session, actor_user: ActorUser, activity_id: uuid.UUID) -> None:
        activity = self._get_visible(session, actor_user, activity_id)
        activity.is_active = False
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(activity.id),
            action="soft_delete",
            before={"is_active": True},
            after={"is_active": False},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def to_reads(self, session: Session, activities: Iterable[CRMActivity]) -> list[ActivityRead]:
        rows = list(activities)
        users = load_user_summaries(session, (row.assigned_to_id for row in rows))
        customers = load_customer_summaries(session, (row.customer_id for row in rows))
        now = utcnow()
        return [
            ActivityRead(
                id=row.id,
                type=row.type,
                subject=row.subject,
                description=row.description,
                customer=customers.get(row.customer_id) if row.customer_id else None,
                opportunity_id=row.opportunity_id,
                assigned_to=users.get(row.assigned_to_id),
                team_id=row.team_id,
                status=row.status,
                priority=row.priority,
                due_date=row.due_date,
                completed_date=row.completed_date,
                is_overdue=bool(
                    row.due_date is not None
                    and as_utc(row.due_date) < now
                    and row.status not in {"completed", "cancelled"}
                ),
                duration=row.duration,
                location=row.location,
                attendees=list(row.attendees or []),
                outcome=row.outcome,
                next_action=row.next_action,
                next_action_date=row.next_action_date,
                tags=list(row.tags or []),
                is_recurring=row.is_recurring,
                recurring_pattern=row.recurring_pattern,
                is_active=row.is_active,
                created_by_id=row.created_by_id,
                created_at=row.created_at,
                updated_at=row.updated_at,
            )
            for row in rows
        ]

    def _validate_links(
        self,
        session: Session,
        customer_id: uuid.UUID | None,
        opportunity_id: uuid.UUID | None,
    ) -> None:
        if customer_id is not None:
            require_active_customer(session, customer_id)
        if opportunity_id is not None:
            opportunity = session.get(CRMOpportunity, opportunity_id)
            if opportunity is None or not opportunity.is_active:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Opportunity not found")

    def _get_visible(self, session: Session, actor_user: ActorUser, activity_id: uuid.UUID) -> CRMActivity:
        activity = session.get(CRMActivity, activity_id)
        if activity is None or not activity.is_active or not self.repository.can_view(activity, actor_user):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Activity not found")
        return activity
