from __future__ import annotations

from typing import Any

from sqlalchemy import or_
from sqlalchemy.sql import Select

from mobilecrm.core.auth import ActorUser
from mobilecrm.crm.models import CRMActivity, CRMCustomer, CRMLead, CRMOpportunity


class OwnershipRepository:
    """Per-record ownership scope: a caller sees rows it owns or created.

    Admins and managers bypass the scope unless the query is ``strict``.
    """

    model: Any = None
    owner_columns: tuple[str, ...] = ()

    def apply_scope_query(self, query: Select[Any], actor_user: ActorUser, *, strict: bool = False) -> Select[Any]:
        if actor_user.is_privileged and not strict:
            return query
        return query.where(or_(*[getattr(self.model, column) == actor_user.user_id for column in self.owner_columns]))

    def is_owner(self, record: Any, actor_user: ActorUser) -> bool:
        return any(getattr(record, column) == actor_user.user_id for column in self.owner_columns)

    def can_view(self, record: Any, actor_user: ActorUser) -> bool:
        return actor_user.is_privileged or self.is_owner(record, actor_user)


class OpportunityRepository(OwnershipRepository):
    model = CRMOpportunity
    owner_columns = ("salesperson_id", "created_by_id")


class CustomerRepository(OwnershipRepository):
    model = CRMCustomer
    owner_columns = ("salesperson_id", "created_by_id")


class LeadRepository(OwnershipRepository):
    model = CRMLead
    owner_columns = ("assigned_to_id", "created_by_id")


class ActivityRepository(OwnershipRepository):
    model = CRMActivity
    owner_columns = ("assigned_to_id", "created_by_id")
