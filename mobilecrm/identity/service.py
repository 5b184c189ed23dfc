from __future__ import annotations

import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from mobilecrm import audit, events
from mobilecrm.api.responses import PageParams
from mobilecrm.core.auth import ActorUser, create_access_token, hash_password, verify_password
from mobilecrm.identity.models import Team, TeamMember, User, default_user_settings, utcnow
from mobilecrm.identity.schemas import (
    LoginRequest,
    RegisterRequest,
    TeamCreate,
    TeamListData,
    TeamMemberAdd,
    TeamMemberRead,
    TeamRead,
    TeamSettings,
    TeamUpdate,
    TokenData,
    UserRead,
    UserSettings,
    UserSettingsUpdate,
    UserSummary,
)


logger = logging.getLogger("mobilecrm.auth")

VALID_THEMES = {"light", "dark"}


class AuthService:
    entity_type = "identity.user"

    def register(self, session: Session, dto: RegisterRequest) -> TokenData:
        email = dto.email.strip().lower()
        existing = session.scalar(select(User).where(func.lower(User.email) == email))
        if existing is not None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User already exists")

        user = User(
            name=dto.name.strip(),
            email=email,
            password_hash=hash_password(dto.password),
            phone=dto.phone,
            role="user",
            settings=default_user_settings(),
        )
        session.add(user)
        session.flush()

        audit.record(
            actor_user_id=str(user.id),
            entity_type=self.entity_type,
            entity_id=str(user.id),
            action="register",
            before=None,
            after={"email": user.email, "role": user.role},
        )
        events.publish(events.build_envelope("identity.user.registered", str(user.id), {"user_id": str(user.id)}))
        session.commit()
        logger.info("auth.registered", extra={"user_id": str(user.id)})
        return TokenData(user=UserRead.model_validate(user), token=create_access_token(user.id, user.role))

    def login(self, session: Session, dto: LoginRequest) -> TokenData:
        email = dto.email.strip().lower()
        user = session.scalar(select(User).where(func.lower(User.email) == email))
        if user is None or not verify_password(dto.password, user.password_hash):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
        if not user.is_active:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account is deactivated.")

        user.last_login_at = utcnow()
        session.commit()
        logger.info("auth.login", extra={"user_id": str(user.id)})
        return TokenData(user=UserRead.model_validate(user), token=create_access_token(user.id, user.role))


class UserService:
    def list_users(self, session: Session, *, role: str | None = None, team_id: uuid.UUID | None = None) -> list[UserRead]:
        stmt = select(User).where(User.is_active.is_(True))
        if role:
            stmt = stmt.where(User.role == role)
        if team_id:
            stmt = stmt.where(User.team_id == team_id)
        users = session.scalars(stmt.order_by(User.name.asc())).all()
        return [UserRead.model_validate(user) for user in users]

    def get_user(self, session: Session, user_id: uuid.UUID) -> UserRead:
        user = session.get(User, user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return UserRead.model_validate(user)


class SettingsService:
    """Per-user preferences persisted on the user row."""

    def get_settings(self, session: Session, actor_user: ActorUser) -> UserSettings:
        user = self._load(session, actor_user)
        return self._to_read(user.settings)

    def update_settings(self, session: Session, actor_user: ActorUser, dto: UserSettingsUpdate) -> UserSettings:
        user = self._load(session, actor_user)
        current = self._to_read(user.settings)
        patch = dto.model_dump(exclude_unset=True, exclude_none=True)
        notifications = patch.pop("notifications", None)

        merged = current.model_dump()
        merged.update(patch)
        if notifications:
            merged["notifications"] = {**merged["notifications"], **notifications}
        return self._save(session, actor_user, user, merged)

    def set_theme(self, session: Session, actor_user: ActorUser, theme: str) -> UserSettings:
        if theme not in VALID_THEMES:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid theme")
        user = self._load(session, actor_user)
        merged = self._to_read(user.settings).model_dump()
        merged["theme"] = theme
        return self._save(session, actor_user, user, merged)

    def set_notifications(self, session: Session, actor_user: ActorUser, patch: dict[str, Any]) -> UserSettings:
        user = self._load(session, actor_user)
        merged = self._to_read(user.settings).model_dump()
        merged["notifications"] = {**merged["notifications"], **{k: v for k, v in patch.items() if v is not None}}
        return self._save(session, actor_user, user, merged)

    def _save(self, session: Session, actor_user: ActorUser, user: User, merged: dict[str, Any]) -> UserSettings:
        validated = UserSettings.model_validate(merged)
        before = dict(user.settings or {})
        # reassign so the JSON column is flagged dirty
        user.settings = validated.model_dump()
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type="identity.user_settings",
            entity_id=str(user.id),
            action="update",
            before=before,
            after=user.settings,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return validated

    def _load(self, session: Session, actor_user: ActorUser) -> User:
        user = session.get(User, actor_user.user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return user

    def _to_read(self, raw: dict[str, Any] | None) -> UserSettings:
        merged = default_user_settings()
        for key, value in (raw or {}).items():
            if key == "notifications" and isinstance(value, dict):
                merged["notifications"].update(value)
            else:
                merged[key] = value
        return UserSettings.model_validate(merged)


class TeamService:
    entity_type = "identity.team"

    def list_teams(
        self,
        session: Session,
        actor_user: ActorUser,
        page: PageParams,
        *,
        search: str | None = None,
    ) -> TeamListData:
        stmt = select(Team).where(Team.is_active.is_(True))
        if actor_user.role != "admin":
            member_team_ids = select(TeamMember.team_id).where(TeamMember.user_id == actor_user.user_id)
            stmt = stmt.where(or_(Team.manager_id == actor_user.user_id, Team.id.in_(member_team_ids)))
        if search:
            stmt = stmt.where(Team.name.ilike(f"%{search.strip()}%"))

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        teams = session.scalars(
            stmt.options(selectinload(Team.members).selectinload(TeamMember.user), selectinload(Team.manager))
            .order_by(Team.created_at.desc())
            .offset(page.offset)
            .limit(page.limit)
        ).all()
        return TeamListData(teams=[self._to_read(team) for team in teams], pagination=page.pagination(total))

    def get_team(self, session: Session, team_id: uuid.UUID) -> TeamRead:
        return self._to_read(self._load_active(session, team_id))

    def create_team(self, session: Session, actor_user: ActorUser, dto: TeamCreate) -> TeamRead:
        self._load_active_user(session, dto.manager_id, "Manager not found")
        team = Team(
            name=dto.name.strip(),
            description=dto.description,
            manager_id=dto.manager_id,
            target_revenue=Decimal(str(dto.target_revenue)),
            settings=dto.settings.model_dump(),
        )
        session.add(team)
        session.flush()

        read = self._to_read(team)
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(team.id),
            action="create",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope("identity.team.created", str(actor_user.user_id), {"team_id": str(team.id)})
        )
        session.commit()
        return read

    def update_team(self, session: Session, actor_user: ActorUser, team_id: uuid.UUID, dto: TeamUpdate) -> TeamRead:
        team = self._load_active(session, team_id)
        before = self._to_read(team).model_dump(mode="json")
        payload = dto.model_dump(exclude_unset=True)

        if payload.get("manager_id") is not None:
            self._load_active_user(session, payload["manager_id"], "Manager not found")
        for key in ("target_revenue", "current_revenue"):
            if payload.get(key) is not None:
                payload[key] = Decimal(str(payload[key]))
        for key, value in payload.items():
            if value is None and key in {"name", "manager_id", "target_revenue", "current_revenue", "settings"}:
                continue
            setattr(team, key, value)

        session.flush()
        after = self._to_read(team)
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(team.id),
            action="update",
            before=before,
            after=after.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return after

    def add_member(self, session: Session, actor_user: ActorUser, team_id: uuid.UUID, dto: TeamMemberAdd) -> TeamRead:
        team = self._load_active(session, team_id)
        if actor_user.role != "admin" and not TeamSettings.model_validate(team.settings or {}).allow_member_add:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Team does not allow adding members")

        user = self._load_active_user(session, dto.user_id, "User not found")
        if any(member.user_id == user.id for member in team.members):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User is already a member of this team")

        next_position = max((member.position for member in team.members), default=-1) + 1
        team.members.append(TeamMember(user_id=user.id, role=dto.role, position=next_position))
        user.team_id = team.id
        session.flush()

        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(team.id),
            action="add_member",
            before=None,
            after={"user_id": str(user.id), "role": dto.role},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "identity.team.member_added",
                str(actor_user.user_id),
                {"team_id": str(team.id), "user_id": str(user.id)},
            )
        )
        session.commit()
        session.refresh(team)
        return self._to_read(team)

    def remove_member(self, session: Session, actor_user: ActorUser, team_id: uuid.UUID, member_id: uuid.UUID) -> TeamRead:
        team = self._load_active(session, team_id)
        if actor_user.role != "admin" and not TeamSettings.model_validate(team.settings or {}).allow_member_remove:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Team does not allow removing members")

        # member_id may be the membership row id or the member's user id
        member = next((item for item in team.members if member_id in {item.id, item.user_id}), None)
        if member is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Member not found in this team")

        removed_user_id = member.user_id
        team.members.remove(member)
        user = session.get(User, removed_user_id)
        if user is not None and user.team_id == team.id:
            user.team_id = None
        session.flush()

        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(team.id),
            action="remove_member",
            before={"user_id": str(removed_user_id)},
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "identity.team.member_removed",
                str(actor_user.user_id),
                {"team_id": str(team.id), "user_id": str(removed_user_id)},
            )
        )
        session.commit()
        session.refresh(team)
        return self._to_read(team)

    def soft_delete_team(self, session: Session, actor_user: ActorUser, team_id: uuid.UUID) -> None:
        team = self._load_active(session, team_id)
        team.is_active = False
        audit.record(
            actor_user_id=str(actor_user.user_id),
            entity_type=self.entity_type,
            entity_id=str(team.id),
            action="soft_delete",
            before={"is_active": True},
            after={"is_active": False},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def _load_active(self, session: Session, team_id: uuid.UUID) -> Team:
        team = session.scalar(
            select(Team)
            .where(Team.id == team_id, Team.is_active.is_(True))
            .options(selectinload(Team.members).selectinload(TeamMember.user), selectinload(Team.manager))
        )
        if team is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Team not found")
        return team

    def _load_active_user(self, session: Session, user_id: uuid.UUID, detail: str) -> User:
        user = session.get(User, user_id)
        if user is None or not user.is_active:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
        return user

    def _to_read(self, team: Team) -> TeamRead:
        target = Decimal(team.target_revenue or 0)
        current = Decimal(team.current_revenue or 0)
        completion = 0
        if target > 0:
            completion = int((current / target * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return TeamRead(
            id=team.id,
            name=team.name,
            description=team.description,
            manager=UserSummary.model_validate(team.manager),
            members=[
                TeamMemberRead(
                    id=member.id,
                    user=UserSummary.model_validate(member.user),
                    role=member.role,
                    joined_at=member.joined_at,
                )
                for member in team.members
            ],
            member_count=len(team.members),
            target_revenue=float(target),
            current_revenue=float(current),
            target_completion=completion,
            settings=TeamSettings.model_validate(team.settings or {}),
            is_active=team.is_active,
            created_at=team.created_at,
            updated_at=team.updated_at,
        )
