from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from mobilecrm.api.responses import Envelope, MessageEnvelope, PageParams, page_params, success
from mobilecrm.core.auth import ActorUser, get_current_user
from mobilecrm.core.database import get_db
from mobilecrm.core.rbac import require_roles
from mobilecrm.identity.schemas import (
    LoginRequest,
    NotificationSettingsUpdate,
    RegisterRequest,
    SettingsData,
    TeamCreate,
    TeamData,
    TeamListData,
    TeamMemberAdd,
    TeamUpdate,
    ThemeUpdate,
    TokenData,
    UserData,
    UserListData,
    UserRole,
    UserSettingsUpdate,
)
from mobilecrm.identity.service import AuthService, SettingsService, TeamService, UserService

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
users_router = APIRouter(prefix="/api/users", tags=["users"])
teams_router = APIRouter(prefix="/api/teams", tags=["teams"])
settings_router = APIRouter(prefix="/api/settings", tags=["settings"])
auth_service = AuthService()
user_service = UserService()
settings_service = SettingsService()
team_service = TeamService()

require_team_admin = require_roles("admin", "manager")


@auth_router.post("/register", response_model=Envelope[TokenData], status_code=status.HTTP_201_CREATED)
def register(dto: RegisterRequest, db: Session = Depends(get_db)) -> Envelope[TokenData]:
    return success(auth_service.register(db, dto), "User registered successfully")


@auth_router.post("/login", response_model=Envelope[TokenData])
def login(dto: LoginRequest, db: Session = Depends(get_db)) -> Envelope[TokenData]:
    return success(auth_service.login(db, dto), "Login successful")


@auth_router.get("/me", response_model=Envelope[UserData])
def me(db: Session = Depends(get_db), user: ActorUser = Depends(get_current_user)) -> Envelope[UserData]:
    return success(UserData(user=user_service.get_user(db, user.user_id)))


@users_router.get("", response_model=Envelope[UserListData])
def list_users(
    role: UserRole | None = Query(default=None),
    team_id: uuid.UUID | None = Query(default=None, alias="teamId"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[UserListData]:
    return success(UserListData(users=user_service.list_users(db, role=role, team_id=team_id)))


@settings_router.get("", response_model=Envelope[SettingsData])
def get_user_settings(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[SettingsData]:
    return success(SettingsData(settings=settings_service.get_settings(db, user)))


@settings_router.put("", response_model=Envelope[SettingsData])
def update_settings(
    dto: UserSettingsUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[SettingsData]:
    return success(SettingsData(settings=settings_service.update_settings(db, user, dto)), "Settings updated successfully")


@settings_router.put("/theme", response_model=Envelope[SettingsData])
def update_theme(
    dto: ThemeUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[SettingsData]:
    return success(SettingsData(settings=settings_service.set_theme(db, user, dto.theme)), "Theme updated successfully")


@settings_router.put("/notifications", response_model=Envelope[SettingsData])
def update_notifications(
    dto: NotificationSettingsUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[SettingsData]:
    updated = settings_service.set_notifications(db, user, dto.model_dump(exclude_unset=True))
    return success(SettingsData(settings=updated), "Notification settings updated successfully")


@teams_router.get("", response_model=Envelope[TeamListData])
def list_teams(
    search: str | None = Query(default=None),
    page: PageParams = Depends(page_params),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[TeamListData]:
    return success(team_service.list_teams(db, user, page, search=search))


@teams_router.get("/{team_id}", response_model=Envelope[TeamData])
def get_team(
    team_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[TeamData]:
    return success(TeamData(team=team_service.get_team(db, team_id)))


@teams_router.post("", response_model=Envelope[TeamData], status_code=status.HTTP_201_CREATED)
def create_team(
    dto: TeamCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_team_admin),
) -> Envelope[TeamData]:
    return success(TeamData(team=team_service.create_team(db, user, dto)), "Team created successfully")


@teams_router.put("/{team_id}", response_model=Envelope[TeamData])
def update_team(
    team_id: uuid.UUID,
    dto: TeamUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_team_admin),
) -> Envelope[TeamData]:
    return success(TeamData(team=team_service.update_team(db, user, team_id, dto)), "Team updated successfully")


@teams_router.post("/{team_id}/members", response_model=Envelope[TeamData])
def add_team_member(
    team_id: uuid.UUID,
    dto: TeamMemberAdd,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_team_admin),
) -> Envelope[TeamData]:
    return success(TeamData(team=team_service.add_member(db, user, team_id, dto)), "Member added successfully")


@teams_router.delete("/{team_id}/members/{member_id}", response_model=Envelope[TeamData])
def remove_team_member(
    team_id: uuid.UUID,
    member_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_team_admin),
) -> Envelope[TeamData]:
    return success(TeamData(team=team_service.remove_member(db, user, team_id, member_id)), "Member removed successfully")


@teams_router.delete("/{team_id}", response_model=MessageEnvelope)
def delete_team(
    team_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_roles("admin")),
) -> MessageEnvelope:
    team_service.soft_delete_team(db, user, team_id)
    return MessageEnvelope(message="Team deleted successfully")
