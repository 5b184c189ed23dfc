from __future__ import annotations

from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from mobilecrm.api.responses import Pagination, UTCDateTime

UserRole = Literal["admin", "manager", "user"]
MemberRole = Literal["member", "senior", "lead"]
Theme = Literal["light", "dark"]


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(min_length=6)
    phone: str | None = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str
    role: str
    team_id: UUID | None
    phone: str | None
    is_active: bool
    last_login_at: UTCDateTime | None
    created_at: UTCDateTime


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str


class TokenData(BaseModel):
    user: UserRead
    token: str


class UserListData(BaseModel):
    users: list[UserRead]


class NotificationSettings(BaseModel):
    push: bool = True
    email: bool = True
    sms: bool = False


class UserSettings(BaseModel):
    theme: Theme = "light"
    language: str = "en"
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)


class NotificationSettingsUpdate(BaseModel):
    push: bool | None = None
    email: bool | None = None
    sms: bool | None = None


class UserSettingsUpdate(BaseModel):
    theme: Theme | None = None
    language: str | None = Field(default=None, min_length=2, max_length=16)
    notifications: NotificationSettingsUpdate | None = None


class ThemeUpdate(BaseModel):
    theme: str


class SettingsData(BaseModel):
    settings: UserSettings


class TeamMemberRead(BaseModel):
    id: UUID
    user: UserSummary
    role: str
    joined_at: UTCDateTime


class TeamSettings(BaseModel):
    allow_member_add: bool = True
    allow_member_remove: bool = True


class TeamCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    manager_id: UUID
    target_revenue: float = Field(default=0, ge=0)
    settings: TeamSettings = Field(default_factory=TeamSettings)


class TeamUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    manager_id: UUID | None = None
    target_revenue: float | None = Field(default=None, ge=0)
    current_revenue: float | None = Field(default=None, ge=0)
    settings: TeamSettings | None = None


class TeamMemberAdd(BaseModel):
    user_id: UUID
    role: MemberRole = "member"


class TeamRead(BaseModel):
    id: UUID
    name: str
    description: str | None
    manager: UserSummary
    members: list[TeamMemberRead]
    member_count: int
    target_revenue: float
    current_revenue: float
    target_completion: int
    settings: TeamSettings
    is_active: bool
    created_at: UTCDateTime
    updated_at: UTCDateTime


class TeamData(BaseModel):
    team: TeamRead


class TeamListData(BaseModel):
    teams: list[TeamRead]
    pagination: Pagination


class UserData(BaseModel):
    user: UserRead
