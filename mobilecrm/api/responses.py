from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Annotated, Generic, TypeVar

from fastapi import Query
from pydantic import AfterValidator, BaseModel, Field

from mobilecrm.core.config import get_settings

DataT = TypeVar("DataT")


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# sqlite hands back naive values for timezone-aware columns
UTCDateTime = Annotated[datetime, AfterValidator(as_utc)]


class Envelope(BaseModel, Generic[DataT]):
    status: str = "success"
    message: str | None = None
    data: DataT


class MessageEnvelope(BaseModel):
    status: str = "success"
    message: str


class Pagination(BaseModel):
    current: int
    pages: int
    total: int


class PageParams(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def pagination(self, total: int) -> Pagination:
        return Pagination(current=self.page, pages=math.ceil(total / self.limit) if total else 0, total=total)


def success(data: DataT, message: str | None = None) -> Envelope[DataT]:
    return Envelope[DataT](data=data, message=message)


def page_params(
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
) -> PageParams:
    settings = get_settings()
    resolved = min(limit or settings.default_page_size, settings.max_page_size)
    return PageParams(page=page, limit=resolved)
