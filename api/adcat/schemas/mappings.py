from datetime import datetime
from typing import Literal

from pydantic import Field

from adcat.schemas.common import CamelModel

MappingSortColumn = Literal["id", "cleaned_url", "category", "created_at"]
SortDirection = Literal["asc", "desc"]


class UrlMappingOut(CamelModel):
    id: int
    cleaned_url: str
    category: str
    created_at: datetime


class UrlMappingListOut(CamelModel):
    mappings: list[UrlMappingOut] = Field(default_factory=list)
    total: int


class UrlMappingCreateRequest(CamelModel):
    url: str = Field(min_length=1)
    category: str = ""


class UrlMappingUpdateRequest(CamelModel):
    category: str


class UrlMappingWriteOut(CamelModel):
    mapping: UrlMappingOut
    staging_rows_updated: int


class UrlMappingDeleteOut(CamelModel):
    deleted: bool
    staging_rows_updated: int
