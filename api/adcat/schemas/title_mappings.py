from datetime import datetime
from typing import Literal

from pydantic import Field

from adcat.schemas.common import CamelModel

TitleMappingSortColumn = Literal["id", "title", "category", "created_at", "updated_at"]


class TitleMappingOut(CamelModel):
    id: int
    title: str
    category: str
    translated_title: str | None = None
    created_at: datetime
    updated_at: datetime


class TitleMappingListOut(CamelModel):
    title_mappings: list[TitleMappingOut] = Field(default_factory=list)
    total: int


class TitleMappingCreateRequest(CamelModel):
    title: str = Field(min_length=1)
    category: str = ""
    translated_title: str | None = None


class TitleMappingUpdateRequest(CamelModel):
    category: str
    translated_title: str | None = None


class TitleMappingWriteOut(CamelModel):
    title_mapping: TitleMappingOut
    ads_updated: int


class TitleMappingDeleteOut(CamelModel):
    deleted: bool
    ads_updated: int


class TitleMappingConflictOut(CamelModel):
    title_mapping_id: int
    title: str
    title_category: str
    url_category: str
    ad_count: int


class TitleMappingConflictResolveRequest(CamelModel):
    title_mapping_id: int
    category: str = Field(min_length=1)
