from datetime import datetime
from typing import Literal

from pydantic import Field

from adcat.schemas.common import CamelModel


class CategoryCountOut(CamelModel):
    category: str
    mapping_count: int
    title_mapping_count: int
    ad_count: int


class CategoryMergeRequest(CamelModel):
    old_category: str | None = None
    old_categories: list[str] = Field(default_factory=list)
    new_category: str

    def source_labels(self) -> list[str]:
        labels = list(self.old_categories)
        if self.old_category:
            labels.append(self.old_category)
        return labels


class CategoryMergeOut(CamelModel):
    mappings_updated: int
    title_mappings_updated: int
    ads_updated: int


class DeduplicatedStatsOut(CamelModel):
    url_mappings: int
    ads: int
    title_mappings: int


class BackcategorisedStatsOut(CamelModel):
    url_mappings_fixed: int
    title_mappings_fixed: int
    ads_from_url_mappings: int
    ads_from_title_mappings: int


class NormalizationStatsOut(CamelModel):
    deduplicated: DeduplicatedStatsOut
    backcategorised: BackcategorisedStatsOut


class NormalizationStatusOut(CamelModel):
    status: Literal["idle", "running", "completed", "failed"]
    stats: NormalizationStatsOut | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
