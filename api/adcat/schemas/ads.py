from pydantic import Field

from adcat.schemas.common import CamelModel


class AdCategoryRequest(CamelModel):
    landing_page: str = Field(min_length=1)
    category: str = Field(min_length=1)
    title: str | None = None


class AdCategoryOut(CamelModel):
    url_mapping_count: int
    title_mapping_count: int
    url_mapping_created: bool
    title_mapping_created: bool


class AdUninterestedRequest(CamelModel):
    landing_page: str = Field(min_length=1)
    title: str | None = None


class AdUninterestedOut(CamelModel):
    rows_deleted: int
