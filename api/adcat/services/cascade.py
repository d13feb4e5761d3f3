from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from adcat.core.categories import is_unknown_category, normalize_title, title_key
from adcat.core.urls import base_url
from adcat.services.precedence import (
    URL_MAPPING_TYPE,
    AdSnapshot,
    AdUpdate,
    MappingRef,
    ResolutionCandidate,
    plan_ad_updates,
)

logger = logging.getLogger(__name__)

AD_TITLE_KEY_SQL = "lower(btrim(regexp_replace(coalesce(a.title, ''), '\\s+', ' ', 'g')))"

URL_MAPPING_COLUMNS = "id, cleaned_url, category, created_at"
TITLE_MAPPING_COLUMNS = "id, title, category, translated_title, created_at, updated_at"


@dataclass(slots=True)
class CascadeResult:
    mapping: dict[str, Any]
    mapping_created: bool
    ads_updated: int


def candidate_select_sql(ads_table: str, where_sql: str, *, lock: bool) -> str:
    """Ads matching ``where_sql`` joined with every URL rule and the title rule that apply to them."""
    lock_sql = "for update of a" if lock else ""
    return f"""
        select
          a.id,
          a.title,
          a.landing_page,
          a.category,
          a.type,
          um.id as url_mapping_id,
          um.cleaned_url as url_mapping_key,
          um.category as url_mapping_category,
          tm.id as title_mapping_id,
          tm.title_key as title_mapping_key,
          tm.category as title_mapping_category
        from {ads_table} a
        left join url_mappings um
          on um.match_base <> ''
         and strpos(lower(coalesce(a.landing_page, '')), um.match_base) > 0
        left join title_mappings tm
          on tm.title_key = {AD_TITLE_KEY_SQL}
        where {where_sql}
        order by a.id asc
        {lock_sql}
    """


def candidates_from_rows(rows: Sequence[asyncpg.Record]) -> list[ResolutionCandidate]:
    by_ad: dict[int, ResolutionCandidate] = {}
    for row in rows:
        candidate = by_ad.get(row["id"])
        if candidate is None:
            candidate = ResolutionCandidate(
                ad=AdSnapshot(
                    id=row["id"],
                    title=row["title"],
                    landing_page=row["landing_page"],
                    category=row["category"],
                    type=row["type"],
                )
            )
            if row["title_mapping_id"] is not None:
                candidate.title_mapping = MappingRef(
                    id=row["title_mapping_id"],
                    key=row["title_mapping_key"],
                    category=row["title_mapping_category"],
                )
            by_ad[row["id"]] = candidate
        if row["url_mapping_id"] is not None:
            candidate.url_matches.append(
                MappingRef(
                    id=row["url_mapping_id"],
                    key=row["url_mapping_key"],
                    category=row["url_mapping_category"],
                )
            )
    return list(by_ad.values())


async def apply_ad_updates(conn: asyncpg.Connection, ads_table: str, updates: Sequence[AdUpdate]) -> list[AdUpdate]:
    """Write resolved categories, skipping rows whose category or type changed since they were read."""
    if not updates:
        return []
    rows = await conn.fetch(
        f"""
        update {ads_table} as a
        set
          category = u.category,
          type = u.type,
          updated_at = now()
        from unnest($1::bigint[], $2::text[], $3::text[], $4::text[], $5::text[])
          as u(id, category, type, previous_category, previous_type)
        where a.id = u.id
          and a.category is not distinct from u.previous_category
          and a.type is not distinct from u.previous_type
        returning a.id
        """,
        [update.ad_id for update in updates],
        [update.category for update in updates],
        [update.type for update in updates],
        [update.previous_category for update in updates],
        [update.previous_type for update in updates],
    )
    applied_ids = {row["id"] for row in rows}
    return [update for update in updates if update.ad_id in applied_ids]


class CascadeUpdater:
    """Propagates rule changes to advertisement rows on a connection inside an open transaction."""

    def __init__(self, conn: asyncpg.Connection, *, ads_table: str) -> None:
        self.conn = conn
        self.ads_table = ads_table

    async def resolve_or_create_url_mapping(self, cleaned_url: str, category: str) -> tuple[dict[str, Any], bool]:
        row = await self.conn.fetchrow(
            f"""
            update url_mappings
            set category = $2
            where cleaned_url = $1
            returning {URL_MAPPING_COLUMNS}
            """,
            cleaned_url,
            category,
        )
        if row is not None:
            return dict(row), False

        row = await self.conn.fetchrow(
            f"""
            insert into url_mappings (cleaned_url, category)
            values ($1, $2)
            returning {URL_MAPPING_COLUMNS}
            """,
            cleaned_url,
            category,
        )
        return dict(row), True

    async def resolve_or_create_title_mapping(
        self,
        title: str,
        category: str,
        *,
        translated_title: str | None = None,
    ) -> tuple[dict[str, Any], bool]:
        normalized = normalize_title(title)
        row = await self.conn.fetchrow(
            f"""
            update title_mappings
            set
              category = $2,
              translated_title = coalesce($3, translated_title),
              updated_at = now()
            where title_key = $1
            returning {TITLE_MAPPING_COLUMNS}
            """,
            title_key(normalized),
            category,
            translated_title,
        )
        if row is not None:
            return dict(row), False

        row = await self.conn.fetchrow(
            f"""
            insert into title_mappings (title, category, translated_title)
            values ($1, $2, $3)
            returning {TITLE_MAPPING_COLUMNS}
            """,
            normalized,
            category,
            translated_title,
        )
        return dict(row), True

    async def apply_url_category(self, cleaned_url: str, category: str) -> CascadeResult:
        mapping, created = await self.resolve_or_create_url_mapping(cleaned_url, category)
        if is_unknown_category(category):
            ads_updated = await self.reresolve_url_base(base_url(cleaned_url))
        else:
            ads_updated = await self.overwrite_url_base(base_url(cleaned_url), category)
        logger.info(
            "url cascade cleaned_url=%s category=%s mapping_created=%s ads_updated=%s",
            cleaned_url,
            category,
            created,
            ads_updated,
        )
        return CascadeResult(mapping=mapping, mapping_created=created, ads_updated=ads_updated)

    async def apply_title_category(
        self,
        title: str,
        category: str,
        *,
        respect_url_precedence: bool = True,
        translated_title: str | None = None,
    ) -> CascadeResult:
        mapping, created = await self.resolve_or_create_title_mapping(
            title,
            category,
            translated_title=translated_title,
        )
        ads_updated = await self.reresolve_title(title, respect_url_precedence=respect_url_precedence)
        logger.info(
            "title cascade title=%r category=%s mapping_created=%s ads_updated=%s",
            mapping["title"],
            category,
            created,
            ads_updated,
        )
        return CascadeResult(mapping=mapping, mapping_created=created, ads_updated=ads_updated)

    async def overwrite_url_base(self, base: str, category: str) -> int:
        """Set every ad whose landing page contains ``base`` to ``category``, whatever its provenance."""
        if not base:
            return 0
        rows = await self.conn.fetch(
            f"""
            update {self.ads_table} as a
            set
              category = $2,
              type = $3,
              updated_at = now()
            where strpos(lower(coalesce(a.landing_page, '')), $1) > 0
              and (a.category is distinct from $2 or a.type is distinct from $3)
            returning a.id
            """,
            base.lower(),
            category,
            URL_MAPPING_TYPE,
        )
        return len(rows)

    async def reresolve_url_base(self, base: str) -> int:
        """Re-resolve URL-sourced ads under ``base`` after the rule for it was removed or made unknown."""
        if not base:
            return 0
        rows = await self.conn.fetch(
            candidate_select_sql(
                self.ads_table,
                "a.type = $2 and strpos(lower(coalesce(a.landing_page, '')), $1) > 0",
                lock=True,
            ),
            base.lower(),
            URL_MAPPING_TYPE,
        )
        updates = plan_ad_updates(candidates_from_rows(rows), keep_url_provenance=False)
        applied = await apply_ad_updates(self.conn, self.ads_table, updates)
        return len(applied)

    async def reresolve_title(self, title: str, *, respect_url_precedence: bool = True) -> int:
        key = title_key(title)
        if not key:
            return 0
        rows = await self.conn.fetch(
            candidate_select_sql(self.ads_table, f"{AD_TITLE_KEY_SQL} = $1", lock=True),
            key,
        )
        updates = plan_ad_updates(candidates_from_rows(rows), respect_url_precedence=respect_url_precedence)
        applied = await apply_ad_updates(self.conn, self.ads_table, updates)
        return len(applied)
