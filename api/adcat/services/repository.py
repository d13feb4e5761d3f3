from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import date
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from adcat.core.categories import MANUAL_UNINTERESTED, is_unknown_category, normalize_title, title_key
from adcat.core.config import get_settings
from adcat.core.urls import base_url, clean_url
from adcat.services.cascade import (
    AD_TITLE_KEY_SQL,
    TITLE_MAPPING_COLUMNS,
    URL_MAPPING_COLUMNS,
    CascadeUpdater,
    apply_ad_updates,
    candidate_select_sql,
    candidates_from_rows,
)
from adcat.services.precedence import AdUpdate, ResolutionCandidate


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation conflicts with existing state."""


class RepositoryDuplicateRuleError(RepositoryConflictError):
    """Raised when a mapping rule with the same identity already exists."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class RepositoryTransactionError(RepositoryError):
    """Raised when a transaction fails and was rolled back; safe to retry."""


URL_MAPPING_SORT_COLUMNS = {
    "id": "id",
    "cleaned_url": "cleaned_url",
    "category": "category",
    "created_at": "created_at",
}
TITLE_MAPPING_SORT_COLUMNS = {
    "id": "id",
    "title": "title",
    "category": "category",
    "created_at": "created_at",
    "updated_at": "updated_at",
}
CATEGORY_STORES = ("url_mappings", "title_mappings", "ads")


def unknown_category_sql(expr: str) -> str:
    # Mirrors adcat.core.categories.is_unknown_category.
    return f"({expr} is null or btrim({expr}) = '' or lower(btrim({expr})) = 'unknown')"


def known_category_sql(expr: str) -> str:
    return f"(not {unknown_category_sql(expr)})"


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float,
        ads_table: str,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self.ads_table = ads_table
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # URL mappings

    async def list_url_mappings(
        self,
        *,
        search: str | None,
        sort_by: str,
        sort_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[dict[str, Any]], int]:
        pool = await self._get_pool()
        params: list[Any] = []
        where_sql = "true"
        normalized_search = self._coerce_text(search)
        if normalized_search:
            params.append(f"%{normalized_search}%")
            where_sql = "(cleaned_url ilike $1 or category ilike $1)"

        sort_column = URL_MAPPING_SORT_COLUMNS.get(sort_by, "created_at")
        direction = "asc" if sort_dir == "asc" else "desc"

        total = await pool.fetchval(f"select count(*) from url_mappings where {where_sql}", *params)
        rows = await pool.fetch(
            f"""
            select {URL_MAPPING_COLUMNS}
            from url_mappings
            where {where_sql}
            order by {sort_column} {direction}, id asc
            limit ${len(params) + 1}
            offset ${len(params) + 2}
            """,
            *params,
            limit,
            offset,
        )
        return [self._url_mapping_row_to_dict(row) for row in rows], int(total or 0)

    async def get_url_mapping(self, mapping_id: int) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {URL_MAPPING_COLUMNS} from url_mappings where id = $1", mapping_id)
        if row is None:
            raise RepositoryNotFoundError("url mapping not found")
        return self._url_mapping_row_to_dict(row)

    async def create_url_mapping(self, *, url: str, category: str) -> dict[str, Any]:
        cleaned_url = self._require_cleaned_url(url)
        normalized_category = self._coerce_category(category)

        async with self._transaction() as conn:
            existing = await conn.fetchval("select id from url_mappings where cleaned_url = $1", cleaned_url)
            if existing is not None:
                raise RepositoryDuplicateRuleError(f"url mapping already exists for {cleaned_url}")

            result = await CascadeUpdater(conn, ads_table=self.ads_table).apply_url_category(
                cleaned_url,
                normalized_category,
            )
            return {
                "mapping": self._url_mapping_row_to_dict(result.mapping),
                "ads_updated": result.ads_updated,
            }

    async def update_url_mapping(self, *, mapping_id: int, category: str) -> dict[str, Any]:
        normalized_category = self._coerce_category(category)

        async with self._transaction() as conn:
            cleaned_url = await conn.fetchval(
                "select cleaned_url from url_mappings where id = $1 for update",
                mapping_id,
            )
            if cleaned_url is None:
                raise RepositoryNotFoundError("url mapping not found")

            result = await CascadeUpdater(conn, ads_table=self.ads_table).apply_url_category(
                cleaned_url,
                normalized_category,
            )
            return {
                "mapping": self._url_mapping_row_to_dict(result.mapping),
                "ads_updated": result.ads_updated,
            }

    async def delete_url_mapping(self, *, mapping_id: int) -> dict[str, Any]:
        async with self._transaction() as conn:
            cleaned_url = await conn.fetchval(
                "delete from url_mappings where id = $1 returning cleaned_url",
                mapping_id,
            )
            if cleaned_url is None:
                raise RepositoryNotFoundError("url mapping not found")

            # Ads under a deleted rule fall to a less specific URL rule or to their title rule.
            ads_updated = await CascadeUpdater(conn, ads_table=self.ads_table).reresolve_url_base(
                base_url(cleaned_url)
            )
            return {"deleted": True, "ads_updated": ads_updated}

    # Title mappings

    async def list_title_mappings(
        self,
        *,
        search: str | None,
        sort_by: str,
        sort_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[dict[str, Any]], int]:
        pool = await self._get_pool()
        params: list[Any] = []
        where_sql = "true"
        normalized_search = self._coerce_text(search)
        if normalized_search:
            params.append(f"%{normalized_search}%")
            where_sql = "(title ilike $1 or category ilike $1 or coalesce(translated_title, '') ilike $1)"

        sort_column = TITLE_MAPPING_SORT_COLUMNS.get(sort_by, "created_at")
        direction = "asc" if sort_dir == "asc" else "desc"

        total = await pool.fetchval(f"select count(*) from title_mappings where {where_sql}", *params)
        rows = await pool.fetch(
            f"""
            select {TITLE_MAPPING_COLUMNS}
            from title_mappings
            where {where_sql}
            order by {sort_column} {direction}, id asc
            limit ${len(params) + 1}
            offset ${len(params) + 2}
            """,
            *params,
            limit,
            offset,
        )
        return [self._title_mapping_row_to_dict(row) for row in rows], int(total or 0)

    async def get_title_mapping(self, mapping_id: int) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {TITLE_MAPPING_COLUMNS} from title_mappings where id = $1", mapping_id)
        if row is None:
            raise RepositoryNotFoundError("title mapping not found")
        return self._title_mapping_row_to_dict(row)

    async def create_title_mapping(
        self,
        *,
        title: str,
        category: str,
        translated_title: str | None = None,
    ) -> dict[str, Any]:
        normalized_title = normalize_title(title or "")
        if not normalized_title:
            raise RepositoryValidationError("title must be a non-empty string")
        normalized_category = self._coerce_category(category)

        async with self._transaction() as conn:
            existing = await conn.fetchval(
                "select id from title_mappings where title_key = $1",
                title_key(normalized_title),
            )
            if existing is not None:
                raise RepositoryDuplicateRuleError(f"title mapping already exists for {normalized_title!r}")

            result = await CascadeUpdater(conn, ads_table=self.ads_table).apply_title_category(
                normalized_title,
                normalized_category,
                translated_title=self._coerce_text(translated_title),
            )
            return {
                "mapping": self._title_mapping_row_to_dict(result.mapping),
                "ads_updated": result.ads_updated,
            }

    async def update_title_mapping(
        self,
        *,
        mapping_id: int,
        category: str,
        translated_title: str | None = None,
    ) -> dict[str, Any]:
        normalized_category = self._coerce_category(category)

        async with self._transaction() as conn:
            current_title = await conn.fetchval(
                "select title from title_mappings where id = $1 for update",
                mapping_id,
            )
            if current_title is None:
                raise RepositoryNotFoundError("title mapping not found")

            result = await CascadeUpdater(conn, ads_table=self.ads_table).apply_title_category(
                current_title,
                normalized_category,
                translated_title=self._coerce_text(translated_title),
            )
            return {
                "mapping": self._title_mapping_row_to_dict(result.mapping),
                "ads_updated": result.ads_updated,
            }

    async def delete_title_mapping(self, *, mapping_id: int) -> dict[str, Any]:
        async with self._transaction() as conn:
            deleted_title = await conn.fetchval(
                "delete from title_mappings where id = $1 returning title",
                mapping_id,
            )
            if deleted_title is None:
                raise RepositoryNotFoundError("title mapping not found")

            ads_updated = await CascadeUpdater(conn, ads_table=self.ads_table).reresolve_title(deleted_title)
            return {"deleted": True, "ads_updated": ads_updated}

    async def list_title_mapping_conflicts(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select
              tm.id as title_mapping_id,
              tm.title,
              tm.category as title_category,
              a.category as url_category,
              count(*)::int as ad_count
            from title_mappings tm
            join {self.ads_table} a on {AD_TITLE_KEY_SQL} = tm.title_key
            where a.type = 'url_mapping'
              and {known_category_sql('a.category')}
              and {known_category_sql('tm.category')}
              and a.category <> tm.category
            group by tm.id, tm.title, tm.category, a.category
            order by ad_count desc, tm.id asc, a.category asc
            limit $1
            """,
            limit,
        )
        return [dict(row) for row in rows]

    async def resolve_title_mapping_conflict(self, *, title_mapping_id: int, category: str) -> dict[str, Any]:
        return await self.update_title_mapping(mapping_id=title_mapping_id, category=category)

    # Categorization by example

    async def categorize_ad(
        self,
        *,
        landing_page: str,
        category: str,
        title: str | None = None,
    ) -> dict[str, Any]:
        cleaned_url = self._require_cleaned_url(landing_page)
        normalized_category = self._coerce_text(category) or ""
        if is_unknown_category(normalized_category):
            raise RepositoryValidationError("category must be a known, non-empty label")
        normalized_title = normalize_title(title or "")

        async with self._transaction() as conn:
            cascade = CascadeUpdater(conn, ads_table=self.ads_table)
            url_result = await cascade.apply_url_category(cleaned_url, normalized_category)
            title_result = None
            if normalized_title:
                title_result = await cascade.apply_title_category(normalized_title, normalized_category)

        return {
            "url_mapping_count": url_result.ads_updated,
            "title_mapping_count": title_result.ads_updated if title_result else 0,
            "url_mapping_created": url_result.mapping_created,
            "title_mapping_created": title_result.mapping_created if title_result else False,
        }

    async def mark_uninteresting(self, *, landing_page: str, title: str | None = None) -> dict[str, Any]:
        cleaned_url = self._require_cleaned_url(landing_page)
        key = title_key(title)

        async with self._transaction() as conn:
            await CascadeUpdater(conn, ads_table=self.ads_table).resolve_or_create_url_mapping(
                cleaned_url,
                MANUAL_UNINTERESTED,
            )
            params: list[Any] = [base_url(cleaned_url)]
            title_sql = ""
            if key:
                params.append(key)
                title_sql = f"and {AD_TITLE_KEY_SQL} = $2"
            rows = await conn.fetch(
                f"""
                delete from {self.ads_table} a
                where strpos(lower(coalesce(a.landing_page, '')), $1) > 0
                  {title_sql}
                returning a.id
                """,
                *params,
            )
        return {"rows_deleted": len(rows)}

    # Categories

    async def merge_categories(self, *, source_labels: Sequence[str], target: str) -> dict[str, int]:
        sources = sorted({label.strip() for label in source_labels if isinstance(label, str) and label.strip()})
        normalized_target = self._coerce_text(target)
        if not sources:
            raise RepositoryValidationError("at least one source category is required")
        if not normalized_target:
            raise RepositoryValidationError("target category must be a non-empty string")
        if normalized_target in sources:
            raise RepositoryValidationError("target category cannot be one of the source categories")

        async with self._transaction() as conn:
            mapping_rows = await conn.fetch(
                "update url_mappings set category = $2 where category = any($1::text[]) returning id",
                sources,
                normalized_target,
            )
            title_rows = await conn.fetch(
                """
                update title_mappings
                set category = $2, updated_at = now()
                where category = any($1::text[])
                returning id
                """,
                sources,
                normalized_target,
            )
            ad_rows = await conn.fetch(
                f"""
                update {self.ads_table}
                set category = $2, updated_at = now()
                where category = any($1::text[])
                returning id
                """,
                sources,
                normalized_target,
            )
        return {
            "mappings_updated": len(mapping_rows),
            "title_mappings_updated": len(title_rows),
            "ads_updated": len(ad_rows),
        }

    async def list_categories(self) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select distinct labels.category
            from (
              select category from url_mappings
              union
              select category from title_mappings
              union
              select category from {self.ads_table}
            ) labels
            where {known_category_sql('labels.category')}
            order by labels.category asc
            """
        )
        return [row["category"] for row in rows]

    async def list_category_counts(
        self,
        *,
        country: str | None,
        start_date: date | None,
        end_date: date | None,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        ad_conditions = [known_category_sql("a.category")]
        normalized_country = self._coerce_text(country)
        if normalized_country:
            ad_conditions.append(f"a.country = {bind(normalized_country)}")
        if start_date is not None:
            ad_conditions.append(f"a.date >= {bind(start_date)}::date")
        if end_date is not None:
            ad_conditions.append(f"a.date < ({bind(end_date)}::date + 1)")

        rows = await pool.fetch(
            f"""
            with mapping_counts as (
              select category, count(*)::int as mapping_count
              from url_mappings
              where {known_category_sql('category')}
              group by category
            ),
            title_counts as (
              select category, count(*)::int as title_mapping_count
              from title_mappings
              where {known_category_sql('category')}
              group by category
            ),
            ad_counts as (
              select a.category, count(*)::int as ad_count
              from {self.ads_table} a
              where {' and '.join(ad_conditions)}
              group by a.category
            )
            select
              category,
              coalesce(mapping_count, 0) as mapping_count,
              coalesce(ad_count, 0) as ad_count,
              coalesce(title_mapping_count, 0) as title_mapping_count
            from mapping_counts
            full outer join title_counts using (category)
            full outer join ad_counts using (category)
            order by category asc
            """,
            *params,
        )
        return [dict(row) for row in rows]

    # Normalization job data access

    async def fetch_category_label_counts(self) -> list[tuple[str, str, int]]:
        """Return ``(store, label, rows)`` for every known label in every store."""
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select 'url_mappings' as store, category, count(*)::int as row_count
            from url_mappings
            where {known_category_sql('category')}
            group by category
            union all
            select 'title_mappings' as store, category, count(*)::int as row_count
            from title_mappings
            where {known_category_sql('category')}
            group by category
            union all
            select 'ads' as store, category, count(*)::int as row_count
            from {self.ads_table}
            where {known_category_sql('category')}
            group by category
            """
        )
        return [(row["store"], row["category"], row["row_count"]) for row in rows]

    async def apply_category_rewrites(self, rewrites: Sequence[tuple[str, str]]) -> dict[str, int]:
        counts = {store: 0 for store in CATEGORY_STORES}
        if not rewrites:
            return counts

        variants = [variant for variant, _ in rewrites]
        canonicals = [canonical for _, canonical in rewrites]
        async with self._transaction() as conn:
            for store, table, touch_sql in (
                ("url_mappings", "url_mappings", ""),
                ("title_mappings", "title_mappings", ", updated_at = now()"),
                ("ads", self.ads_table, ", updated_at = now()"),
            ):
                rows = await conn.fetch(
                    f"""
                    update {table} as t
                    set category = r.canonical{touch_sql}
                    from unnest($1::text[], $2::text[]) as r(variant, canonical)
                    where t.category = r.variant
                    returning t.id
                    """,
                    variants,
                    canonicals,
                )
                counts[store] = len(rows)
        return counts

    async def fetch_unknown_url_mapping_votes(self) -> list[tuple[int, str, int]]:
        """Known title-rule categories found on the ads under each unknown URL rule."""
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select um.id as mapping_id, tm.category, count(distinct a.id)::int as ad_count
            from url_mappings um
            join {self.ads_table} a
              on strpos(lower(coalesce(a.landing_page, '')), um.match_base) > 0
            join title_mappings tm on tm.title_key = {AD_TITLE_KEY_SQL}
            where um.match_base <> ''
              and {unknown_category_sql('um.category')}
              and {known_category_sql('tm.category')}
            group by um.id, tm.category
            """
        )
        return [(row["mapping_id"], row["category"], row["ad_count"]) for row in rows]

    async def fetch_unknown_title_mapping_votes(self) -> list[tuple[int, str, int]]:
        """Known URL-rule categories found on the ads carrying each unknown title rule's title."""
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select tm.id as mapping_id, best.category, count(distinct a.id)::int as ad_count
            from title_mappings tm
            join {self.ads_table} a on {AD_TITLE_KEY_SQL} = tm.title_key
            join lateral (
              select um.category
              from url_mappings um
              where um.match_base <> ''
                and strpos(lower(coalesce(a.landing_page, '')), um.match_base) > 0
                and {known_category_sql('um.category')}
              order by length(um.cleaned_url) desc, um.id asc
              limit 1
            ) best on true
            where {unknown_category_sql('tm.category')}
            group by tm.id, best.category
            """
        )
        return [(row["mapping_id"], row["category"], row["ad_count"]) for row in rows]

    async def apply_url_mapping_fixes(self, fixes: dict[int, str]) -> int:
        if not fixes:
            return 0
        async with self._transaction() as conn:
            rows = await conn.fetch(
                f"""
                update url_mappings as m
                set category = f.category
                from unnest($1::bigint[], $2::text[]) as f(id, category)
                where m.id = f.id
                  and {unknown_category_sql('m.category')}
                returning m.id
                """,
                list(fixes.keys()),
                list(fixes.values()),
            )
        return len(rows)

    async def apply_title_mapping_fixes(self, fixes: dict[int, str]) -> int:
        if not fixes:
            return 0
        async with self._transaction() as conn:
            rows = await conn.fetch(
                f"""
                update title_mappings as m
                set category = f.category, updated_at = now()
                from unnest($1::bigint[], $2::text[]) as f(id, category)
                where m.id = f.id
                  and {unknown_category_sql('m.category')}
                returning m.id
                """,
                list(fixes.keys()),
                list(fixes.values()),
            )
        return len(rows)

    async def fetch_resolution_batch(self, *, after_id: int, limit: int) -> list[ResolutionCandidate]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            candidate_select_sql(
                self.ads_table,
                f"a.id in (select b.id from {self.ads_table} b where b.id > $1 order by b.id asc limit $2)",
                lock=False,
            ),
            after_id,
            limit,
        )
        return candidates_from_rows(rows)

    async def apply_ad_resolutions(self, updates: Sequence[AdUpdate]) -> list[AdUpdate]:
        if not updates:
            return []
        async with self._transaction() as conn:
            return await apply_ad_updates(conn, self.ads_table, updates)

    # Internals

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    yield conn
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryDuplicateRuleError("mapping rule already exists") from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryTransactionError("database transaction failed and was rolled back") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("ADCAT_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _require_cleaned_url(self, url: str) -> str:
        normalized = self._coerce_text(url)
        if not normalized:
            raise RepositoryValidationError("url must be a non-empty string")
        cleaned_url = clean_url(normalized)
        host = base_url(cleaned_url).split("/", 1)[0]
        while host.startswith("www."):
            host = host[4:]
        if not host:
            raise RepositoryValidationError("url does not contain a host")
        return cleaned_url

    def _coerce_category(self, category: str) -> str:
        # Blank categories are stored as the explicit placeholder so backfill can find them.
        normalized = self._coerce_text(category)
        return normalized if normalized else "unknown"

    @staticmethod
    def _url_mapping_row_to_dict(row: asyncpg.Record | dict[str, Any]) -> dict[str, Any]:
        return {
            "id": row["id"],
            "cleaned_url": row["cleaned_url"],
            "category": row["category"],
            "created_at": row["created_at"],
        }

    @staticmethod
    def _title_mapping_row_to_dict(row: asyncpg.Record | dict[str, Any]) -> dict[str, Any]:
        return {
            "id": row["id"],
            "title": row["title"],
            "category": row["category"],
            "translated_title": row["translated_title"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
        ads_table=settings.ads_table,
    )
