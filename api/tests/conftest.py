from __future__ import annotations

import itertools
from collections.abc import Sequence
from typing import Any

import pytest

from adcat.core.categories import is_unknown_category, normalize_title, title_key
from adcat.core.urls import base_url, landing_page_matches
from adcat.services.cascade import CascadeResult
from adcat.services.precedence import (
    AdSnapshot,
    AdUpdate,
    MappingRef,
    ResolutionCandidate,
    plan_ad_updates,
    select_url_mapping,
)


class InMemoryCategoryStore:
    """Python mirror of the three tables and the cascade/normalization SQL paths."""

    def __init__(self) -> None:
        self.ads: dict[int, dict[str, Any]] = {}
        self.url_mappings: dict[int, dict[str, Any]] = {}
        self.title_mappings: dict[int, dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self.closed = False

    def add_ad(
        self,
        *,
        landing_page: str,
        title: str | None = None,
        category: str | None = None,
        type: str | None = None,
    ) -> int:
        ad_id = next(self._ids)
        self.ads[ad_id] = {
            "id": ad_id,
            "landing_page": landing_page,
            "title": title,
            "category": category,
            "type": type,
        }
        return ad_id

    def add_url_mapping(self, cleaned_url: str, category: str) -> int:
        mapping_id = next(self._ids)
        self.url_mappings[mapping_id] = {"id": mapping_id, "cleaned_url": cleaned_url, "category": category}
        return mapping_id

    def add_title_mapping(self, title: str, category: str) -> int:
        mapping_id = next(self._ids)
        self.title_mappings[mapping_id] = {"id": mapping_id, "title": normalize_title(title), "category": category}
        return mapping_id

    # Cascade mirror

    def apply_url_category(self, cleaned_url: str, category: str) -> CascadeResult:
        existing = next((m for m in self.url_mappings.values() if m["cleaned_url"] == cleaned_url), None)
        if existing is None:
            existing = self.url_mappings[self.add_url_mapping(cleaned_url, category)]
            created = True
        else:
            existing["category"] = category
            created = False
        base = base_url(cleaned_url)
        if is_unknown_category(category):
            ads_updated = self.reresolve_url_base(base)
        else:
            ads_updated = 0
            for ad in self._sorted_ads():
                if not landing_page_matches(ad["landing_page"], base):
                    continue
                if ad["category"] == category and ad["type"] == "url_mapping":
                    continue
                ad["category"] = category
                ad["type"] = "url_mapping"
                ads_updated += 1
        return CascadeResult(mapping=dict(existing), mapping_created=created, ads_updated=ads_updated)

    def apply_title_category(self, title: str, category: str) -> CascadeResult:
        key = title_key(title)
        existing = next((m for m in self.title_mappings.values() if title_key(m["title"]) == key), None)
        if existing is None:
            existing = self.title_mappings[self.add_title_mapping(title, category)]
            created = True
        else:
            existing["category"] = category
            created = False
        return CascadeResult(mapping=dict(existing), mapping_created=created, ads_updated=self.reresolve_title(key))

    def delete_url_mapping(self, mapping_id: int) -> int:
        mapping = self.url_mappings.pop(mapping_id)
        return self.reresolve_url_base(base_url(mapping["cleaned_url"]))

    def delete_title_mapping(self, mapping_id: int) -> int:
        mapping = self.title_mappings.pop(mapping_id)
        return self.reresolve_title(title_key(mapping["title"]))

    def reresolve_url_base(self, base: str) -> int:
        candidates = [
            self._candidate(ad)
            for ad in self._sorted_ads()
            if ad["type"] == "url_mapping" and landing_page_matches(ad["landing_page"], base)
        ]
        return len(self._apply(plan_ad_updates(candidates, keep_url_provenance=False)))

    def reresolve_title(self, key: str) -> int:
        candidates = [self._candidate(ad) for ad in self._sorted_ads() if key and title_key(ad["title"]) == key]
        return len(self._apply(plan_ad_updates(candidates)))

    # Normalization data access

    async def fetch_category_label_counts(self) -> list[tuple[str, str, int]]:
        counts: dict[tuple[str, str], int] = {}
        for store, rows in (
            ("url_mappings", self.url_mappings.values()),
            ("title_mappings", self.title_mappings.values()),
            ("ads", self.ads.values()),
        ):
            for row in rows:
                if is_unknown_category(row["category"]):
                    continue
                counts[(store, row["category"])] = counts.get((store, row["category"]), 0) + 1
        return [(store, label, count) for (store, label), count in counts.items()]

    async def apply_category_rewrites(self, rewrites: Sequence[tuple[str, str]]) -> dict[str, int]:
        mapping = dict(rewrites)
        counts = {}
        for store, rows in (
            ("url_mappings", self.url_mappings.values()),
            ("title_mappings", self.title_mappings.values()),
            ("ads", self.ads.values()),
        ):
            changed = 0
            for row in rows:
                if row["category"] in mapping:
                    row["category"] = mapping[row["category"]]
                    changed += 1
            counts[store] = changed
        return counts

    async def fetch_unknown_url_mapping_votes(self) -> list[tuple[int, str, int]]:
        votes: dict[tuple[int, str], set[int]] = {}
        for mapping in self.url_mappings.values():
            base = base_url(mapping["cleaned_url"])
            if not base or not is_unknown_category(mapping["category"]):
                continue
            for ad in self.ads.values():
                if not landing_page_matches(ad["landing_page"], base):
                    continue
                title_mapping = self._title_mapping_for(ad)
                if title_mapping is None or is_unknown_category(title_mapping["category"]):
                    continue
                votes.setdefault((mapping["id"], title_mapping["category"]), set()).add(ad["id"])
        return [(mapping_id, category, len(ad_ids)) for (mapping_id, category), ad_ids in votes.items()]

    async def fetch_unknown_title_mapping_votes(self) -> list[tuple[int, str, int]]:
        votes: dict[tuple[int, str], set[int]] = {}
        for ad in self.ads.values():
            title_mapping = self._title_mapping_for(ad)
            if title_mapping is None or not is_unknown_category(title_mapping["category"]):
                continue
            best = select_url_mapping(self._url_matches(ad))
            if best is None:
                continue
            votes.setdefault((title_mapping["id"], best.category), set()).add(ad["id"])
        return [(mapping_id, category, len(ad_ids)) for (mapping_id, category), ad_ids in votes.items()]

    async def apply_url_mapping_fixes(self, fixes: dict[int, str]) -> int:
        return self._apply_fixes(self.url_mappings, fixes)

    async def apply_title_mapping_fixes(self, fixes: dict[int, str]) -> int:
        return self._apply_fixes(self.title_mappings, fixes)

    async def fetch_resolution_batch(self, *, after_id: int, limit: int) -> list[ResolutionCandidate]:
        ads = [ad for ad in self._sorted_ads() if ad["id"] > after_id][:limit]
        return [self._candidate(ad) for ad in ads]

    async def apply_ad_resolutions(self, updates: Sequence[AdUpdate]) -> list[AdUpdate]:
        return self._apply(updates)

    async def close(self) -> None:
        self.closed = True

    # Internals

    def _sorted_ads(self) -> list[dict[str, Any]]:
        return [self.ads[ad_id] for ad_id in sorted(self.ads)]

    def _url_matches(self, ad: dict[str, Any]) -> list[MappingRef]:
        return [
            MappingRef(id=m["id"], key=m["cleaned_url"], category=m["category"])
            for m in self.url_mappings.values()
            if landing_page_matches(ad["landing_page"], base_url(m["cleaned_url"]))
        ]

    def _title_mapping_for(self, ad: dict[str, Any]) -> dict[str, Any] | None:
        key = title_key(ad["title"])
        if not key:
            return None
        return next((m for m in self.title_mappings.values() if title_key(m["title"]) == key), None)

    def _candidate(self, ad: dict[str, Any]) -> ResolutionCandidate:
        title_mapping = self._title_mapping_for(ad)
        return ResolutionCandidate(
            ad=AdSnapshot(
                id=ad["id"],
                title=ad["title"],
                landing_page=ad["landing_page"],
                category=ad["category"],
                type=ad["type"],
            ),
            url_matches=self._url_matches(ad),
            title_mapping=(
                MappingRef(id=title_mapping["id"], key=title_key(title_mapping["title"]), category=title_mapping["category"])
                if title_mapping
                else None
            ),
        )

    def _apply(self, updates: Sequence[AdUpdate]) -> list[AdUpdate]:
        applied = []
        for update in updates:
            ad = self.ads[update.ad_id]
            if ad["category"] != update.previous_category or ad["type"] != update.previous_type:
                continue
            ad["category"] = update.category
            ad["type"] = update.type
            applied.append(update)
        return applied

    @staticmethod
    def _apply_fixes(table: dict[int, dict[str, Any]], fixes: dict[int, str]) -> int:
        changed = 0
        for mapping_id, category in fixes.items():
            row = table.get(mapping_id)
            if row is not None and is_unknown_category(row["category"]):
                row["category"] = category
                changed += 1
        return changed


@pytest.fixture
def category_store() -> InMemoryCategoryStore:
    return InMemoryCategoryStore()
