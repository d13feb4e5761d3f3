from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Literal

from adcat.core.categories import is_unknown_category

AdType = Literal["url_mapping", "title_mapping", "ai_response"]
ResolutionSource = Literal["url_mapping", "title_mapping"]

URL_MAPPING_TYPE: AdType = "url_mapping"
TITLE_MAPPING_TYPE: AdType = "title_mapping"


@dataclass(slots=True)
class AdSnapshot:
    id: int
    title: str | None
    landing_page: str | None
    category: str | None
    type: str | None


@dataclass(slots=True)
class MappingRef:
    id: int
    key: str
    category: str | None


@dataclass(slots=True)
class ResolutionCandidate:
    ad: AdSnapshot
    url_matches: list[MappingRef] = field(default_factory=list)
    title_mapping: MappingRef | None = None


@dataclass(slots=True)
class Resolution:
    category: str | None
    type: str | None
    source: ResolutionSource | None


@dataclass(slots=True)
class AdUpdate:
    ad_id: int
    category: str
    type: str
    source: ResolutionSource
    previous_category: str | None
    previous_type: str | None


def select_url_mapping(matches: Iterable[MappingRef]) -> MappingRef | None:
    """Most specific URL rule with a known category: longest cleaned URL, then lowest id."""
    known = [match for match in matches if not is_unknown_category(match.category)]
    if not known:
        return None
    return min(known, key=lambda match: (-len(match.key), match.id))


def resolve(
    ad: AdSnapshot,
    url_mapping: MappingRef | None,
    title_mapping: MappingRef | None,
    *,
    respect_url_precedence: bool = True,
    keep_url_provenance: bool = True,
    fill_only: bool = False,
) -> Resolution:
    """Decide which category an ad should carry.

    A known URL rule always wins. Otherwise a known title rule wins. With
    ``keep_url_provenance`` the title rule never replaces a category that
    came from a URL rule; re-resolution after a URL rule goes away turns it
    off so the title rule can take over. With ``fill_only`` an ad that
    already has a known category is only moved onto a URL rule, and never
    when it is URL-sourced already. With neither rule the ad keeps its
    category and provenance.
    """
    unchanged = Resolution(category=ad.category, type=ad.type, source=None)
    categorized = not is_unknown_category(ad.category)
    if fill_only and categorized and ad.type == URL_MAPPING_TYPE:
        return unchanged
    if respect_url_precedence:
        if url_mapping is not None and not is_unknown_category(url_mapping.category):
            return Resolution(category=url_mapping.category, type=URL_MAPPING_TYPE, source="url_mapping")
        if keep_url_provenance and ad.type == URL_MAPPING_TYPE:
            return unchanged
    if fill_only and categorized:
        return unchanged
    if title_mapping is not None and not is_unknown_category(title_mapping.category):
        return Resolution(category=title_mapping.category, type=TITLE_MAPPING_TYPE, source="title_mapping")
    return unchanged


def plan_ad_updates(
    candidates: Iterable[ResolutionCandidate],
    *,
    respect_url_precedence: bool = True,
    keep_url_provenance: bool = True,
    fill_only: bool = False,
) -> list[AdUpdate]:
    """Resolve every candidate and keep only the ads whose category or provenance changes."""
    updates: list[AdUpdate] = []
    for candidate in candidates:
        ad = candidate.ad
        resolution = resolve(
            ad,
            select_url_mapping(candidate.url_matches),
            candidate.title_mapping,
            respect_url_precedence=respect_url_precedence,
            keep_url_provenance=keep_url_provenance,
            fill_only=fill_only,
        )
        if resolution.source is None or resolution.category is None or resolution.type is None:
            continue
        if resolution.category == ad.category and resolution.type == ad.type:
            continue
        updates.append(
            AdUpdate(
                ad_id=ad.id,
                category=resolution.category,
                type=resolution.type,
                source=resolution.source,
                previous_category=ad.category,
                previous_type=ad.type,
            )
        )
    return updates
