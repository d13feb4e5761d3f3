from __future__ import annotations

import asyncio
import copy
import logging
import threading
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Literal

from opentelemetry import trace

from adcat.core.categories import category_key, is_unknown_category, pick_display_label
from adcat.core.config import get_settings
from adcat.services.precedence import plan_ad_updates
from adcat.services.repository import PostgresRepository, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

JobStatus = Literal["idle", "running", "completed", "failed"]


@dataclass(slots=True)
class DeduplicationStats:
    url_mappings: int = 0
    ads: int = 0
    title_mappings: int = 0


@dataclass(slots=True)
class BackcategorisationStats:
    url_mappings_fixed: int = 0
    title_mappings_fixed: int = 0
    ads_from_url_mappings: int = 0
    ads_from_title_mappings: int = 0


@dataclass(slots=True)
class NormalizationStats:
    deduplicated: DeduplicationStats = field(default_factory=DeduplicationStats)
    backcategorised: BackcategorisationStats = field(default_factory=BackcategorisationStats)


@dataclass(slots=True)
class NormalizationState:
    status: JobStatus = "idle"
    stats: NormalizationStats | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


def plan_category_deduplication(label_counts: Iterable[tuple[str, str, int]]) -> list[tuple[str, str]]:
    """Rewrites ``(variant, canonical)`` collapsing labels that share a category key.

    Counts are combined across stores before the display label is chosen, so
    the canonical literal is the same for every store.
    """
    groups: dict[str, dict[str, int]] = {}
    for _store, label, row_count in label_counts:
        if is_unknown_category(label):
            continue
        key = category_key(label)
        literals = groups.setdefault(key, {})
        literals[label] = literals.get(label, 0) + row_count

    rewrites: list[tuple[str, str]] = []
    for key in sorted(groups):
        literals = groups[key]
        if len(literals) < 2:
            continue
        canonical = pick_display_label(literals)
        rewrites.extend((variant, canonical) for variant in sorted(literals) if variant != canonical)
    return rewrites


def pick_mapping_fixes(votes: Iterable[tuple[int, str, int]]) -> dict[int, str]:
    """Majority category per mapping id, ties to the smallest literal."""
    tallies: dict[int, dict[str, int]] = {}
    for mapping_id, category, ad_count in votes:
        if is_unknown_category(category) or ad_count <= 0:
            continue
        tally = tallies.setdefault(mapping_id, {})
        tally[category] = tally.get(category, 0) + ad_count
    return {mapping_id: pick_display_label(tally) for mapping_id, tally in sorted(tallies.items())}


async def run_normalization(
    repository: PostgresRepository,
    *,
    batch_size: int,
    max_fix_passes: int,
) -> NormalizationStats:
    if batch_size < 1:
        raise ValueError("batch_size must be a positive integer")
    stats = NormalizationStats()

    with tracer.start_as_current_span("normalization.deduplicate") as span:
        rewrites = plan_category_deduplication(await repository.fetch_category_label_counts())
        counts = await repository.apply_category_rewrites(rewrites)
        stats.deduplicated = DeduplicationStats(
            url_mappings=counts["url_mappings"],
            ads=counts["ads"],
            title_mappings=counts["title_mappings"],
        )
        span.set_attribute("normalization.rewrites", len(rewrites))
    logger.info(
        "category deduplication rewrites=%s url_mappings=%s title_mappings=%s ads=%s",
        len(rewrites),
        stats.deduplicated.url_mappings,
        stats.deduplicated.title_mappings,
        stats.deduplicated.ads,
    )

    backcategorised = stats.backcategorised
    with tracer.start_as_current_span("normalization.fix_mappings") as span:
        passes = 0
        while passes < max_fix_passes:
            passes += 1
            url_fixes = pick_mapping_fixes(await repository.fetch_unknown_url_mapping_votes())
            url_fixed = await repository.apply_url_mapping_fixes(url_fixes)
            title_fixes = pick_mapping_fixes(await repository.fetch_unknown_title_mapping_votes())
            title_fixed = await repository.apply_title_mapping_fixes(title_fixes)
            backcategorised.url_mappings_fixed += url_fixed
            backcategorised.title_mappings_fixed += title_fixed
            if not url_fixed and not title_fixed:
                break
        else:
            if max_fix_passes > 0:
                logger.warning("mapping fixes still changing after %s passes", max_fix_passes)
        span.set_attribute("normalization.fix_passes", passes)

    with tracer.start_as_current_span("normalization.backfill_ads") as span:
        after_id = 0
        batches = 0
        while True:
            candidates = await repository.fetch_resolution_batch(after_id=after_id, limit=batch_size)
            if not candidates:
                break
            batches += 1
            applied = await repository.apply_ad_resolutions(
                plan_ad_updates(candidates, keep_url_provenance=False, fill_only=True)
            )
            for update in applied:
                if update.source == "url_mapping":
                    backcategorised.ads_from_url_mappings += 1
                else:
                    backcategorised.ads_from_title_mappings += 1
            after_id = candidates[-1].ad.id
        span.set_attribute("normalization.batches", batches)

    logger.info(
        "backcategorisation url_mappings_fixed=%s title_mappings_fixed=%s ads_from_url=%s ads_from_title=%s",
        backcategorised.url_mappings_fixed,
        backcategorised.title_mappings_fixed,
        backcategorised.ads_from_url_mappings,
        backcategorised.ads_from_title_mappings,
    )
    return stats


class NormalizationJob:
    """Single-flight holder for the background normalization run."""

    def __init__(self, runner: Callable[[], Awaitable[NormalizationStats]]) -> None:
        self._runner = runner
        self._lock = threading.Lock()
        self._state = NormalizationState()
        self._task: asyncio.Task[None] | None = None

    def status(self) -> NormalizationState:
        with self._lock:
            return copy.deepcopy(self._state)

    def start(self) -> tuple[NormalizationState, bool]:
        """Schedule a run on the current event loop unless one is in flight."""
        with self._lock:
            if self._state.status == "running":
                return copy.deepcopy(self._state), False
            self._state = NormalizationState(status="running", started_at=datetime.now(timezone.utc))
            snapshot = copy.deepcopy(self._state)
            self._task = asyncio.get_running_loop().create_task(self._run(), name="category-normalization")
        logger.info("category normalization started")
        return snapshot, True

    async def wait(self) -> NormalizationState:
        task = self._task
        if task is not None:
            await asyncio.wait({task})
        return self.status()

    async def shutdown(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait({task})
        self._finish("failed", error="normalization cancelled at shutdown")

    async def _run(self) -> None:
        try:
            stats = await self._runner()
        except asyncio.CancelledError:
            self._finish("failed", error="normalization cancelled at shutdown")
            raise
        except Exception as exc:
            logger.exception("category normalization failed")
            self._finish("failed", error=str(exc) or exc.__class__.__name__)
            return
        self._finish("completed", stats=stats)
        logger.info("category normalization completed")

    def _finish(self, status: JobStatus, *, stats: NormalizationStats | None = None, error: str | None = None) -> None:
        with self._lock:
            if self._state.status != "running":
                return
            self._state.status = status
            self._state.stats = stats
            self._state.error = error
            self._state.finished_at = datetime.now(timezone.utc)


@lru_cache
def get_normalization_job() -> NormalizationJob:
    settings = get_settings()

    async def runner() -> NormalizationStats:
        return await run_normalization(
            get_repository(),
            batch_size=settings.normalization_batch_size,
            max_fix_passes=settings.normalization_max_fix_passes,
        )

    return NormalizationJob(runner)
