#!/usr/bin/env python3
"""Run category normalization to completion and print the final status as JSON."""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import asdict

from adcat.core.config import get_settings
from adcat.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from adcat.schemas.categories import NormalizationStatusOut
from adcat.services.normalization import NormalizationJob, NormalizationState, run_normalization
from adcat.services.repository import PostgresRepository, get_repository


async def run_once(repository: PostgresRepository, *, batch_size: int, max_fix_passes: int) -> NormalizationState:
    job = NormalizationJob(
        lambda: run_normalization(repository, batch_size=batch_size, max_fix_passes=max_fix_passes)
    )
    try:
        job.start()
        return await job.wait()
    finally:
        await repository.close()


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return number


def render_status(state: NormalizationState) -> str:
    return NormalizationStatusOut.model_validate(asdict(state)).model_dump_json(by_alias=True, indent=2)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Deduplicate category labels and backfill unknown categories.")
    parser.add_argument("--batch-size", type=positive_int, default=settings.normalization_batch_size)
    parser.add_argument("--max-fix-passes", type=int, default=settings.normalization_max_fix_passes)
    args = parser.parse_args()

    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    try:
        state = asyncio.run(
            run_once(
                get_repository(),
                batch_size=args.batch_size,
                max_fix_passes=args.max_fix_passes,
            )
        )
    finally:
        shutdown_telemetry(telemetry_runtime)

    print(render_status(state))
    return 0 if state.status == "completed" else 1


if __name__ == "__main__":
    sys.exit(main())
