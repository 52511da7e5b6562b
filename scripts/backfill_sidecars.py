#!/usr/bin/env python3
"""Submit trunk-recorder JSON sidecars from disk through the ingest pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys
from typing import Any

from trunk_ingest.core.config import get_settings
from trunk_ingest.core.errors import IngestError
from trunk_ingest.core.telemetry import configure_logging
from trunk_ingest.services.gateway import get_gateway
from trunk_ingest.services.normalizer import call_identifier
from trunk_ingest.services.pipeline import IngestPipeline, build_pipeline

AUDIO_EXTENSIONS = (".m4a", ".wav")


def load_sidecar(path: Path) -> dict[str, Any]:
    descriptor = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(descriptor, dict):
        raise ValueError("sidecar must hold a JSON object")
    if not descriptor.get("filename") and not descriptor.get("audio_name"):
        descriptor["audio_name"] = _audio_name_for(path)
    return descriptor


def _audio_name_for(path: Path) -> str:
    for extension in AUDIO_EXTENSIONS:
        candidate = path.with_suffix(extension)
        if candidate.exists():
            return candidate.name
    return path.with_suffix(AUDIO_EXTENSIONS[0]).name


def _event_count(descriptor: dict[str, Any], *keys: str) -> int:
    for key in keys:
        events = descriptor.get(key)
        if isinstance(events, list):
            return len(events)
    return 0


def describe(descriptor: dict[str, Any]) -> str:
    return (
        f"{call_identifier(descriptor)} "
        f"freqlist={_event_count(descriptor, 'freqList', 'freq_list')} "
        f"srclist={_event_count(descriptor, 'srcList', 'src_list')}"
    )


async def _submit(pipeline: IngestPipeline, path: Path, descriptor: dict[str, Any]) -> bool:
    try:
        result = await pipeline.submit_call(descriptor)
    except IngestError as exc:
        print(f"failed {path}: {type(exc).__name__}: {exc.message}", file=sys.stderr)
        return False
    print(
        f"{result.status} {result.call_id} "
        f"freqlist_stored={result.freqlist_stored} srclist_stored={result.srclist_stored} "
        f"rejected={len(result.rejected)}"
    )
    return True


async def backfill(sidecars: list[tuple[Path, dict[str, Any]]]) -> int:
    settings = get_settings()
    configure_logging(correlate=settings.otel_log_correlation)
    gateway = get_gateway()
    await gateway.open()
    pipeline = build_pipeline(gateway, settings)
    await pipeline.start()
    try:
        outcomes = await asyncio.gather(*(_submit(pipeline, path, descriptor) for path, descriptor in sidecars))
        await pipeline.join()
    finally:
        await pipeline.drain()
        await gateway.close()
        get_gateway.cache_clear()
    return outcomes.count(False)


def main() -> None:
    parser = argparse.ArgumentParser(description="Backfill trunk-recorder call sidecars into PostgreSQL.")
    parser.add_argument("directory", type=Path, help="Directory searched recursively for .json sidecars")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print derived call ids and event counts without touching the database",
    )
    args = parser.parse_args()

    if not args.directory.is_dir():
        parser.error(f"not a directory: {args.directory}")

    failures = 0
    sidecars: list[tuple[Path, dict[str, Any]]] = []
    for path in sorted(args.directory.rglob("*.json")):
        try:
            descriptor = load_sidecar(path)
            summary = describe(descriptor)
        except (OSError, ValueError, IngestError) as exc:
            failures += 1
            print(f"skipped {path}: {exc}", file=sys.stderr)
            continue
        if args.dry_run:
            print(summary)
        else:
            sidecars.append((path, descriptor))

    if sidecars:
        failures += asyncio.run(backfill(sidecars))
    if failures:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
