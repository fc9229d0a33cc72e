"""Command-line entry point for the issue grouping service."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

import structlog

from .config import get_settings
from .core.fingerprint import InvalidPayloadError
from .core.models import AppFilter, IssueKind
from .core.service import IssueService, IssueServiceError
from .storage import create_repository
from .utils.logging import configure_logging

logger = structlog.get_logger()


async def ingest_file(app_id: str, path: Path, kind: IssueKind, limit: int) -> dict:
    """Ingest a JSON array of raw occurrences and return the ranked groups."""
    settings = get_settings()
    repository = create_repository(settings)
    service = IssueService(repository, settings)

    payloads = json.loads(path.read_text())
    if isinstance(payloads, dict):
        payloads = [payloads]

    ingested = rejected = 0
    try:
        for raw in payloads:
            try:
                await service.ingest_payload(app_id, raw)
                ingested += 1
            except InvalidPayloadError as e:
                rejected += 1
                logger.warning("Skipping occurrence", error=str(e))

        app_filter = AppFilter(app_id=app_id, limit=limit)
        # Cover every ingested timestamp instead of the default lookback
        timestamps = [o.timestamp for o in await repository.query_occurrences(AppFilter(app_id=app_id))]
        if timestamps:
            app_filter.from_time, app_filter.to_time = min(timestamps), max(timestamps)
        groups = await service.get_groups(app_id, kind, app_filter)
    finally:
        await repository.close()

    logger.info("Ingestion finished", ingested=ingested, rejected=rejected)
    return groups


def print_groups(listing: dict) -> None:
    print("\n" + "=" * 50)
    print("ISSUE GROUPS")
    print("=" * 50)
    for group in listing["results"]:
        share = group["percentage_contribution"]
        share_text = f"{share:.2f}%" if share is not None else "-"
        print(f"{group['count']:>6}  {share_text:>8}  {group['name']}  ({group['id']})")
    if listing["meta"]["next"]:
        print("... more groups available")
    print("=" * 50 + "\n")


def cli():
    """Command-line interface."""
    parser = argparse.ArgumentParser(
        description="Group crash and ANR occurrences by stack trace fingerprint"
    )
    parser.add_argument(
        "--app-id", "-a",
        required=True,
        help="App the occurrences belong to"
    )
    parser.add_argument(
        "--file", "-f",
        required=True,
        type=Path,
        help="JSON file with one occurrence or an array of occurrences"
    )
    parser.add_argument(
        "--kind", "-k",
        choices=[k.value for k in IssueKind],
        default=IssueKind.CRASH.value,
        help="Which groups to print (default: crash)"
    )
    parser.add_argument(
        "--limit", "-n",
        type=int,
        default=10,
        help="Number of groups to print (default: 10)"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the listing as JSON"
    )

    args = parser.parse_args()

    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    try:
        listing = asyncio.run(ingest_file(
            app_id=args.app_id,
            path=args.file,
            kind=IssueKind(args.kind),
            limit=args.limit,
        ))
    except IssueServiceError as e:
        logger.error("Ingestion failed", error=str(e))
        sys.exit(1)

    if args.json:
        print(json.dumps(listing, indent=2))
    else:
        print_groups(listing)


if __name__ == "__main__":
    cli()
