import argparse
import asyncio
import sys

from loguru import logger

from techindex import pipeline
from techindex.clients import PlacesClient
from techindex.config import DATA_DIR, LOG_LEVEL
from techindex.errors import PipelineError, describe

STAGES = (
    "index",
    "audit",
    "rollup",
    "density",
    "org-signals",
    "facilities",
    "merge-org",
    "seed-overrides",
    "merge-overrides",
    "queue",
    "pull",
    "candidates",
    "match",
    "tech",
    "migrate-ids",
    "all",
)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build the address-level tech index.")
    parser.add_argument("stage", choices=STAGES, help="Pipeline stage to run")
    parser.add_argument("--data-dir", default=DATA_DIR, help="Artifact root directory")
    parser.add_argument("--roster", default=None, help="Raw roster export (overrides TECHINDEX_ROSTER_PATH)")
    parser.add_argument("--registrations", default=None, help="Business registrations export")
    parser.add_argument("--all-cities", action="store_true", help="Do not restrict facilities to metro cities")
    parser.add_argument("--from-anchors", action="store_true", help="Queue lookups from the densest roster anchors")
    parser.add_argument("--max-per-run", type=int, default=None, help="Cap on queued lookups")
    parser.add_argument("--require-unknown-name", action="store_true", help="Only queue addresses without a business name")
    return parser.parse_args(argv)


async def run_stage(args: argparse.Namespace) -> dict:
    """
    Dispatch one stage against the artifact store.

    Returns:
        dict: The stage summary counts.
    """
    store = pipeline.open_store(args.data_dir)
    roster = {"roster_path": args.roster} if args.roster else {}
    extra = {"registrations_path": args.registrations} if args.registrations else {}
    if args.all_cities:
        extra["metro_only"] = False

    if args.stage == "index":
        return pipeline.run_index(store, **roster)
    if args.stage == "audit":
        return pipeline.run_audit(store)
    if args.stage == "rollup":
        return pipeline.run_rollup(store)
    if args.stage == "density":
        return pipeline.run_density(store)
    if args.stage == "org-signals":
        return pipeline.run_org_signals(store, **roster)
    if args.stage == "facilities":
        return pipeline.run_facilities(store, **roster, **extra)
    if args.stage == "merge-org":
        return pipeline.run_merge_org(store)
    if args.stage == "seed-overrides":
        return pipeline.run_seed_overrides(store)
    if args.stage == "merge-overrides":
        return pipeline.run_merge_overrides(store)
    if args.stage == "queue":
        filters = {"require_unknown_name": args.require_unknown_name} if not args.from_anchors else {}
        if args.max_per_run is not None:
            filters["max_per_run"] = args.max_per_run
        return pipeline.run_queue(store, from_anchors=args.from_anchors, **filters)
    if args.stage == "pull":
        return await pipeline.run_pull(store)
    if args.stage == "candidates":
        return pipeline.run_candidates(store)
    if args.stage == "match":
        return pipeline.run_match(store)
    if args.stage == "tech":
        return pipeline.run_tech(store)
    if args.stage == "migrate-ids":
        return pipeline.run_migrate_ids(store, **roster)
    return await pipeline.run_all(store, **roster, **extra)


async def main(argv=None) -> int:
    """
    Run the requested stage and report its summary.

    - Stage failures (missing inputs, header drift, lock conflicts) are logged
      with their diagnostics and turn into a non-zero exit code.
    - The place-lookup session is always closed.
    """
    args = parse_args(argv)

    # Initialize logs
    logger.remove()  # Remove default handler
    logger.add(sys.stderr, level=LOG_LEVEL, format="<green>{time:HH:mm:ss}</green> | <level>{message}</level>")

    try:
        summary = await run_stage(args)
        logger.success(f"{args.stage}: {summary}")
        return 0
    except PipelineError as e:
        for line in describe(e):
            logger.error(line)
        return 75 if e.retryable else 1
    finally:
        # Cleanup: close the places session to prevent unclosed connector warnings
        await PlacesClient().close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
