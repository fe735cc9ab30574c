"""docshelf command line interface."""

import argparse
import asyncio
import json
import logging
import sys

from config.settings import Settings
from observability.logging import setup_logging
from observability.metrics import get_metrics_text
from server.app import build_engine
from server.scheduler import SyncScheduler
from services.sync import SyncConflictError

logger = logging.getLogger(__name__)


def _print_run(run):
    print(json.dumps(run.to_dict(), indent=2, default=str))


async def _sync(engine, args) -> int:
    docs_path = args.docs_path or engine.settings.sync.default_docs_path
    task = await engine.orchestrator.sync_from_source(args.version, args.owner, args.repo,
                                                      docs_path, args.ref)
    run = await task
    _print_run(run)
    return 0 if run.status.value == "SUCCESS" else 1


async def _sync_local(engine, args) -> int:
    task = await engine.orchestrator.sync_from_local(args.version, args.root, args.pattern)
    run = await task
    _print_run(run)
    return 0 if run.status.value == "SUCCESS" else 1


async def _search(engine, args) -> int:
    search = {
        'lexical': lambda: engine.search.lexical_search(args.version, args.query, args.limit),
        'semantic': lambda: engine.search.semantic_search(args.version, args.query, args.limit,
                                                          args.threshold),
        'hybrid': lambda: engine.search.hybrid_search(args.version, args.query, args.limit,
                                                      args.threshold),
    }[args.mode]
    results = await search()
    if not results:
        print("No results found.")
        return 0
    print(f"\nFound {len(results)} results ({args.mode} search):\n")
    for i, result in enumerate(results, 1):
        print(f"{i}. {result.title} (score: {result.score:.4f})")
        print(f"   Path: {result.path}")
        print(f"   Text: {result.content[:200]}...")
        print()
    return 0


async def _history(engine, args) -> int:
    for run in await engine.orchestrator.get_sync_history(args.version, args.limit):
        _print_run(run)
    return 0


async def _schedule(engine, args) -> int:
    scheduler = SyncScheduler(engine.orchestrator, engine.source_loader(),
                              cron=args.cron or engine.settings.sync.cron)
    if args.once:
        tasks = await scheduler.sync_all()
        for run in await asyncio.gather(*tasks):
            _print_run(run)
        return 0
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown()
    return 0


COMMANDS = {
    'sync': _sync,
    'sync-local': _sync_local,
    'search': _search,
    'history': _history,
    'schedule': _schedule,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="docshelf", description="docshelf documentation ingestion and search")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the storage schema")

    sync = sub.add_parser("sync", help="Sync a version from a GitHub repository")
    sync.add_argument("--version", required=True, help="Version id to sync into")
    sync.add_argument("--owner", required=True)
    sync.add_argument("--repo", required=True)
    sync.add_argument("--docs-path", help="Docs folder, defaults to DOCSHELF_DEFAULT_DOCS_PATH")
    sync.add_argument("--ref", default="main", help="Tag or branch")

    local = sub.add_parser("sync-local", help="Sync a version from a local directory")
    local.add_argument("--version", required=True)
    local.add_argument("--root", required=True)
    local.add_argument("--pattern", default="**/*")

    search = sub.add_parser("search", help="Search one version")
    search.add_argument("query")
    search.add_argument("--version", required=True)
    search.add_argument("--mode", choices=["lexical", "semantic", "hybrid"], default="hybrid")
    search.add_argument("--limit", type=int, default=5)
    search.add_argument("--threshold", type=float, default=0.0)

    history = sub.add_parser("history", help="Show recent sync runs")
    history.add_argument("--version")
    history.add_argument("--limit", type=int, default=20)

    schedule = sub.add_parser("schedule", help="Run scheduled syncs for configured sources")
    schedule.add_argument("--cron", help="Crontab expression, overrides DOCSHELF_SYNC_CRON")
    schedule.add_argument("--once", action="store_true", help="Sync every source once and exit")

    sub.add_parser("metrics", help="Print Prometheus metrics")
    return parser


async def run(args) -> int:
    settings = Settings.from_env()
    setup_logging(settings.logging.level, use_json=settings.logging.json_format)

    if args.command == "metrics":
        sys.stdout.write(get_metrics_text().decode("utf-8"))
        return 0

    engine = await build_engine(settings)
    try:
        if args.command == "init-db":
            print(f"Storage ready: {settings.database.type.value}")
            return 0
        return await COMMANDS[args.command](engine, args)
    except SyncConflictError as e:
        logger.error(str(e))
        return 2
    finally:
        await engine.close()


def main():
    """CLI entry point"""
    args = build_parser().parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
