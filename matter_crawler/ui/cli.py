from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from typing import Any, Awaitable, Callable, List

from ..config import CrawlConfig, ZERO_RESULT_POLICIES
from ..errors import ConfigError, CrawlError
from ..engines.orchestrator import CrawlOrchestrator
from ..utils.logging import setup_logging

logger = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Matter certification catalog crawler")
    p.add_argument("--config", type=str, help="Path to config JSON", default=None)
    p.add_argument("--log-level", type=str, default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
    p.add_argument("--log-file", type=str, default=None, help="Also write logs to this file")
    p.add_argument("--output-dir", type=str, default=None, help="Directory for JSON dumps")
    p.add_argument("--database", type=str, default=None, help="SQLite database path")
    p.add_argument("--page-range-limit", type=int, default=None, help="Crawl at most this many list pages")
    p.add_argument("--concurrency", type=int, default=None, help="List and detail concurrency")
    p.add_argument("--zero-result-policy", choices=ZERO_RESULT_POLICIES, default=None,
                   help="How empty list pages are treated")
    p.add_argument("--no-save", action="store_true", help="Do not write detail records to the database")
    p.add_argument("--serve", action="store_true", help="Run REST API server instead of a CLI command")
    p.add_argument("--host", type=str, default="127.0.0.1", help="API host (when --serve)")
    p.add_argument("--port", type=int, default=8000, help="API port (when --serve)")

    sub = p.add_subparsers(dest="command")
    sub.add_parser("crawl", help="Run the list and detail stages")
    sub.add_parser("status", help="Compare stored records with the site")
    sub.add_parser("gaps", help="Report pages with missing records")
    collect = sub.add_parser("collect-gaps", help="Re-collect pages with missing records")
    collect.add_argument("--extended", action="store_true", help="Also fetch neighbour pages of each gap")
    collect.add_argument("--no-details", action="store_true", help="Only run the list stage")
    return p


def _load_config(args: argparse.Namespace) -> CrawlConfig:
    cfg = CrawlConfig.from_file(args.config) if args.config else CrawlConfig.from_env()
    cfg = cfg.with_overrides(
        output_dir=args.output_dir,
        database_path=args.database,
        page_range_limit=args.page_range_limit,
        initial_concurrency=args.concurrency,
        detail_concurrency=args.concurrency,
        zero_result_policy=args.zero_result_policy,
        log_level=args.log_level,
        auto_save=False if args.no_save else None,
    )
    cfg.validate()
    return cfg


def run_server(cfg: CrawlConfig, host: str, port: int) -> None:
    import uvicorn

    from ..apis.app import create_app

    uvicorn.run(create_app(cfg), host=host, port=port)


async def _with_orchestrator(
    cfg: CrawlConfig, action: Callable[[CrawlOrchestrator], Awaitable[Any]]
) -> Any:
    orchestrator = CrawlOrchestrator(cfg)
    loop = asyncio.get_running_loop()
    handled = True
    try:
        # Ctrl-C asks the run to stop cleanly instead of tearing down the loop.
        loop.add_signal_handler(signal.SIGINT, orchestrator.request_cancel)
    except NotImplementedError:
        handled = False
        logger.debug("Signal handlers not supported; Ctrl-C will abort immediately")
    try:
        return await action(orchestrator)
    finally:
        if handled:
            loop.remove_signal_handler(signal.SIGINT)
        await orchestrator.close()


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def _crawl(o: CrawlOrchestrator) -> int:
    report = await o.crawl()
    logger.info(
        "Pages: %d | Records: %d | Details: %d | Failed pages: %d | Failed products: %d%s",
        len(report.planned_pages), len(report.stubs), len(report.details),
        len(report.failed_pages), len(report.failed_products),
        " | stopped" if report.stopped else "",
    )
    return 0


async def _status(o: CrawlOrchestrator) -> int:
    _print_json(await o.check_status())
    return 0


async def _gaps(o: CrawlOrchestrator) -> int:
    report = await o.detect_gaps(force=True)
    print(report.format())
    return 0


def _collect_gaps(extended: bool, with_details: bool) -> Callable[[CrawlOrchestrator], Awaitable[int]]:
    async def _run(o: CrawlOrchestrator) -> int:
        result = await o.collect_gaps(extended=extended, with_details=with_details)
        _print_json(result.to_dict())
        return 0 if result.success else 2
    return _run


def run_cli(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        cfg = _load_config(args)
    except ConfigError as exc:
        parser.error(str(exc))
    setup_logging(cfg.log_level, args.log_file)

    if args.serve:
        run_server(cfg, args.host, args.port)
        return 0

    command = args.command or "crawl"
    actions = {
        "crawl": _crawl,
        "status": _status,
        "gaps": _gaps,
    }
    action = actions.get(command) or _collect_gaps(args.extended, not args.no_details)

    try:
        return asyncio.run(_with_orchestrator(cfg, action))
    except CrawlError as exc:
        logger.error("%s failed: %s", command, exc)
        return 1
