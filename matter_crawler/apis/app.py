from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Awaitable, Dict, Optional, Set
import asyncio
import logging

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from ..config import CrawlConfig
from ..engines.events import BufferedEventSink, FanoutEventSink, LoggingEventSink
from ..engines.orchestrator import CrawlOrchestrator
from ..errors import CrawlAlreadyRunning, CrawlError
from ..version import __version__

logger = logging.getLogger(__name__)


class GapCollectRequest(BaseModel):
    extended: bool = False
    with_details: bool = True


def create_app(config: Optional[CrawlConfig] = None, orchestrator: Optional[CrawlOrchestrator] = None) -> FastAPI:
    """
    Build the API around a single orchestrator; every route shares it, so the
    one-run-at-a-time rule holds across requests.
    """
    cfg = config or CrawlConfig.from_env()
    events = BufferedEventSink()
    if orchestrator is None:
        orchestrator = CrawlOrchestrator(cfg, sink=FanoutEventSink([LoggingEventSink(), events]))
    elif isinstance(orchestrator.sink, FanoutEventSink):
        orchestrator.sink.subscribe(events)
    else:
        orchestrator.sink = FanoutEventSink([orchestrator.sink, events])

    tasks: Set["asyncio.Task[Any]"] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        orchestrator.request_cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await orchestrator.close()

    app = FastAPI(title="matter_crawler API", version=__version__, lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.events = events

    def _start(name: str, coro: Awaitable[Any]) -> None:
        async def _runner() -> None:
            try:
                await coro
            except CrawlAlreadyRunning as exc:
                logger.warning("%s rejected: %s", name, exc)
            except CrawlError as exc:
                # Already reported through the error event.
                logger.error("%s failed: %s", name, exc)

        task = asyncio.create_task(_runner())
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    def _require_idle() -> None:
        if orchestrator.is_crawling:
            raise HTTPException(status_code=409, detail=f"A run is already active ({orchestrator.state.value})")

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/status")
    async def status(check_site: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "state": orchestrator.state.value,
            "is_crawling": orchestrator.is_crawling,
            "progress": orchestrator.progress.snapshot().to_dict() if orchestrator.progress else None,
            "last_report": orchestrator.last_report.to_dict() if orchestrator.last_report else None,
        }
        if check_site:
            try:
                out["site"] = await orchestrator.check_status()
            except CrawlError as exc:
                raise HTTPException(status_code=502, detail=str(exc)) from exc
        return out

    @app.post("/crawl", status_code=202)
    async def crawl() -> Dict[str, Any]:
        _require_idle()
        _start("crawl", orchestrator.crawl())
        return {"accepted": True, "events_since": events.last_seq}

    @app.post("/crawl/stop")
    async def stop() -> Dict[str, Any]:
        return {"stopping": orchestrator.request_cancel(), "state": orchestrator.state.value}

    @app.get("/events")
    async def get_events(since: int = Query(0, ge=0)) -> Dict[str, Any]:
        return {"last_seq": events.last_seq, "events": events.since(since)}

    @app.get("/gaps")
    async def gaps() -> Dict[str, Any]:
        try:
            report = await orchestrator.detect_gaps()
        except CrawlError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return report.to_dict()

    @app.post("/gaps/collect", status_code=202)
    async def collect_gaps(req: Optional[GapCollectRequest] = None) -> Dict[str, Any]:
        req = req or GapCollectRequest()
        _require_idle()
        _start("gap collection", orchestrator.collect_gaps(extended=req.extended, with_details=req.with_details))
        return {"accepted": True, "extended": req.extended, "events_since": events.last_seq}

    return app
