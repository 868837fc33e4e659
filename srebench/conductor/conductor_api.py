import logging
import threading

import pyfiglet
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from uvicorn import Config, Server

from srebench.config import get_settings

_engine = None

app = FastAPI(title="SREBench conductor")

_server: Server | None = None
_shutdown_event = threading.Event()

logger = logging.getLogger("all.srebench.conductor_api")


def request_shutdown():
    """Stop serving the run. Callable from the engine thread or a signal handler; repeats are no-ops."""
    logger.info("Shutting down API server...")
    _shutdown_event.set()
    if _server is not None:
        _server.should_exit = True


def set_engine(engine):
    """Bind the running ScenarioEngine."""
    global _engine
    _engine = engine


def _require_engine():
    if _engine is None:
        logger.error("No scenario has been started")
        raise HTTPException(status_code=400, detail="No scenario has been started")
    return _engine


class RemediationRequest(BaseModel):
    note: str | None = None
    agent: str | None = None


@app.get("/status")
async def get_status():
    engine = _require_engine()
    status = engine.status()
    logger.debug(f"API returns status: {status}")
    return status


@app.get("/trace")
async def get_trace(since: int = 0):
    engine = _require_engine()
    entries = [e.to_dict() for e in engine.trace.entries[since:]]
    return {"runId": engine.run_id, "entries": entries}


@app.get("/report")
async def get_report():
    engine = _require_engine()
    if engine.report is None:
        raise HTTPException(status_code=409, detail=f"Run is still in state {engine.state}")
    return engine.report.to_dict()


@app.post("/remediation")
async def post_remediation(req: RemediationRequest):
    engine = _require_engine()
    if not engine.notify_remediation(req.note, req.agent):
        raise HTTPException(status_code=409, detail=f"Run already finished ({engine.state})")
    return {"accepted": True, "state": engine.state.value}


def run_api(engine, host: str | None = None, port: int | None = None):
    """Serve status, trace and remediation for `engine` until request_shutdown()."""
    global _server
    set_engine(engine)

    settings = get_settings()
    host = host or settings.api_hostname
    port = port or settings.api_port

    logger.debug(f"API server starting on http://{host}:{port}")

    console = Console(stderr=True)
    art = pyfiglet.figlet_format("SREBench")
    console.print(Panel(art, title="SREBench conductor API", subtitle=f"http://{host}:{port}", style="bold green"))
    console.print(
        Markdown(
            """
**Available Endpoints**
- **GET /status**: current state, elapsed time and remaining budget
- **GET /trace**: execution trace entries (`?since=N` for the tail)
- **GET /report**: ScoreReport once the run is over
- **POST /remediation**: `{ "note": "...", "agent": "..." }` marks remediation as started
"""
        )
    )

    config = Config(
        app=app,
        host=host,
        port=port,
        log_level="warning",
        timeout_graceful_shutdown=5,
    )
    config.install_signal_handlers = False
    server = Server(config)
    _server = server

    # when _shutdown_event is set, flip server.should_exit
    def _watch():
        _shutdown_event.wait()
        logger.debug("API server shutdown event received")
        server.should_exit = True

    threading.Thread(target=_watch, name="api-shutdown-watcher", daemon=True).start()

    try:
        server.run()
    finally:
        _shutdown_event.clear()
        _server = None


def start_api_thread(engine, host: str | None = None, port: int | None = None) -> threading.Thread:
    thread = threading.Thread(target=run_api, args=(engine, host, port), name="srebench-api", daemon=True)
    thread.start()
    return thread
