"""FastAPI development server: static output, build status and live reload."""

from __future__ import annotations

import asyncio
import json
import re
import threading
import time
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, HTMLResponse, RedirectResponse, StreamingResponse
from pydantic import BaseModel

from ..config import DEFAULT_PORT
from ..logging import get_logger

API_PREFIX = "/__sitepipe__"
EVENTS_PATH = f"{API_PREFIX}/events"
RELOAD_SNIPPET = (
    "<script>(function(){"
    f'var source=new EventSource("{EVENTS_PATH}");'
    'source.addEventListener("reload",function(){window.location.reload();});'
    "})();</script>"
)
_BODY_CLOSE = re.compile(r"</body\s*>", re.IGNORECASE)
_KEEPALIVE_SECONDS = 15.0
_NO_STORE = {"Cache-Control": "no-store"}


class HealthResponse(BaseModel):
    status: str
    site: Optional[str] = None


class BuildStatus(BaseModel):
    site: Optional[str] = None
    output_root: Optional[str] = None
    production: bool = False
    nodes: Dict[str, str] = {}
    failed: List[str] = []
    diagnostics: List[str] = []
    finished_at: Optional[str] = None
    reloads: int = 0


class ReloadHub:
    """Fan-out of reload signals from worker threads to SSE subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Tuple[asyncio.AbstractEventLoop, "asyncio.Queue[str]"]] = []
        self._version = 0
        self.logger = get_logger("service")

    @property
    def version(self) -> int:
        return self._version

    @property
    def listeners(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> "asyncio.Queue[str]":
        queue: "asyncio.Queue[str]" = asyncio.Queue()
        with self._lock:
            self._subscribers.append((asyncio.get_running_loop(), queue))
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[str]") -> None:
        with self._lock:
            self._subscribers = [item for item in self._subscribers if item[1] is not queue]

    def notify(self, paths: Sequence[Path] = ()) -> int:
        """Signal every subscriber; safe to call from any thread."""
        with self._lock:
            self._version += 1
            subscribers = list(self._subscribers)
            version = self._version
        payload = json.dumps({"version": version, "paths": [Path(path).name for path in paths]})
        delivered = 0
        for loop, queue in subscribers:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, payload)
            except RuntimeError:
                self.unsubscribe(queue)
                continue
            delivered += 1
        self.logger.debug("Reload #%d sent to %d client(s)", version, delivered)
        return delivered


def create_app(
    output_root: Path,
    *,
    hub: ReloadHub | None = None,
    status_provider: Callable[[], Mapping[str, object]] | None = None,
    inject_reload: bool = True,
) -> FastAPI:
    """Create the application serving ``output_root`` with live reload."""
    hub = hub or ReloadHub()
    root = Path(output_root)
    app = FastAPI(title="sitepipe dev server", version="1.0.0")
    app.state.hub = hub

    def _status() -> Dict[str, object]:
        data = dict(status_provider()) if status_provider is not None else {}
        data.setdefault("output_root", str(root))
        return data

    @app.get(f"{API_PREFIX}/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        site = _status().get("site")
        return HealthResponse(status="ok", site=str(site) if site is not None else None)

    @app.get(f"{API_PREFIX}/status", response_model=BuildStatus)
    async def status() -> BuildStatus:
        return BuildStatus(**_status(), reloads=hub.version)

    @app.get(EVENTS_PATH)
    async def events(request: Request) -> StreamingResponse:
        async def stream() -> AsyncIterator[str]:
            queue = hub.subscribe()
            try:
                yield "retry: 1000\n\n"
                while not await request.is_disconnected():
                    try:
                        payload = await asyncio.wait_for(queue.get(), timeout=_KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    yield f"event: reload\ndata: {payload}\n\n"
            finally:
                hub.unsubscribe(queue)

        return StreamingResponse(stream(), media_type="text/event-stream", headers=_NO_STORE)

    @app.get("/{path:path}")
    async def static(path: str):
        base = root.resolve()
        candidate = (base / path).resolve()
        if not candidate.is_relative_to(base):
            raise HTTPException(status_code=404, detail="Not found")
        if candidate.is_dir():
            if path and not path.endswith("/"):
                return RedirectResponse(f"/{path}/")
            candidate = candidate / "index.html"
        if not candidate.is_file():
            raise HTTPException(status_code=404, detail=f"Not found: /{path}")
        if inject_reload and candidate.suffix.lower() in {".html", ".htm"}:
            text = candidate.read_text(encoding="utf-8", errors="replace")
            return HTMLResponse(inject_snippet(text), headers=_NO_STORE)
        return FileResponse(candidate, headers=_NO_STORE)

    return app


def inject_snippet(html: str, snippet: str = RELOAD_SNIPPET) -> str:
    """Insert the reload script before the last ``</body>``, or append it."""
    matches = list(_BODY_CLOSE.finditer(html))
    if not matches:
        return html + snippet
    index = matches[-1].start()
    return html[:index] + snippet + html[index:]


class DevServer:
    """Runs uvicorn for the dev app on a daemon thread."""

    def __init__(
        self,
        app: FastAPI,
        *,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        log_level: str = "warning",
        startup_timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.startup_timeout = startup_timeout
        self._server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_level=log_level, lifespan="off")
        )
        self._thread: Optional[threading.Thread] = None
        self.logger = get_logger("service")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(target=self._server.run, name="sitepipe-server", daemon=True)
        self._thread.start()
        deadline = time.monotonic() + self.startup_timeout
        while not self._server.started:
            if not self._thread.is_alive():
                raise RuntimeError(f"Dev server failed to start on port {self.port}")
            if time.monotonic() > deadline:
                raise RuntimeError(f"Dev server did not start within {self.startup_timeout:.0f}s")
            time.sleep(0.05)
        self.logger.debug("uvicorn listening on %s:%d", self.host, self.port)

    def stop(self) -> None:
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None


__all__ = [
    "API_PREFIX",
    "BuildStatus",
    "DevServer",
    "EVENTS_PATH",
    "HealthResponse",
    "RELOAD_SNIPPET",
    "ReloadHub",
    "create_app",
    "inject_snippet",
]
