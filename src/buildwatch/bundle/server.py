"""Development server with live reload.

Serves the development bundle, then the static public directory, then falls
back to ``index.html`` for extensionless paths so client-side routes load the
entry document. HTML responses get a small script that reloads the page when
the server pushes a ``reload`` event over ``/__livereload``.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
from collections.abc import Iterable
from pathlib import Path

from aiohttp import web

logger = logging.getLogger(__name__)

mimetypes.add_type("application/javascript", ".mjs")
mimetypes.add_type("application/wasm", ".wasm")

LIVERELOAD_PATH: str = "/__livereload"
LIVERELOAD_SNIPPET: str = (
    "<script>new EventSource('" + LIVERELOAD_PATH + "')"
    ".addEventListener('reload', () => location.reload());</script>"
)
DEFAULT_HOST: str = "127.0.0.1"
DEFAULT_PORT: int = 8080
INDEX_DOCUMENT: str = "index.html"
KEEPALIVE_SECONDS: float = 15.0


def inject_livereload(html: str) -> str:
    """Insert the live-reload script before ``</body>`` (or append it)."""
    marker = html.lower().rfind("</body>")
    if marker == -1:
        return html + LIVERELOAD_SNIPPET
    return html[:marker] + LIVERELOAD_SNIPPET + html[marker:]


class DevServer:
    """aiohttp server for serve mode.

    Usage:
        server = DevServer([".buildwatch/serve", "public"], port=8080)
        await server.start()
        server.notify_reload()
        await server.stop()
    """

    def __init__(
        self,
        roots: Iterable[str | os.PathLike[str]],
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
    ):
        self._roots = [Path(r).resolve() for r in roots]
        self._host = host
        self._port = port
        self._clients: set[asyncio.Queue[str | None]] = set()
        self._runner: web.AppRunner | None = None
        self.app = self.create_app()

    @property
    def url(self) -> str:
        return f"http://localhost:{self._port}"

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def create_app(self) -> web.Application:
        """Create the web application."""
        app = web.Application()
        app.router.add_get(LIVERELOAD_PATH, self._livereload)
        app.router.add_get("/{path:.*}", self._serve)
        return app

    def _resolve(self, rel_path: str) -> Path | None:
        """Find ``rel_path`` in the first root that has it."""
        for root in self._roots:
            candidate = (root / rel_path).resolve()
            # Reject traversal out of the root
            if candidate != root and root not in candidate.parents:
                continue
            if candidate.is_dir():
                candidate = candidate / INDEX_DOCUMENT
            if candidate.is_file():
                return candidate
        return None

    async def _file_response(self, path: Path) -> web.StreamResponse:
        if path.suffix.lower() in (".html", ".htm"):
            raw = await asyncio.to_thread(path.read_bytes)
            html = inject_livereload(raw.decode("utf-8", errors="replace"))
            return web.Response(
                text=html,
                content_type="text/html",
                headers={"Cache-Control": "no-cache"},
            )
        return web.FileResponse(path, headers={"Cache-Control": "no-cache"})

    async def _serve(self, request: web.Request) -> web.StreamResponse:
        rel_path = request.match_info.get("path", "")
        found = await asyncio.to_thread(self._resolve, rel_path)
        if found is not None:
            return await self._file_response(found)

        # Client-side route: hand back the entry document
        if not Path(rel_path).suffix:
            index = await asyncio.to_thread(self._resolve, INDEX_DOCUMENT)
            if index is not None:
                return await self._file_response(index)

        raise web.HTTPNotFound(text="Not found")

    async def _livereload(self, request: web.Request) -> web.StreamResponse:
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._clients.add(queue)
        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            }
        )
        try:
            await response.prepare(request)
            await response.write(b"retry: 1000\n\n")
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    # Comment line; a failed write detects a gone client
                    await response.write(b": ping\n\n")
                    continue
                if event is None:
                    break
                await response.write(f"event: {event}\ndata: {event}\n\n".encode())
        except ConnectionResetError:
            logger.debug("Live-reload client disconnected")
        finally:
            self._clients.discard(queue)
        return response

    def notify_reload(self) -> int:
        """Tell every connected browser to reload.

        Returns:
            Number of clients notified
        """
        for queue in self._clients:
            queue.put_nowait("reload")
        if self._clients:
            logger.info(f"Live reload sent to {len(self._clients)} client(s)")
        return len(self._clients)

    async def start(self) -> None:
        """Start listening."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info(f"Dev server running at {self.url}")

    async def stop(self) -> None:
        """Disconnect live-reload clients and stop listening."""
        for queue in self._clients:
            queue.put_nowait(None)
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Dev server stopped")
