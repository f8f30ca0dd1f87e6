"""
API Server - HTTP surface over a WorkflowEngine.

Uses aiohttp for a lightweight embedded HTTP server that runs within the
existing asyncio loop. Run events are streamed as Server-Sent Events.

Routes:
    GET    /health
    POST   /runs                  {graph, inputs?, runId?}  -> {runId}
    GET    /runs                  run summaries
    GET    /runs/{run_id}         run context
    POST   /runs/{run_id}/input   {nodeId, value}
    DELETE /runs/{run_id}         cancel
    GET    /runs/{run_id}/events  text/event-stream
"""

import json
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any

from aiohttp import web

from pathway.errors import GraphIntegrityError, InvalidHumanInput, RunNotFoundError
from pathway.runtime.engine import WorkflowEngine

logger = logging.getLogger(__name__)

_dumps = partial(json.dumps, default=str)


def _json(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


@dataclass
class ApiServerConfig:
    """Configuration for the API HTTP server."""

    host: str = "127.0.0.1"
    port: int = 8080


class ApiServer:
    """
    Embedded HTTP server exposing run invocation and event streaming.

    Lifecycle:
        server = ApiServer(engine, ApiServerConfig(port=0))
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(self, engine: WorkflowEngine, config: ApiServerConfig | None = None):
        self._engine = engine
        self._config = config or ApiServerConfig()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health)
        app.router.add_post("/runs", self._start_run)
        app.router.add_get("/runs", self._list_runs)
        app.router.add_get("/runs/{run_id}", self._get_run)
        app.router.add_post("/runs/{run_id}/input", self._resume)
        app.router.add_delete("/runs/{run_id}", self._cancel_run)
        app.router.add_get("/runs/{run_id}/events", self._events)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info(f"API server started on {self._config.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None

    # === HANDLERS ===

    async def _read_json(self, request: web.Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except (json.JSONDecodeError, ValueError):
            raise web.HTTPBadRequest(
                text=_dumps({"error": "Body must be JSON"}), content_type="application/json"
            ) from None
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(
                text=_dumps({"error": "Body must be a JSON object"}), content_type="application/json"
            )
        return body

    async def _health(self, request: web.Request) -> web.Response:
        return _json({"status": "ok", "stats": self._engine.get_stats()})

    async def _start_run(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        graph = body.get("graph") or body.get("workflow")
        if graph is None:
            return _json({"error": "Missing 'graph'"}, status=400)
        inputs = body.get("inputs") or body.get("initialBindings") or {}
        try:
            run_id = await self._engine.start_run(graph, inputs, run_id=body.get("runId"))
        except GraphIntegrityError as e:
            return _json({"error": "Invalid graph", "details": e.errors}, status=422)
        except ValueError as e:
            return _json({"error": str(e)}, status=409)
        return _json({"runId": run_id}, status=201)

    async def _list_runs(self, request: web.Request) -> web.Response:
        return _json({"runs": self._engine.list_runs()})

    async def _get_run(self, request: web.Request) -> web.Response:
        try:
            run = self._engine.get_run(request.match_info["run_id"])
        except RunNotFoundError as e:
            return _json({"error": str(e)}, status=404)
        return _json(run.to_dict())

    async def _resume(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        body = await self._read_json(request)
        node_id = body.get("nodeId")
        if not node_id:
            return _json({"error": "Missing 'nodeId'"}, status=400)
        try:
            accepted = await self._engine.resume_human_input(run_id, node_id, body.get("value"))
        except RunNotFoundError as e:
            return _json({"error": str(e)}, status=404)
        except InvalidHumanInput as e:
            return _json({"error": str(e)}, status=422)
        if not accepted:
            return _json({"error": f"Node '{node_id}' is not waiting for input"}, status=409)
        return _json({"status": "accepted"}, status=202)

    async def _cancel_run(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        try:
            cancelled = await self._engine.cancel_run(run_id)
        except RunNotFoundError as e:
            return _json({"error": str(e)}, status=404)
        status = str(self._engine.get_run(run_id).status)
        return _json({"cancelled": cancelled, "status": status})

    async def _events(self, request: web.Request) -> web.StreamResponse:
        run_id = request.match_info["run_id"]
        try:
            stream = self._engine.subscribe(run_id)
        except RunNotFoundError as e:
            return _json({"error": str(e)}, status=404)

        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            }
        )
        await response.prepare(request)
        try:
            async for event in stream:
                frame = (
                    f"id: {event.sequence}\n"
                    f"event: {event.kind.value}\n"
                    f"data: {_dumps(event.to_dict())}\n\n"
                )
                await response.write(frame.encode("utf-8"))
            await response.write_eof()
        except ConnectionResetError:
            logger.debug(f"Event stream client for {run_id} disconnected")
        finally:
            await stream.aclose()
        return response
