"""
npu-router :: API Server (aiohttp)

HTTP surface over Router.process and the maintenance operations.
Generation is blocking (torch, one token per step), so it runs in a thread
pool; a client disconnect sets the request's cancel event and the session
stops at the next step.

Endpoints:
    POST /v1/process                    → route one utterance
    GET  /v1/stats                      → memory manager stats
    GET  /v1/models                     → slot state per model
    POST /v1/models/{name}/load         → ensure_loaded
    POST /v1/models/{name}/unload       → evict now
    POST /v1/models/{name}/persistent   → {"persistent": bool}
    POST /v1/ttl                        → {"seconds": float}
    GET  /health                        → liveness + loaded models
    GET  /metrics                       → Prometheus text format

INL - 2025
"""

import json
import time
import asyncio
import functools
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Dict
from dataclasses import dataclass

from aiohttp import web

from npu_router.core.config import WHISPER
from npu_router.core.exceptions import GenerationCancelled, InferenceError, DispatchError
from npu_router.core.logging import get_logger, new_request_id
from npu_router.engine.router import Router

logger = get_logger("npu_router.server")


@dataclass
class ProcessRequest:
    text: str
    timeout_s: Optional[float] = None

    def validate(self) -> Optional[str]:
        """Validate request parameters. Returns error message or None."""
        if not isinstance(self.text, str) or not self.text.strip():
            return "text must be a non-empty string"
        if self.timeout_s is not None:
            if not isinstance(self.timeout_s, (int, float)) or isinstance(self.timeout_s, bool):
                return "timeout_s must be a number"
            if self.timeout_s <= 0:
                return "timeout_s must be > 0"
        return None


def _error(message: str, error_type: str, status: int) -> web.Response:
    return web.json_response({"error": {"message": message, "type": error_type}}, status=status)


class RouterServer:
    """
    aiohttp front end for a Router.

    The router is started with the app and closed on cleanup unless it was
    already started by the caller (manage_router=False).
    """

    def __init__(
        self,
        router: Router,
        host: str = "127.0.0.1",
        port: int = 8000,
        api_key: Optional[str] = None,
        workers: int = 4,
        manage_router: bool = True,
    ):
        self.router = router
        self.host = host
        self.port = port
        self.api_key = api_key
        self.manage_router = manage_router
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="generate")
        self._start_time = time.monotonic()
        self._active = 0

    async def _read_json(self, request: web.Request) -> Dict:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": {"message": "Invalid JSON in request body", "type": "invalid_request_error"}}),
                content_type="application/json",
            )
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": {"message": "Request body must be a JSON object", "type": "invalid_request_error"}}),
                content_type="application/json",
            )
        return body

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    def _check_model(self, name: str) -> Optional[web.Response]:
        if name not in self.router.pool:
            return _error(f"Unknown model '{name}'", "not_found_error", 404)
        return None

    # =====================================================================
    # Handlers
    # =====================================================================

    async def handle_process(self, request: web.Request) -> web.Response:
        """POST /v1/process {"text": ..., "timeout_s": ...}"""
        body = await self._read_json(request)
        req = ProcessRequest(text=body.get("text"), timeout_s=body.get("timeout_s"))
        error = req.validate()
        if error:
            return _error(error, "invalid_request_error", 400)

        request_id = request.headers.get("X-Request-ID") or new_request_id()
        cancel_event = threading.Event()
        self._active += 1
        try:
            response = await self._run(
                self.router.process, req.text,
                cancel_event=cancel_event, timeout_s=req.timeout_s, request_id=request_id,
            )
        except asyncio.CancelledError:
            cancel_event.set()
            raise
        except GenerationCancelled as e:
            return _error(str(e), "timeout_error", 504)
        except InferenceError as e:
            logger.error(f"Inference error: {e}", exc_info=True)
            return _error(str(e), "server_error", 500)
        finally:
            self._active -= 1

        result = response.to_dict()
        result["request_id"] = request_id
        return web.json_response(result)

    async def handle_stats(self, request: web.Request) -> web.Response:
        return web.json_response(self.router.stats())

    async def handle_models(self, request: web.Request) -> web.Response:
        return web.json_response({"models": self.router.models()})

    async def handle_load(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        missing = self._check_model(name)
        if missing is not None:
            return missing
        ok = await self._run(self.router.load, name)
        if not ok:
            detail = self.router.models()[name].get("last_error") or "load failed"
            return _error(f"Model '{name}' failed to load: {detail}", "unavailable_error", 503)
        return web.json_response({"status": "ok", "model": name, "loaded": True})

    async def handle_unload(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        missing = self._check_model(name)
        if missing is not None:
            return missing
        evicted = await self._run(self.router.unload, name)
        return web.json_response({"status": "ok", "model": name, "unloaded": evicted})

    async def handle_persistent(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        if name != WHISPER:
            missing = self._check_model(name)
            if missing is not None:
                return missing
        body = await self._read_json(request)
        persistent = body.get("persistent")
        if not isinstance(persistent, bool):
            return _error("persistent must be a boolean", "invalid_request_error", 400)
        self.router.set_persistent(name, persistent)
        return web.json_response({"status": "ok", "model": name, "persistent": persistent})

    async def handle_ttl(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        seconds = body.get("seconds")
        if not isinstance(seconds, (int, float)) or isinstance(seconds, bool) or seconds <= 0:
            return _error("seconds must be a number > 0", "invalid_request_error", 400)
        self.router.set_ttl(float(seconds))
        return web.json_response({"status": "ok", "ttl_seconds": float(seconds)})

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "uptime_s": round(time.monotonic() - self._start_time, 1),
            "active_requests": self._active,
            "loaded_models": self.router.pool.loaded_names(),
        })

    async def handle_metrics(self, request: web.Request) -> web.Response:
        return web.Response(body=self.router.metrics.render(), content_type="text/plain")

    # =====================================================================
    # App
    # =====================================================================

    @web.middleware
    async def error_middleware(self, request, handler):
        """Dispatch errors → 503, anything unexpected → 500 JSON."""
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except DispatchError as e:
            return _error(str(e), "unavailable_error", 503)
        except ValueError as e:
            return _error(str(e), "invalid_request_error", 400)
        except Exception as e:
            logger.error(f"Unhandled error on {request.path}: {e}", exc_info=True)
            return _error(str(e), "server_error", 500)

    @web.middleware
    async def auth_middleware(self, request, handler):
        """Check Bearer token on /v1/* endpoints."""
        if self.api_key and request.path.startswith("/v1/"):
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer ") or auth[7:] != self.api_key:
                return _error("Invalid API key", "authentication_error", 401)
        return await handler(request)

    def create_app(self) -> web.Application:
        """Create aiohttp application with routes and router lifecycle."""
        middlewares = [self.error_middleware]
        if self.api_key:
            middlewares.append(self.auth_middleware)
        app = web.Application(middlewares=middlewares)
        app.router.add_post("/v1/process", self.handle_process)
        app.router.add_get("/v1/stats", self.handle_stats)
        app.router.add_get("/v1/models", self.handle_models)
        app.router.add_post("/v1/models/{name}/load", self.handle_load)
        app.router.add_post("/v1/models/{name}/unload", self.handle_unload)
        app.router.add_post("/v1/models/{name}/persistent", self.handle_persistent)
        app.router.add_post("/v1/ttl", self.handle_ttl)
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/metrics", self.handle_metrics)

        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_startup(self, app):
        if self.manage_router:
            await self._run(self.router.start)
            logger.info("Router started")

    async def _on_cleanup(self, app):
        logger.info("Server cleanup: closing router...")
        if self.manage_router:
            await self._run(self.router.close)
        self._executor.shutdown(wait=True)
        logger.info("Server cleanup complete")

    def run(self):
        logger.info(f"npu-router :: http://{self.host}:{self.port}")
        logger.info("  POST /v1/process | GET /v1/stats | GET /v1/models | GET /health | GET /metrics")
        web.run_app(self.create_app(), host=self.host, port=self.port, print=None)
