"""Process runtime: health server, background scheduler and extension loading."""

from __future__ import annotations

import asyncio
import importlib
import logging
import math
import os
import time
from typing import Any, Awaitable, Callable, Optional

from aiohttp import web
from discord.ext import commands

from config.runtime import get_port
from modules.common.logs import log as human_log
from shared import db
from shared import health as healthmod
from shared.config import get_bot_name, get_env_name, get_log_channel_id
from shared.dedupe import EventDeduper
from shared.logfmt import LogTemplates, human_reason
from shared.logging import get_trace_id, set_trace_id, setup_logging
from shared.sheets.async_adapter import shutdown_executor

log = logging.getLogger("pumpkin.runtime")

_ACTIVE_RUNTIME: "Runtime | None" = None

# Feature modules exposing ``async def setup(bot)``; loaded in order.
EXTENSIONS: tuple[str, ...] = (
    "modules.onboarding",
    "modules.community.karma",
)

_LOG_MESSAGE_LIMIT = 1800


async def create_app(*, runtime: "Runtime | None" = None) -> web.Application:
    """Build the aiohttp app serving ``/``, ``/ready`` and ``/healthz``."""

    env, bot_name = get_env_name(), get_bot_name()
    access_logger = setup_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        static_fields={"env": env, "bot": bot_name},
        access_logger_name="aiohttp.access",
    )
    healthmod.set_component("runtime", True)

    @web.middleware
    async def tracing_middleware(
        request: web.Request, handler: Callable[[web.Request], Awaitable[web.StreamResponse]]
    ) -> web.StreamResponse:
        trace = set_trace_id()
        started = time.perf_counter()
        status = 500
        try:
            response = await handler(request)
            status = response.status
            response.headers["X-Trace-Id"] = trace
            return response
        finally:
            access_logger.info(
                "http_request",
                extra={
                    "trace": trace,
                    "path": request.path,
                    "method": request.method,
                    "status": status,
                    "ms": int((time.perf_counter() - started) * 1000),
                },
            )

    async def root(_: web.Request) -> web.Response:
        return web.json_response(
            {
                "ok": True,
                "bot": bot_name,
                "env": env,
                "version": os.getenv("BOT_VERSION", "dev"),
                "trace": get_trace_id(),
            }
        )

    async def ready(_: web.Request) -> web.Response:
        ok = healthmod.overall_ready()
        body = {"ok": ok, "components": healthmod.components_snapshot()}
        return web.json_response(body, status=200 if ok else 503)

    async def healthz(_: web.Request) -> web.Response:
        if runtime is None:
            payload: dict[str, Any] = {"ok": True, "bot": bot_name, "env": env}
            healthy = True
        else:
            payload, healthy = runtime.health_payload()
        return web.json_response({**payload, "endpoint": "healthz"}, status=200 if healthy else 503)

    app = web.Application(middlewares=[tracing_middleware])
    app.router.add_get("/", root)
    app.router.add_get("/ready", ready)
    app.router.add_get("/healthz", healthz)
    return app


def set_active_runtime(runtime: "Runtime | None") -> None:
    global _ACTIVE_RUNTIME
    _ACTIVE_RUNTIME = runtime


def get_active_runtime() -> "Runtime | None":
    return _ACTIVE_RUNTIME


async def send_log_message(message: str, *, dedupe_key: str | None = None) -> None:
    """Forward to the active runtime's log channel; a no-op without one."""

    runtime = get_active_runtime()
    if runtime is None:
        return
    await runtime.send_log_message(message, dedupe_key=dedupe_key)


class _RecurringJob:
    """Fixed-interval job; a failed run is logged and the next run still happens."""

    def __init__(self, scheduler: "Scheduler", *, interval: float, tag: str | None, name: str | None) -> None:
        self._scheduler = scheduler
        self.interval = interval
        self.tag = tag
        self.name = name
        self.runs = 0

    def do(self, job: Callable[[], Awaitable[None]]) -> asyncio.Task:
        job_name = self.name or getattr(job, "__name__", "recurring_job")

        async def runner() -> None:
            while True:
                await asyncio.sleep(self.interval)
                self.runs += 1
                try:
                    await job()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    log.exception("recurring job error", extra={"job_name": job_name, "tag": self.tag})
                    await send_log_message(
                        LogTemplates.scheduler_failure(job=job_name, reason=human_reason(exc)),
                        dedupe_key=f"job:{job_name}",
                    )

        return self._scheduler.spawn(runner(), name=job_name)


class Scheduler:
    """Owns background tasks so shutdown can cancel them together."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, *, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def every(
        self,
        *,
        minutes: float = 0.0,
        seconds: float = 0.0,
        tag: str | None = None,
        name: str | None = None,
    ) -> _RecurringJob:
        interval = float(minutes) * 60.0 + float(seconds)
        return _RecurringJob(self, interval=interval if interval > 0 else 60.0, tag=tag, name=name)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, Exception):
                log.error("background task failed during shutdown", extra={"task": task.get_name()}, exc_info=result)
        self._tasks.clear()


class Runtime:
    """Wires the bot, the health server and the scheduler together."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        self.scheduler = Scheduler()
        self._web_runner: Optional[web.AppRunner] = None
        self._web_site: Optional[web.TCPSite] = None
        self._log_deduper = EventDeduper(window_s=30.0)
        set_active_runtime(self)

    async def start_webserver(self, *, port: Optional[int] = None) -> None:
        if self._web_site is not None:
            return
        port = port or get_port()
        self._web_runner = web.AppRunner(await create_app(runtime=self))
        await self._web_runner.setup()
        self._web_site = web.TCPSite(self._web_runner, host="0.0.0.0", port=port)
        await self._web_site.start()
        human_log.human("info", f"health server listening • port={port}")

    def health_payload(self) -> tuple[dict, bool]:
        connected = not self.bot.is_closed() and self.bot.is_ready()
        latency = getattr(self.bot, "latency", None)
        if latency is not None and (math.isinf(latency) or math.isnan(latency)):
            latency = None
        payload = {
            "ok": connected,
            "bot": get_bot_name(),
            "env": get_env_name(),
            "connected": connected,
            "latency_ms": None if latency is None else round(latency * 1000, 1),
            "components": healthmod.components_snapshot(),
        }
        return payload, connected

    async def shutdown_webserver(self) -> None:
        site, runner = self._web_site, self._web_runner
        self._web_site = self._web_runner = None
        if site is not None:
            await site.stop()
        if runner is not None:
            await runner.cleanup()

    async def send_log_message(self, message: str, *, dedupe_key: str | None = None) -> None:
        """Post ``message`` to the log channel; repeats of the same key within 30s are dropped."""

        channel_id = get_log_channel_id()
        if not channel_id:
            return
        content = str(message).strip()
        if not content or not self._log_deduper.should_emit(dedupe_key or content):
            return
        if len(content) > _LOG_MESSAGE_LIMIT:
            content = content[: _LOG_MESSAGE_LIMIT - 1] + "…"
        await self.bot.wait_until_ready()
        try:
            channel = self.bot.get_channel(channel_id) or await self.bot.fetch_channel(channel_id)
            await channel.send(content)
        except Exception:
            log.exception("failed to post to log channel", extra={"channel_id": channel_id})

    async def load_extensions(self) -> None:
        for module_path in EXTENSIONS:
            try:
                module = importlib.import_module(module_path)
                await module.setup(self.bot)
            except Exception as exc:
                log.exception("feature module setup failed", extra={"feature_module": module_path})
                await self.send_log_message(f"❌ {module_path}.setup failed: {human_reason(exc)}")
                raise
            log.info("feature module loaded", extra={"feature_module": module_path})

    async def start(self, token: str) -> None:
        await self.start_webserver()
        await db.init_pool()
        await self.load_extensions()
        await self.bot.start(token)

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await self.shutdown_webserver()
        await db.close_pool()
        shutdown_executor(wait=False)
        if not self.bot.is_closed():
            await self.bot.close()
        set_active_runtime(None)
