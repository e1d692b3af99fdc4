"""aiohttp web application: WhatsApp webhook, dashboard and admin endpoints."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from aiohttp import WSMsgType, web

from pyvalet._redact import redact_for_log
from pyvalet._transport import parse_webhook_messages
from pyvalet.models.message import InboundMessage
from pyvalet.results import Err, FailureReason
from pyvalet.service import ValetService

_logger = logging.getLogger(__name__)

SERVICE_KEY = web.AppKey("service", ValetService)
_TASKS_KEY = web.AppKey("webhook_tasks", set)

_ERROR_STATUS: dict[FailureReason, int] = {
    FailureReason.UNKNOWN_CAR: 404,
    FailureReason.UNKNOWN_DRIVER: 404,
    FailureReason.WRONG_STATE: 409,
    FailureReason.DUPLICATE_PHONE: 409,
    FailureReason.DUPLICATE_PLATE: 409,
    FailureReason.STORE_UNAVAILABLE: 503,
}


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _failure(outcome: Err) -> web.Response:
    body = {"error": outcome.reason.value, "detail": outcome.detail}
    return web.json_response(body, status=_ERROR_STATUS.get(outcome.reason, 400))


# ----------------------------------------------------------------------
# Webhook
# ----------------------------------------------------------------------


async def verify_webhook(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    mode = request.query.get("hub.mode")
    token = request.query.get("hub.verify_token")
    challenge = request.query.get("hub.challenge", "")
    if not mode or not token:
        return web.Response(status=400)
    expected = service.config.whatsapp.verify_token
    if mode == "subscribe" and expected and token == expected:
        _logger.info("Webhook verified")
        return web.Response(text=challenge)
    _logger.warning("Webhook verification rejected %s", redact_for_log(dict(request.query)))
    return web.Response(status=403)


async def _process_messages(service: ValetService, batch: list[InboundMessage]) -> None:
    for message in batch:
        try:
            await service.handle_inbound(message)
        except Exception:
            _logger.exception("Failed to process message %s from %s", message.message_id, message.sender)


async def receive_webhook(request: web.Request) -> web.Response:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return _error(400, "body must be JSON")
    if not isinstance(body, dict) or body.get("object") != "whatsapp_business_account":
        return web.Response(status=404)

    batch = parse_webhook_messages(body)
    if batch:
        tasks = request.app[_TASKS_KEY]
        task = asyncio.get_running_loop().create_task(_process_messages(request.app[SERVICE_KEY], batch))
        tasks.add(task)
        task.add_done_callback(tasks.discard)
    return web.Response(text="EVENT_RECEIVED")


# ----------------------------------------------------------------------
# Dashboard
# ----------------------------------------------------------------------


async def get_dashboard(request: web.Request) -> web.Response:
    return web.json_response(request.app[SERVICE_KEY].dashboard_snapshot().to_wire())


async def dashboard_socket(request: web.Request) -> web.WebSocketResponse:
    """Push a snapshot on connect and after every resource commit."""
    service = request.app[SERVICE_KEY]
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)
    queue = service.dashboard.subscribe()

    async def _pump() -> None:
        while True:
            await ws.send_json(await queue.get())

    pump = asyncio.get_running_loop().create_task(_pump())
    try:
        async for msg in ws:
            if msg.type is WSMsgType.ERROR:
                _logger.debug("Dashboard socket error: %s", ws.exception())
                break
    finally:
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError, ConnectionResetError):
            await pump
        service.dashboard.unsubscribe(queue)
    return ws


# ----------------------------------------------------------------------
# Administration
# ----------------------------------------------------------------------


async def list_drivers(request: web.Request) -> web.Response:
    return web.json_response([driver.to_wire() for driver in request.app[SERVICE_KEY].drivers()])


async def add_driver(request: web.Request) -> web.Response:
    try:
        body: Any = await request.json()
    except json.JSONDecodeError:
        return _error(400, "body must be JSON")
    name = body.get("name") if isinstance(body, dict) else None
    phone = body.get("phone") if isinstance(body, dict) else None
    if not isinstance(name, str) or not isinstance(phone, str) or not name.strip() or not phone.strip():
        return _error(400, "name and phone are required")
    try:
        outcome = request.app[SERVICE_KEY].register_driver(name, phone)
    except ValueError as exc:
        return _error(400, str(exc))
    if isinstance(outcome, Err):
        return _failure(outcome)
    return web.json_response(outcome.value.to_wire(), status=201)


async def list_cars(request: web.Request) -> web.Response:
    return web.json_response([car.to_wire() for car in request.app[SERVICE_KEY].cars()])


async def list_logs(request: web.Request) -> web.Response:
    raw_limit = request.query.get("limit")
    try:
        limit = int(raw_limit) if raw_limit is not None else None
    except ValueError:
        return _error(400, "limit must be an integer")
    return web.json_response([entry.to_wire() for entry in request.app[SERVICE_KEY].recent_logs(limit)])


async def abandon_car(request: web.Request) -> web.Response:
    outcome = request.app[SERVICE_KEY].abandon_pending(request.match_info["car_id"])
    if isinstance(outcome, Err):
        return _failure(outcome)
    return web.json_response(outcome.value.to_wire())


async def reset_data(request: web.Request) -> web.Response:
    request.app[SERVICE_KEY].reset()
    return web.json_response({"message": "Data reset successfully"})


# ----------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------


async def _drain_webhook_tasks(app: web.Application) -> None:
    tasks = list(app[_TASKS_KEY])
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


def create_app(service: ValetService, *, manage_service: bool = True) -> web.Application:
    """Build the web application around *service*.

    With ``manage_service`` the app enters and exits the service's async
    context on startup and cleanup; otherwise the caller owns it.
    """
    app = web.Application()
    app[SERVICE_KEY] = service
    app[_TASKS_KEY] = set()

    if manage_service:

        async def _service_ctx(_app: web.Application) -> AsyncIterator[None]:
            async with service:
                yield
                await _drain_webhook_tasks(_app)

        app.cleanup_ctx.append(_service_ctx)
    else:
        app.on_shutdown.append(_drain_webhook_tasks)

    app.router.add_get("/webhook", verify_webhook)
    app.router.add_post("/webhook", receive_webhook)
    app.router.add_get("/api/dashboard", get_dashboard)
    app.router.add_get("/ws/dashboard", dashboard_socket)
    app.router.add_get("/api/drivers", list_drivers)
    app.router.add_post("/api/drivers", add_driver)
    app.router.add_get("/api/cars", list_cars)
    app.router.add_get("/api/logs", list_logs)
    app.router.add_post("/api/cars/{car_id}/abandon", abandon_car)
    app.router.add_post("/api/reset", reset_data)
    return app
