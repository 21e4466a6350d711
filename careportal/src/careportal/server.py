"""aiohttp application exposing a persistence store over HTTP and WebSocket.

This is the wire side of ``remote.RemotePersistence``: a development stand-in
for the managed backend platform, with request/response CRUD endpoints and a
``/v1/ws`` change feed that pushes newly inserted messages per conversation.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, TextIO

from aiohttp import WSMsgType, web

from .errors import WriteRejected
from .models import ROLES, STATUSES, ConversationKey, Message, Profile
from .persistence import HubChannel, InMemoryPersistence
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLitePersistence

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(self, *, persistence: InMemoryPersistence | SQLitePersistence) -> None:
        self.persistence = persistence


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _not_found(message: str) -> web.Response:
    return _error("not_found", message, 404)


def _conflict(message: str) -> web.Response:
    return _error("conflict", message, 409)


async def _json_body(request: web.Request) -> Dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _optional_int(raw: str | None) -> int | None:
    if raw is None or raw == "":
        return None
    return int(raw)


async def handle_profiles_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    role = request.query.get("role") or None
    raw_ids = request.query.get("ids")
    ids = None if raw_ids is None else [item for item in raw_ids.split(",") if item]
    profiles = await runtime.persistence.list_profiles(role=role, ids=ids)
    return web.json_response({"profiles": [profile.to_dict() for profile in profiles]})


async def handle_profile_upsert(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    if not isinstance(body.get("id"), str) or body.get("role") not in ROLES:
        return _invalid_request("id and a valid role required")
    profile = await runtime.persistence.upsert_profile(Profile.from_dict(body))
    return web.json_response({"profile": profile.to_dict()})


async def handle_appointment_create(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    required = ("doctor_id", "patient_id", "date", "time", "status")
    if any(not isinstance(body.get(field), str) or not body.get(field) for field in required):
        return _invalid_request("doctor_id, patient_id, date, time and status required")
    duration = body.get("duration_minutes")
    if not isinstance(duration, int):
        return _invalid_request("duration_minutes must be an integer")
    if body["status"] not in STATUSES:
        return _invalid_request(f"unknown status {body['status']!r}")
    notes = body.get("notes")
    try:
        appointment = await runtime.persistence.insert_appointment(
            body["doctor_id"],
            body["patient_id"],
            body["date"],
            body["time"],
            duration,
            body["status"],
            notes if isinstance(notes, str) else None,
        )
    except WriteRejected as exc:
        return _conflict(str(exc))
    return web.json_response({"appointment": appointment.to_dict()})


async def handle_appointments_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    appointments = await runtime.persistence.list_appointments(
        doctor_id=request.query.get("doctor_id") or None,
        patient_id=request.query.get("patient_id") or None,
    )
    return web.json_response({"appointments": [appointment.to_dict() for appointment in appointments]})


async def handle_appointment_get(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    appointment_id = request.match_info["appointment_id"]
    try:
        appointment = await runtime.persistence.get_appointment(appointment_id)
    except LookupError as exc:
        return _not_found(str(exc))
    return web.json_response({"appointment": appointment.to_dict()})


async def handle_appointment_status(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    appointment_id = request.match_info["appointment_id"]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    expected = body.get("expected_status")
    status = body.get("status")
    if not isinstance(expected, str) or not isinstance(status, str):
        return _invalid_request("expected_status and status required")
    if expected not in STATUSES or status not in STATUSES:
        return _invalid_request("expected_status and status must be known statuses")
    try:
        appointment = await runtime.persistence.update_appointment_status(appointment_id, expected, status)
    except LookupError as exc:
        return _not_found(str(exc))
    except WriteRejected as exc:
        return _conflict(str(exc))
    return web.json_response({"appointment": appointment.to_dict()})


async def handle_message_insert(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    sender_id = body.get("sender_id")
    receiver_id = body.get("receiver_id")
    text = body.get("text")
    client_key = body.get("client_key")
    if not isinstance(sender_id, str) or not isinstance(receiver_id, str) or not isinstance(text, str):
        return _invalid_request("sender_id, receiver_id and text required")
    if sender_id == receiver_id:
        return _invalid_request("sender and receiver must differ")
    if client_key is not None and not isinstance(client_key, str):
        return _invalid_request("client_key must be a string")
    try:
        message = await runtime.persistence.insert_message(sender_id, receiver_id, text, client_key)
    except WriteRejected as exc:
        return _conflict(str(exc))
    return web.json_response({"message": message.to_dict()})


async def handle_messages_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    a = request.query.get("a")
    b = request.query.get("b")
    if not a or not b or a == b:
        return _invalid_request("two distinct actor ids a and b required")
    try:
        limit = _optional_int(request.query.get("limit"))
    except ValueError:
        return _invalid_request("limit must be an integer")
    newest_first = request.query.get("order") == "desc"
    messages = await runtime.persistence.list_messages(
        ConversationKey.of(a, b), limit=limit, newest_first=newest_first
    )
    return web.json_response({"messages": [message.to_dict() for message in messages]})


async def handle_messages_read(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    sender_id = body.get("sender_id")
    receiver_id = body.get("receiver_id")
    read_at_ms = body.get("read_at_ms")
    if not isinstance(sender_id, str) or not isinstance(receiver_id, str) or not isinstance(read_at_ms, int):
        return _invalid_request("sender_id, receiver_id and read_at_ms required")
    updated = await runtime.persistence.mark_messages_read(sender_id, receiver_id, read_at_ms)
    return web.json_response({"updated": updated})


def create_app(
    *,
    ping_interval_s: float = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    db_path: str | None = None,
    persistence: InMemoryPersistence | SQLitePersistence | None = None,
) -> web.Application:
    if persistence is None:
        if db_path is not None:
            persistence = SQLitePersistence(SQLiteBackend(db_path))
        else:
            persistence = InMemoryPersistence()

    app = web.Application()
    app[RUNTIME_KEY] = Runtime(persistence=persistence)
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/profiles", handle_profiles_list)
    app.router.add_post("/v1/profiles", handle_profile_upsert)
    app.router.add_get("/v1/appointments", handle_appointments_list)
    app.router.add_post("/v1/appointments", handle_appointment_create)
    app.router.add_get("/v1/appointments/{appointment_id}", handle_appointment_get)
    app.router.add_post("/v1/appointments/{appointment_id}/status", handle_appointment_status)
    app.router.add_get("/v1/messages", handle_messages_list)
    app.router.add_post("/v1/messages", handle_message_insert)
    app.router.add_post("/v1/messages/read", handle_messages_read)
    app.router.add_get("/v1/ws", websocket_handler)

    async def close_store(_: web.Application) -> None:
        await persistence.close()

    app.on_cleanup.append(close_store)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    outbound: asyncio.Queue[dict] = asyncio.Queue(maxsize=1000)
    subscriptions: Dict[ConversationKey, HubChannel] = {}
    unanswered_pings = 0

    async def close_with_error(message: str) -> None:
        if not ws.closed:
            await ws.close(code=1011, message=message.encode("utf-8"))

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    def push_message(message: Message) -> None:
        enqueue({"v": 1, "t": "messages.insert", "body": {"message": message.to_dict()}})

    def push_disconnect(_: Exception) -> None:
        asyncio.create_task(close_with_error("store closed"))

    async def pump() -> None:
        # Sole writer. An idle feed gets a ping every interval.
        nonlocal unanswered_pings
        while not ws.closed:
            try:
                frame = await asyncio.wait_for(outbound.get(), ws_config["ping_interval_s"])
            except asyncio.TimeoutError:
                if unanswered_pings >= ws_config["ping_miss_limit"]:
                    await ws.close(code=1001, message=b"heartbeat timeout")
                    return
                unanswered_pings += 1
                frame = {"v": 1, "t": "ping"}
            await ws.send_json(frame)

    pump_task = asyncio.create_task(pump())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue

                unanswered_pings = 0
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    enqueue(_error_frame("invalid_request", "unsupported version"))
                    continue

                frame_type = frame.get("t")
                request_id = frame.get("id")
                body = frame.get("body")
                if not isinstance(body, dict):
                    body = {}

                if frame_type == "ping":
                    enqueue({"v": 1, "t": "pong", "id": request_id})
                elif frame_type == "pong":
                    continue
                elif frame_type in {"messages.subscribe", "messages.unsubscribe"}:
                    a = body.get("a")
                    b = body.get("b")
                    if not isinstance(a, str) or not isinstance(b, str) or not a or not b or a == b:
                        enqueue(
                            _error_frame("invalid_request", "two distinct actor ids a and b required", request_id=request_id)
                        )
                        continue
                    key = ConversationKey.of(a, b)
                    existing = subscriptions.pop(key, None)
                    if existing is not None:
                        await existing.close()
                    if frame_type == "messages.subscribe":
                        subscriptions[key] = await runtime.persistence.subscribe_messages(
                            key, push_message, push_disconnect
                        )
                        reply = "messages.subscribed"
                    else:
                        reply = "messages.unsubscribed"
                    enqueue({"v": 1, "t": reply, "id": request_id, "body": {"a": key.a, "b": key.b}})
                else:
                    enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        pump_task.cancel()
        for channel in subscriptions.values():
            await channel.close()
        await asyncio.gather(pump_task, return_exceptions=True)

    return ws


def load_profiles(handle: TextIO) -> List[Profile]:
    """Read a JSON array (or JSON lines) of profile objects."""

    content = handle.read()
    if not content.strip():
        return []
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = [json.loads(line) for line in content.splitlines() if line.strip()]
    if isinstance(parsed, dict):
        parsed = [parsed]
    return [Profile.from_dict(item) for item in parsed]


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(ping_interval_s=args.ping_interval, db_path=args.db)
    if args.profiles is not None:
        profiles = load_profiles(args.profiles)
        persistence = app[RUNTIME_KEY].persistence

        async def seed_profiles(_: web.Application) -> None:
            for profile in profiles:
                await persistence.upsert_profile(profile)
            logger.info("seeded %d profile(s)", len(profiles))

        app.on_startup.append(seed_profiles)
    logger.info("serving careportal store on %s:%d (db=%s)", args.host, args.port, args.db or "memory")
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="careportal development store")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp store server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=float,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument(
        "--profiles",
        type=argparse.FileType("r"),
        default=None,
        help="JSON file of profiles to load at startup",
    )

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    if args.command == "serve":
        return _run_serve(args)
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
