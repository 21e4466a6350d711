"""aiohttp client for the careportal store server."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

import aiohttp

from .config import PortalConfig
from .errors import TransportError, WriteRejected
from .hub import DisconnectCallback, MessageCallback
from .models import Appointment, ConversationKey, Message, Profile

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DECODE_ERRORS = (KeyError, TypeError, ValueError)


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _ws_url(base_url: str) -> str:
    url = _build_url(base_url, "/v1/ws")
    if url.startswith("https://"):
        return "wss://" + url[len("https://") :]
    if url.startswith("http://"):
        return "ws://" + url[len("http://") :]
    return url


async def _error_message(response: aiohttp.ClientResponse) -> str:
    try:
        payload = await response.json()
    except (aiohttp.ContentTypeError, ValueError):
        return f"HTTP {response.status}"
    if isinstance(payload, dict) and isinstance(payload.get("message"), str):
        return payload["message"]
    return f"HTTP {response.status}"


def _decode(factory: Callable[[Any], T], payload: Any, what: str) -> T:
    try:
        return factory(payload)
    except _DECODE_ERRORS as exc:
        raise TransportError(f"malformed {what} in response: {exc!r}") from exc


def _decode_list(factory: Callable[[Any], T], body: Dict[str, Any], field: str, what: str) -> List[T]:
    items = body.get(field, [])
    if not isinstance(items, list):
        raise TransportError(f"malformed {field} list in response")
    return [_decode(factory, item, what) for item in items]


class RemoteChannel:
    """One WebSocket carrying the push feed of a single conversation."""

    def __init__(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        key: ConversationKey,
        on_message: MessageCallback,
        on_disconnect: DisconnectCallback,
    ) -> None:
        self._ws = ws
        self._key = key
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._closing = False
        self._reader = asyncio.get_running_loop().create_task(self._read())

    @property
    def closed(self) -> bool:
        return self._closing or self._ws.closed

    async def _read(self) -> None:
        reason = "push channel closed"
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("ignoring malformed frame on %s", self._key)
                        continue
                    self._handle_frame(frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"push channel error: {self._ws.exception()}"
                    break
        except asyncio.CancelledError:
            raise
        except aiohttp.ClientError as exc:
            reason = f"push channel error: {exc}"
        except Exception as exc:
            logger.exception("push reader for %s failed", self._key)
            reason = f"push reader failed: {exc!r}"
        if not self._closing:
            self._closing = True
            self._on_disconnect(TransportError(reason))

    def _handle_frame(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            return
        frame_type = frame.get("t")
        body = frame.get("body")
        if not isinstance(body, dict):
            body = {}
        if frame_type == "messages.insert":
            payload = body.get("message")
            if not isinstance(payload, dict):
                return
            try:
                message = Message.from_dict(payload)
            except _DECODE_ERRORS:
                logger.warning("ignoring malformed message on %s: %r", self._key, payload)
                return
            if message.key != self._key:
                return
            self._on_message(message)
        elif frame_type == "ping":
            asyncio.get_running_loop().create_task(self._ws.send_json({"v": 1, "t": "pong"}))
        elif frame_type == "error":
            logger.warning("server error on %s: %s", self._key, body.get("message"))

    async def close(self) -> None:
        self._closing = True
        try:
            await self._ws.close()
        except aiohttp.ClientError as exc:
            raise TransportError(str(exc)) from exc
        finally:
            if not self._reader.done():
                self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass


class RemotePersistence:
    """Persistence over HTTP and WebSocket against ``careportal serve``.

    Network failures surface as ``TransportError``, HTTP 409 as
    ``WriteRejected`` and HTTP 404 as ``LookupError``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10,
    ) -> None:
        self._base_url = base_url
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._request_ids = itertools.count(1)

    @classmethod
    def from_config(cls, base_url: str, config: PortalConfig) -> RemotePersistence:
        return cls(base_url, timeout_s=config.request_timeout_s)

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = _build_url(self._base_url, path)
        try:
            async with self._client().request(
                method, url, params=params, json=payload, timeout=self._timeout
            ) as response:
                if response.status == 409:
                    raise WriteRejected(await _error_message(response))
                if response.status == 404:
                    raise LookupError(await _error_message(response))
                if response.status >= 400:
                    raise TransportError(f"{method} {path} failed: {await _error_message(response)}")
                body = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        if not isinstance(body, dict):
            raise TransportError(f"{method} {path} returned a non-object body")
        return body

    async def list_profiles(self, role: str | None = None, ids: Iterable[str] | None = None) -> List[Profile]:
        params: Dict[str, str] = {}
        if role is not None:
            params["role"] = role
        if ids is not None:
            wanted = list(ids)
            if not wanted:
                return []
            params["ids"] = ",".join(wanted)
        body = await self._request("GET", "/v1/profiles", params=params)
        return _decode_list(Profile.from_dict, body, "profiles", "profile")

    async def upsert_profile(self, profile: Profile) -> Profile:
        body = await self._request("POST", "/v1/profiles", payload=profile.to_dict())
        return _decode(Profile.from_dict, body.get("profile"), "profile")

    async def insert_appointment(
        self,
        doctor_id: str,
        patient_id: str,
        date: str,
        time: str,
        duration_minutes: int,
        status: str,
        notes: str | None,
    ) -> Appointment:
        body = await self._request(
            "POST",
            "/v1/appointments",
            payload={
                "doctor_id": doctor_id,
                "patient_id": patient_id,
                "date": date,
                "time": time,
                "duration_minutes": duration_minutes,
                "status": status,
                "notes": notes,
            },
        )
        return _decode(Appointment.from_dict, body.get("appointment"), "appointment")

    async def get_appointment(self, appointment_id: str) -> Appointment:
        body = await self._request("GET", f"/v1/appointments/{appointment_id}")
        return _decode(Appointment.from_dict, body.get("appointment"), "appointment")

    async def list_appointments(
        self, *, doctor_id: str | None = None, patient_id: str | None = None
    ) -> List[Appointment]:
        params: Dict[str, str] = {}
        if doctor_id is not None:
            params["doctor_id"] = doctor_id
        if patient_id is not None:
            params["patient_id"] = patient_id
        body = await self._request("GET", "/v1/appointments", params=params)
        return _decode_list(Appointment.from_dict, body, "appointments", "appointment")

    async def update_appointment_status(
        self, appointment_id: str, expected_status: str, new_status: str
    ) -> Appointment:
        body = await self._request(
            "POST",
            f"/v1/appointments/{appointment_id}/status",
            payload={"expected_status": expected_status, "status": new_status},
        )
        return _decode(Appointment.from_dict, body.get("appointment"), "appointment")

    async def insert_message(
        self, sender_id: str, receiver_id: str, text: str, client_key: str | None = None
    ) -> Message:
        body = await self._request(
            "POST",
            "/v1/messages",
            payload={
                "sender_id": sender_id,
                "receiver_id": receiver_id,
                "text": text,
                "client_key": client_key,
            },
        )
        return _decode(Message.from_dict, body.get("message"), "message")

    async def list_messages(
        self, key: ConversationKey, *, limit: int | None = None, newest_first: bool = False
    ) -> List[Message]:
        params = {"a": key.a, "b": key.b, "order": "desc" if newest_first else "asc"}
        if limit is not None:
            params["limit"] = str(limit)
        body = await self._request("GET", "/v1/messages", params=params)
        return _decode_list(Message.from_dict, body, "messages", "message")

    async def mark_messages_read(self, sender_id: str, receiver_id: str, read_at_ms: int) -> List[str]:
        body = await self._request(
            "POST",
            "/v1/messages/read",
            payload={"sender_id": sender_id, "receiver_id": receiver_id, "read_at_ms": read_at_ms},
        )
        updated = body.get("updated", [])
        if not isinstance(updated, list):
            raise TransportError("malformed updated list in response")
        return [str(item) for item in updated]

    async def subscribe_messages(
        self,
        key: ConversationKey,
        on_message: MessageCallback,
        on_disconnect: DisconnectCallback,
    ) -> RemoteChannel:
        request_id = f"sub-{next(self._request_ids)}"
        try:
            ws = await self._client().ws_connect(_ws_url(self._base_url))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"push connect failed: {exc}") from exc
        try:
            await ws.send_json(
                {"v": 1, "t": "messages.subscribe", "id": request_id, "body": {"a": key.a, "b": key.b}}
            )
            while True:
                frame = await ws.receive_json(timeout=self._timeout.total)
                if not isinstance(frame, dict) or frame.get("id") != request_id:
                    continue
                if frame.get("t") == "messages.subscribed":
                    break
                raise TransportError(f"subscribe to {key} refused: {(frame.get('body') or {}).get('message')}")
        except (aiohttp.ClientError, asyncio.TimeoutError, TypeError, ValueError) as exc:
            await ws.close()
            raise TransportError(f"subscribe to {key} failed: {exc}") from exc
        except TransportError:
            await ws.close()
            raise
        return RemoteChannel(ws, key, on_message, on_disconnect)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
