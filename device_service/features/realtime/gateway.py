"""Dual-transport gateway: WebSocket sessions and SSE push streams.

Both transports authenticate through the token ledger, register a
ConnectionHandle with the hub's registry and then drain that handle.
A WebSocket session runs two tasks, a reader that handles client control
messages and a writer that owns every send. They talk only through the
handle's queue.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from device_service.core.exceptions import (
    AccountLocked,
    AppException,
    AuthFailure,
    ConnectionLimitExceeded,
    DeliveryFailure,
    StoreFailure,
    TokenError,
    TokenExpired,
    TokenRevoked,
    UserNotFound,
    ValidationFailure,
)
from device_service.features.auth.models import TokenType
from device_service.features.realtime.schemas import (
    CLIENT_MESSAGE_MODELS,
    ClientMessage,
    ErrorCode,
    JoinOrganizationMessage,
    LeaveOrganizationMessage,
    ServerMessageType,
    SubscribeDeviceMessage,
    UnsubscribeDeviceMessage,
)
from device_service.infra.logging import clear_log_context, get_lazy_logger, set_log_context
from device_service.infra.metrics.prometheus import (
    realtime_handshakes_total,
    realtime_messages_received_total,
    realtime_messages_sent_total,
)
from device_service.infra.ratelimit import RateLimiter
from device_service.infra.realtime import (
    CloseSignal,
    ConnectionHandle,
    ConnectionState,
    Event,
    EventKind,
    TransportKind,
    device_topic,
    org_topic,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import Request

    from device_service.core.settings.realtime import RealtimeSettings
    from device_service.features.auth.schemas import TokenClaims
    from device_service.features.auth.service import TokenLedger
    from device_service.infra.realtime import RealtimeHub

logger = logging.getLogger(__name__)
_lazy = get_lazy_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Close codes for server-initiated closes after the handshake
WS_FORCE_DISCONNECT = 4000
_CLOSE_CODES = {
    "slow_consumer": status.WS_1013_TRY_AGAIN_LATER,
    "idle_timeout": status.WS_1000_NORMAL_CLOSURE,
    "shutdown": status.WS_1001_GOING_AWAY,
}


class RealtimeGateway:
    """Entry point for both realtime transports.

    Example:
        gateway = RealtimeGateway(hub, ledger, get_realtime_settings(), RateLimiter("memory://"))
        await gateway.handle_bidirectional_connect(websocket, token)
    """

    def __init__(
        self,
        hub: RealtimeHub,
        ledger: TokenLedger,
        settings: RealtimeSettings,
        limiter: RateLimiter | None = None,
    ) -> None:
        self.hub = hub
        self.ledger = ledger
        self.settings = settings
        self.limiter = limiter or RateLimiter(
            settings.rate_limit_storage_uri,
            key_prefix="realtime",
            default_limit=settings.rate_limit_operations,
            default_window=settings.rate_limit_window_seconds,
        )

    async def authenticate(self, token: str | None, client_key: str) -> TokenClaims:
        """Verify an access token for a realtime handshake.

        Raises:
            AuthFailure: Missing, malformed, expired or revoked token, unknown
                user, or an unreachable token store.
            AccountLocked: The user is inside a lockout window.
            RateLimited: Too many handshakes from ``client_key``.
        """
        if not token:
            raise AuthFailure("Missing access token", code="MISSING_TOKEN")

        await self.limiter.enforce(
            f"handshake:{client_key}",
            limit=self.settings.handshake_rate_limit,
            window=self.settings.rate_limit_window_seconds,
            scope="handshake",
        )

        try:
            claims = await self.ledger.verify(token, TokenType.ACCESS)
            user = await self.ledger.get_user(claims.user_id)
        except TokenExpired as e:
            raise AuthFailure("Token has expired", code="TOKEN_EXPIRED") from e
        except TokenRevoked as e:
            raise AuthFailure("Token has been revoked", code="TOKEN_REVOKED") from e
        except TokenError as e:
            raise AuthFailure("Invalid token", code="INVALID_TOKEN") from e
        except UserNotFound as e:
            raise AuthFailure("User not found", code="USER_NOT_FOUND") from e
        except StoreFailure as e:
            # Fail closed when revocation state cannot be checked
            raise AuthFailure("Unable to verify token", code="INVALID_TOKEN") from e

        if user.is_locked():
            raise AccountLocked(locked_until=user.locked_until.isoformat() if user.locked_until else None)
        if not user.is_active:
            raise AuthFailure("Account is deactivated", code="ACCOUNT_INACTIVE")
        return claims

    def open_connection(self, claims: TokenClaims, transport: TransportKind) -> ConnectionHandle:
        """Create and register a handle for an authenticated client.

        Raises:
            ConnectionLimitExceeded: If the instance or user is at capacity.
        """
        handle = ConnectionHandle(
            connection_id=str(uuid4()),
            user_id=claims.user_id,
            role=str(claims.role.value),
            transport=transport,
            token_id=claims.token_id,
            queue_size=self.settings.send_queue_size,
        )
        handle.state = ConnectionState.AUTHENTICATED
        self.hub.registry.register(handle.connection_id, claims.user_id, handle)
        handle.state = ConnectionState.SUBSCRIBED
        return handle

    # ──────────────────────────────────────────────────────────────
    # WebSocket
    # ──────────────────────────────────────────────────────────────

    async def handle_bidirectional_connect(self, websocket: WebSocket, token: str | None) -> None:
        """Run one WebSocket connection from handshake to close."""
        session = WebSocketSession(self, websocket)
        await session.run(token)

    # ──────────────────────────────────────────────────────────────
    # Server-Sent Events
    # ──────────────────────────────────────────────────────────────

    async def handle_push_stream_connect(
        self,
        request: Request,
        token: str | None,
        last_event_id: int | None = None,
    ) -> StreamingResponse:
        """Authenticate and open an SSE stream.

        Authentication and admission errors are raised before any byte is
        streamed, so they reach the client as problem responses.
        """
        client_key = request.client.host if request.client else "unknown"
        try:
            claims = await self.authenticate(token, client_key)
            handle = self.open_connection(claims, TransportKind.SSE)
        except AppException as e:
            realtime_handshakes_total.labels(transport=TransportKind.SSE.value, outcome=_outcome(e)).inc()
            logger.warning(
                "SSE handshake rejected",
                extra={"client": client_key, "code": e.code, "status_code": e.status_code},
            )
            raise
        realtime_handshakes_total.labels(transport=TransportKind.SSE.value, outcome="accepted").inc()

        replay = self.hub.replay_since(last_event_id, handle.topics) if last_event_id is not None else []
        logger.info(
            "SSE stream opened",
            extra={
                "connection_id": handle.connection_id,
                "user_id": handle.user_id,
                "last_event_id": last_event_id,
                "replayed": len(replay),
            },
        )
        # The body may never start if the client aborts first
        return StreamingResponse(
            self.push_stream(handle, request, replay),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
            background=BackgroundTask(self.release_stream, handle),
        )

    async def push_stream(
        self,
        handle: ConnectionHandle,
        request: Request,
        replay: list[Event],
    ) -> AsyncIterator[str]:
        """Yield SSE frames: connected, replayed events, then live events.

        A heartbeat frame is emitted whenever nothing was sent for
        ``heartbeat_interval`` seconds. The handle is unregistered when the
        client goes away or the handle is closed.
        """
        last_sent = 0
        try:
            yield self.connected_frame(handle).to_sse()
            for event in replay:
                yield event.to_sse()
                last_sent = event.id or last_sent

            while True:
                if await request.is_disconnected():
                    break
                item = await handle.next_item(timeout=self.settings.heartbeat_interval)
                if item is None:
                    yield Event.control(EventKind.HEARTBEAT).to_sse()
                    handle.touch()
                    continue
                if isinstance(item, CloseSignal):
                    if item.frame is not None:
                        yield item.frame.to_sse()
                    break
                # Published between register and replay: already sent
                if item.id is not None and item.id <= last_sent:
                    continue
                yield item.to_sse()
                handle.touch()
                last_sent = item.id or last_sent
                realtime_messages_sent_total.labels(transport=TransportKind.SSE.value, event=item.kind).inc()
        finally:
            self.release_stream(handle)

    def release_stream(self, handle: ConnectionHandle) -> None:
        """Unregister an SSE handle; later calls are no-ops."""
        if self.hub.registry.unregister(handle.connection_id, reason=handle.close_reason or "client_disconnected"):
            logger.info("SSE stream closed", extra={"connection_id": handle.connection_id})

    @staticmethod
    def connected_frame(handle: ConnectionHandle) -> Event:
        return Event.control(
            EventKind.CONNECTED,
            {
                "connection_id": handle.connection_id,
                "user_id": handle.user_id,
                "role": handle.role,
                "topics": sorted(handle.topics),
            },
        )


class WebSocketSession:
    """State machine for one WebSocket connection.

    CONNECTING → AUTHENTICATED → SUBSCRIBED → CLOSED. A failed handshake goes
    straight from CONNECTING to CLOSED without touching the registry.
    """

    def __init__(self, gateway: RealtimeGateway, websocket: WebSocket) -> None:
        self.gateway = gateway
        self.websocket = websocket
        self.settings = gateway.settings
        self.state = ConnectionState.CONNECTING
        self.handle: ConnectionHandle | None = None

    @property
    def client_key(self) -> str:
        return self.websocket.client.host if self.websocket.client else "unknown"

    @property
    def operation_key(self) -> str:
        """Rate limit bucket for this connection's client operations."""
        return f"ws:{self.handle.connection_id}"

    async def run(self, token: str | None) -> None:
        await self.websocket.accept()
        try:
            claims = await self.gateway.authenticate(token, self.client_key)
            self.state = ConnectionState.AUTHENTICATED
            self.handle = self.gateway.open_connection(claims, TransportKind.WEBSOCKET)
        except AppException as e:
            await self._reject(e)
            return

        handle = self.handle
        self.state = ConnectionState.SUBSCRIBED
        realtime_handshakes_total.labels(transport=TransportKind.WEBSOCKET.value, outcome="accepted").inc()
        set_log_context(connection_id=handle.connection_id, user_id=handle.user_id)
        logger.info("WebSocket client connected", extra={"transport": TransportKind.WEBSOCKET.value})

        try:
            await self._send(RealtimeGateway.connected_frame(handle))
            await self._pump()
        except (WebSocketDisconnect, TimeoutError, RuntimeError, OSError) as e:
            logger.info("WebSocket transport ended", extra={"error": type(e).__name__})
        finally:
            self.state = ConnectionState.CLOSED
            close_code = _close_code(handle.close_reason)
            self.gateway.hub.registry.unregister(
                handle.connection_id,
                reason=handle.close_reason or "client_disconnected",
            )
            await self.gateway.limiter.reset_limit(
                self.operation_key,
                limit=self.settings.rate_limit_operations,
                window=self.settings.rate_limit_window_seconds,
            )
            await self._close(close_code)
            logger.info("WebSocket client disconnected", extra={"reason": handle.close_reason})
            clear_log_context()

    async def _pump(self) -> None:
        reader = asyncio.create_task(self._reader(), name=f"ws-reader-{self.handle.connection_id}")
        writer = asyncio.create_task(self._writer(), name=f"ws-writer-{self.handle.connection_id}")
        try:
            done, _ = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            # Also reached when the session itself is cancelled
            for task in (reader, writer):
                task.cancel()
            await asyncio.gather(reader, writer, return_exceptions=True)
        for task in done:
            error = task.exception()
            if error is not None:
                raise error

    # ──────────────────────────────────────────────────────────────
    # Handshake rejection
    # ──────────────────────────────────────────────────────────────

    async def _reject(self, error: AppException) -> None:
        code = error.close_code or status.WS_1013_TRY_AGAIN_LATER
        outcome = _outcome(error)
        realtime_handshakes_total.labels(transport=TransportKind.WEBSOCKET.value, outcome=outcome).inc()
        logger.warning(
            "WebSocket handshake rejected",
            extra={"client": self.client_key, "code": error.code, "close_code": code},
        )
        payload: dict[str, Any] = {"code": error.code or outcome, "message": error.detail}
        if "retry_after" in error.extra:
            payload["retry_after"] = error.extra["retry_after"]
        try:
            await self._send(Event.control(EventKind.ERROR, payload))
        finally:
            self.state = ConnectionState.CLOSED
            await self._close(code, reason=error.code or "")

    # ──────────────────────────────────────────────────────────────
    # Reader / writer
    # ──────────────────────────────────────────────────────────────

    async def _reader(self) -> None:
        while True:
            raw = await self.websocket.receive_text()
            self.handle.touch()
            reply = await self.handle_message(raw)
            try:
                self.handle.offer(reply)
            except DeliveryFailure:
                # Handle closed underneath us; the writer is finishing up
                return

    async def _writer(self) -> None:
        while True:
            item = await self.handle.next_item(timeout=self.settings.heartbeat_interval)
            if item is None:
                # Keep-alive only; does not count as activity
                await self._send(Event.control(ServerMessageType.PING))
                continue
            if isinstance(item, CloseSignal):
                if item.frame is not None:
                    await self._send(item.frame)
                return
            await self._send(item)
            self.handle.touch()

    async def _send(self, event: Event) -> None:
        await asyncio.wait_for(self.websocket.send_json(event.to_message()), timeout=self.settings.send_timeout)
        realtime_messages_sent_total.labels(transport=TransportKind.WEBSOCKET.value, event=event.kind).inc()

    async def _close(self, code: int, reason: str = "") -> None:
        if (
            self.websocket.application_state != WebSocketState.CONNECTED
            or self.websocket.client_state != WebSocketState.CONNECTED
        ):
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError) as e:
            _lazy.debug(lambda: f"Close after transport loss: {e!r}")

    # ──────────────────────────────────────────────────────────────
    # Client operations
    # ──────────────────────────────────────────────────────────────

    async def handle_message(self, raw: str) -> Event:
        """Apply one client frame and return the acknowledgement or error frame."""
        if len(raw.encode()) > self.settings.max_message_size:
            return _error(ErrorCode.MESSAGE_TOO_LARGE, "Message exceeds the maximum size")

        allowed, meta = await self.gateway.limiter.check_limit(
            self.operation_key,
            limit=self.settings.rate_limit_operations,
            window=self.settings.rate_limit_window_seconds,
            scope="ws_operation",
        )
        if not allowed:
            return _error(ErrorCode.RATE_LIMITED, "Too many messages", retry_after=meta["retry_after"])

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return _error(ErrorCode.INVALID_JSON, "Invalid JSON message")
        if not isinstance(data, dict):
            return _error(ErrorCode.VALIDATION_ERROR, "Message must be a JSON object")

        msg_type = data.get("type")
        model = CLIENT_MESSAGE_MODELS.get(msg_type) if isinstance(msg_type, str) else None
        if model is None:
            realtime_messages_received_total.labels(message_type="unknown").inc()
            return _error(ErrorCode.UNKNOWN_TYPE, f"Unknown message type: {msg_type}")
        realtime_messages_received_total.labels(message_type=msg_type).inc()

        try:
            message = _parse(model, data)
            return self._apply(message)
        except ValidationFailure as e:
            return _error(ErrorCode.VALIDATION_ERROR, e.detail, field=e.extra.get("field"))

    def _apply(self, message: ClientMessage) -> Event:
        registry = self.gateway.hub.registry
        connection_id = self.handle.connection_id
        match message:
            case JoinOrganizationMessage(organization_id=organization_id):
                registry.subscribe(connection_id, org_topic(organization_id))
                return Event.control(ServerMessageType.JOINED_ORGANIZATION, {"organization_id": organization_id})
            case LeaveOrganizationMessage(organization_id=organization_id):
                registry.unsubscribe(connection_id, org_topic(organization_id))
                return Event.control(ServerMessageType.LEFT_ORGANIZATION, {"organization_id": organization_id})
            case SubscribeDeviceMessage(device_id=device_id):
                registry.subscribe(connection_id, device_topic(device_id))
                return Event.control(ServerMessageType.SUBSCRIBED_DEVICE, {"device_id": device_id})
            case UnsubscribeDeviceMessage(device_id=device_id):
                registry.unsubscribe(connection_id, device_topic(device_id))
                return Event.control(ServerMessageType.UNSUBSCRIBED_DEVICE, {"device_id": device_id})
            case _:
                return Event.control(ServerMessageType.PONG)


def _parse(model: type[ClientMessage], data: dict[str, Any]) -> ClientMessage:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationFailure(f"{field}: {first.get('msg')}" if field else str(first.get("msg")), field=field) from e


def _error(code: ErrorCode, message: str, **details: Any) -> Event:
    payload: dict[str, Any] = {"code": code.value, "message": message}
    payload.update({key: value for key, value in details.items() if value is not None})
    return Event.control(ServerMessageType.ERROR, payload)


def _outcome(error: AppException) -> str:
    if isinstance(error, AccountLocked):
        return "locked"
    if isinstance(error, ConnectionLimitExceeded):
        return "capacity"
    if error.status_code == status.HTTP_429_TOO_MANY_REQUESTS:
        return "rate_limited"
    if error.status_code == status.HTTP_401_UNAUTHORIZED:
        return "unauthorized"
    return "unavailable"


def _close_code(reason: str | None) -> int:
    """WebSocket close code for a handle close reason; None means the client left."""
    if reason is None:
        return status.WS_1000_NORMAL_CLOSURE
    return _CLOSE_CODES.get(reason, WS_FORCE_DISCONNECT)
