# =============================================================================
# UA Session -- WebSocket Channel
# =============================================================================
#
# Reference SessionChannel carrying JSON service envelopes over a WebSocket:
#
# Outgoing (client -> server):
#   {"id": 7, "service": "Publish", "token": "<auth token>", "params": {...}}
#
# Incoming (server -> client):
#   {"id": 7, "result": ...}                                  success
#   {"id": 7, "error": {"status": "BadSessionClosed", "message": "..."}}
#
# Responses are correlated by request id, so any number of requests may be
# outstanding at once.
# =============================================================================

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import json
from typing import Any

import websockets
import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed

from ._logging import logger
from .constants import WS_CLOSE_NORMAL, WS_CONNECT_TIMEOUT, WS_MAX_MESSAGE_SIZE
from .errors import ServiceFault, UAConnectionError, UATimeoutError
from .types import (
    NotificationMessage,
    SessionConfig,
    SessionIdentity,
    SubscriptionAcknowledgement,
    SubscriptionSettings,
    TransferResult,
)

try:
    import orjson

    def _json_loads(data: str | bytes) -> Any:
        return orjson.loads(data)

    def _json_dumps(obj: Any) -> str:
        return orjson.dumps(obj).decode()

except ImportError:

    def _json_loads(data: str | bytes) -> Any:
        return json.loads(data)

    def _json_dumps(obj: Any) -> str:
        return json.dumps(obj, separators=(",", ":"))


class WebSocketChannel:
    """:class:`~ua_session.channel.SessionChannel` over a WebSocket.

    Args:
        url: Server endpoint, e.g. ``"ws://localhost:4841/ua"``.
        extra_headers: Additional HTTP headers for the handshake.
        connect_timeout: Bound on opening the socket.
        max_size: Largest accepted frame in bytes.

    Example::

        channel = WebSocketChannel("ws://localhost:4841/ua")
        await channel.connect()
        async with Session(channel) as session:
            ...
    """

    def __init__(
        self,
        url: str,
        *,
        extra_headers: dict[str, str] | None = None,
        connect_timeout: float = WS_CONNECT_TIMEOUT,
        max_size: int = WS_MAX_MESSAGE_SIZE,
    ) -> None:
        self._url = url
        self._extra_headers = dict(extra_headers or {})
        self._connect_timeout = connect_timeout
        self._max_size = max_size

        self._ws: websockets.asyncio.client.ClientConnection | None = None
        self._ws_cm: Any = None
        self._recv_task: asyncio.Task[None] | None = None
        self._request_ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._auth_token: str | None = None

        self._requests_sent = 0
        self._responses_received = 0

    # -- Properties -----------------------------------------------------------

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    # -- Connect / Disconnect -------------------------------------------------

    async def connect(self) -> None:
        """Open the WebSocket and start the receive loop."""
        if self._ws is not None:
            return
        try:
            self._ws_cm = websockets.asyncio.client.connect(
                self._url,
                additional_headers=self._extra_headers,
                max_size=self._max_size,
                open_timeout=None,  # asyncio.wait_for handles timeout
            )
            self._ws = await asyncio.wait_for(
                self._ws_cm.__aenter__(), timeout=self._connect_timeout
            )
        except asyncio.TimeoutError:
            await self._discard_cm()
            raise UATimeoutError(
                f"Connection timed out after {self._connect_timeout}s"
            ) from None
        except Exception as exc:
            await self._discard_cm()
            raise UAConnectionError(f"Failed to connect: {exc}") from exc

        logger.info("Channel connected to %s", self._url)
        self._recv_task = asyncio.create_task(self._recv_loop())

    async def disconnect(self) -> None:
        """Close the socket and fail every outstanding request."""
        if self._recv_task is not None:
            self._recv_task.cancel()
            await asyncio.gather(self._recv_task, return_exceptions=True)
            self._recv_task = None

        if self._ws_cm is not None:
            await self._discard_cm()
        elif self._ws is not None:
            try:
                await self._ws.close(WS_CLOSE_NORMAL, "Client disconnect")
            except Exception as exc:
                logger.debug("WebSocket close failed: %s", exc)
        self._ws = None
        self._fail_pending(UAConnectionError("Channel disconnected"))

    async def _discard_cm(self) -> None:
        cm = self._ws_cm
        self._ws_cm = None
        if cm is None:
            return
        try:
            await cm.__aexit__(None, None, None)
        except Exception as exc:
            logger.debug("WebSocket teardown failed: %s", exc)

    # -- SessionChannel -------------------------------------------------------

    async def reconnect(self) -> None:
        await self.disconnect()
        await self.connect()

    async def create_session(self, config: SessionConfig) -> SessionIdentity:
        result = await self._request(
            "CreateSession",
            {
                "name": config.session_name,
                "timeout": config.session_timeout,
                "maxRequestMessageSize": config.max_request_message_size,
            },
        )
        identity = SessionIdentity(
            session_id=result["sessionId"],
            auth_token=result["authToken"],
            revised_timeout=result.get("revisedTimeout", config.session_timeout),
        )
        self._auth_token = identity.auth_token
        return identity

    async def activate(self, session_id: str, credentials: Any) -> Any:
        return await self._request(
            "ActivateSession",
            {"sessionId": session_id, "credentials": credentials},
        )

    async def publish(
        self, acks: list[SubscriptionAcknowledgement]
    ) -> NotificationMessage:
        result = await self._request(
            "Publish",
            {"acks": [[a.subscription_id, a.sequence_number] for a in acks]},
        )
        return _decode_notification(result)

    async def republish(
        self, subscription_id: int, sequence_number: int
    ) -> NotificationMessage:
        result = await self._request(
            "Republish",
            {"subscriptionId": subscription_id, "sequenceNumber": sequence_number},
        )
        return _decode_notification(result)

    async def transfer_subscriptions(
        self, subscription_ids: list[int], send_initial_values: bool
    ) -> list[TransferResult]:
        result = await self._request(
            "TransferSubscriptions",
            {"subscriptionIds": subscription_ids, "sendInitialValues": send_initial_values},
        )
        return [
            TransferResult(
                subscription_id=r["subscriptionId"],
                success=r.get("status", "Good") == "Good",
                status_code=r.get("status", "Good"),
                available_sequence_numbers=tuple(r.get("available", ())),
            )
            for r in result or ()
        ]

    async def create_subscription(self, settings: SubscriptionSettings) -> int:
        result = await self._request("CreateSubscription", dataclasses.asdict(settings))
        return int(result["subscriptionId"])

    async def delete_subscriptions(self, subscription_ids: list[int]) -> Any:
        return await self._request("DeleteSubscriptions", {"subscriptionIds": subscription_ids})

    async def keep_alive(self) -> Any:
        return await self._request("ReadServerState", {})

    async def close(self, delete_subscriptions: bool) -> None:
        try:
            await self._request(
                "CloseSession", {"deleteSubscriptions": delete_subscriptions}
            )
        finally:
            self._auth_token = None
            await self.disconnect()

    # -- Internal: requests ---------------------------------------------------

    async def _request(self, service: str, params: dict[str, Any]) -> Any:
        ws = self._ws
        if ws is None:
            raise UAConnectionError("Channel is not connected")

        request_id = next(self._request_ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        envelope: dict[str, Any] = {"id": request_id, "service": service, "params": params}
        if self._auth_token is not None:
            envelope["token"] = self._auth_token

        try:
            try:
                await ws.send(_json_dumps(envelope))
            except ConnectionClosed as exc:
                raise UAConnectionError(f"{service} failed: connection closed") from exc
            self._requests_sent += 1
            logger.debug("-> %s #%d", service, request_id)
            return await future
        finally:
            self._pending.pop(request_id, None)

    def _fail_pending(self, exc: BaseException) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(exc)

    # -- Internal: receive loop -----------------------------------------------

    async def _recv_loop(self) -> None:
        """Read responses until the socket closes."""
        assert self._ws is not None
        try:
            async for message in self._ws:
                self._handle_raw_message(message)
        except ConnectionClosed as exc:
            logger.warning("Channel closed: %s", exc)
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.warning("Receive loop error: %s", exc)
        self._ws = None
        self._fail_pending(UAConnectionError("Connection lost"))

    def _handle_raw_message(self, data: str | bytes) -> None:
        try:
            envelope = _json_loads(data)
        except ValueError as exc:
            logger.warning("Undecodable frame dropped: %s", exc)
            return

        future = self._pending.get(envelope.get("id"))
        if future is None or future.done():
            logger.debug("Response for unknown request %r dropped", envelope.get("id"))
            return

        self._responses_received += 1
        error = envelope.get("error")
        if error is not None:
            future.set_exception(
                ServiceFault(error.get("status", "Bad"), error.get("message", ""))
            )
        else:
            future.set_result(envelope.get("result"))

    def get_stats(self) -> dict[str, Any]:
        return {
            "url": self._url,
            "connected": self.is_connected,
            "pending": len(self._pending),
            "requests_sent": self._requests_sent,
            "responses_received": self._responses_received,
        }


def _decode_notification(data: dict[str, Any]) -> NotificationMessage:
    return NotificationMessage(
        subscription_id=data["subscriptionId"],
        sequence_number=data["sequenceNumber"],
        payload=data.get("payload"),
        publish_time=data.get("publishTime"),
        keep_alive=data.get("keepAlive", False),
        available_sequence_numbers=tuple(data.get("available", ())),
        more_notifications=data.get("moreNotifications", False),
    )
