"""Realtime Fan-out.

Pushes state changes from the event bus to authenticated websocket
clients. Every connection joins ``account:{id}``, ``role:{role}`` and
``user:{id}``; ``call:{id}`` and ``campaign:{id}`` rooms are opt-in and
gated by role.

Server to client envelopes are ``{type, payload, timestamp}``. Clients may
only send subscribe/unsubscribe, heartbeat, intervention requests and
alert acknowledgements.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Protocol
from uuid import uuid4

from starlette.websockets import WebSocketState

from campaign_dialer.config import RealtimeSettings
from campaign_dialer.core.events import BusEvent, Channel, EventBus, Subscription
from campaign_dialer.core.security import Identity, decode_identity
from campaign_dialer.core.timeutil import Clock, utcnow
from campaign_dialer.db.repositories import AlertRepository
from campaign_dialer.db.session import Database
from campaign_dialer.log import get_logger

log = get_logger(__name__)

# Alert severity to target role rooms
ALERT_TARGETS: dict[str, tuple[str, ...]] = {
    "critical": ("role:admin", "role:supervisor"),
    "high": ("role:admin", "role:supervisor"),
    "medium": ("role:supervisor",),
    "low": ("role:admin",),
}

ELEVATED_ROOMS = ("role:admin", "role:supervisor")


class Transport(Protocol):
    """What the hub needs from a socket (a Starlette ``WebSocket`` fits)."""

    async def send_json(self, data: Any) -> None:
        ...


def envelope(type: str, payload: dict[str, Any] | None, timestamp: datetime | None = None) -> dict[str, Any]:
    return {
        "type": type,
        "payload": payload or {},
        "timestamp": (timestamp or utcnow()).isoformat(),
    }


@dataclass
class ClientConnection:
    """One authenticated socket and the rooms it has joined."""

    id: str
    identity: Identity
    transport: Transport
    connected_at: datetime
    rooms: set[str] = field(default_factory=set)
    last_seen: datetime | None = None

    @property
    def campaigns(self) -> set[str]:
        return {room.split(":", 1)[1] for room in self.rooms if room.startswith("campaign:")}

    def is_alive(self) -> bool:
        state = getattr(self.transport, "client_state", WebSocketState.CONNECTED)
        return state == WebSocketState.CONNECTED

    def accepts_campaign(self, campaign_id: str | None) -> bool:
        """Campaign-tagged events reach campaign subscribers only for their campaigns."""
        if campaign_id is None:
            return True
        subscribed = self.campaigns
        return not subscribed or campaign_id in subscribed


class FanoutHub:
    """Room registry and bus-to-socket router.

    Usage:
        hub = FanoutHub(bus, database, settings.realtime, secret=...)
        await hub.start()
        identity = hub.authenticate(token)
        connection = await hub.connect(websocket, identity)
        await hub.handle_text(connection.id, raw_message)
        hub.disconnect(connection.id)
    """

    def __init__(
        self,
        bus: EventBus,
        database: Database,
        settings: RealtimeSettings | None = None,
        *,
        secret: str,
        algorithm: str = "HS256",
        clock: Clock = utcnow,
    ) -> None:
        self._bus = bus
        self._db = database
        self.settings = settings or RealtimeSettings()
        self._secret = secret
        self._algorithm = algorithm
        self._clock = clock

        self._connections: dict[str, ClientConnection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._subscription: Subscription | None = None
        self._pump_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._delivered = 0

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get_connection(self, connection_id: str) -> ClientConnection | None:
        return self._connections.get(connection_id)

    def room_members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, ()))

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Subscribe to the bus and start routing and heartbeats."""
        if self._pump_task is not None:
            return
        self._subscription = self._bus.subscribe(
            Channel.CALL_EVENTS,
            Channel.CAMPAIGN_UPDATES,
            Channel.SYSTEM_ALERTS,
            Channel.CALL_INTERVENTIONS,
        )
        self._pump_task = asyncio.create_task(self._pump(self._subscription))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        log.info("Realtime fan-out started")

    async def stop(self) -> None:
        for task in (self._pump_task, self._heartbeat_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._pump_task = None
        self._heartbeat_task = None

        if self._subscription is not None:
            self._bus.unsubscribe(self._subscription)
            self._subscription = None

        self._connections.clear()
        self._rooms.clear()
        log.info("Realtime fan-out stopped")

    async def _pump(self, subscription: Subscription) -> None:
        while True:
            event = await subscription.get()
            try:
                await self.route(event)
            except Exception as e:
                log.error(
                    "Error routing realtime event",
                    channel=event.channel,
                    event_type=event.type,
                    error=str(e),
                )

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval_seconds)
            try:
                await self.heartbeat()
            except Exception as e:
                log.error("Error in realtime heartbeat", error=str(e))

    # ========================================================================
    # Connections and rooms
    # ========================================================================

    def authenticate(self, token: str | None) -> Identity:
        """Resolve a bearer token to an identity.

        Raises:
            AuthenticationError: missing or invalid token
        """
        return decode_identity(token, secret=self._secret, algorithm=self._algorithm)

    async def connect(self, transport: Transport, identity: Identity) -> ClientConnection:
        """Register an accepted socket and join its fixed rooms."""
        connection = ClientConnection(
            id=uuid4().hex,
            identity=identity,
            transport=transport,
            connected_at=self._clock(),
        )
        self._connections[connection.id] = connection
        for room in (
            f"account:{identity.account_id}",
            f"role:{identity.role}",
            f"user:{identity.user_id}",
        ):
            self.join(connection, room)

        log.info(
            "Realtime client connected",
            connection_id=connection.id,
            user_id=identity.user_id,
            account_id=identity.account_id,
            role=identity.role,
        )
        await self._send_status(connection)
        return connection

    def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        for room in list(connection.rooms):
            self.leave(connection, room)
        log.info(
            "Realtime client disconnected",
            connection_id=connection_id,
            user_id=connection.identity.user_id,
        )

    def join(self, connection: ClientConnection, room: str) -> None:
        connection.rooms.add(room)
        self._rooms.setdefault(room, set()).add(connection.id)

    def leave(self, connection: ClientConnection, room: str) -> None:
        connection.rooms.discard(room)
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(connection.id)
        if not members:
            del self._rooms[room]

    async def _send_status(self, connection: ClientConnection) -> None:
        async with self._db.session() as session:
            alerts = await AlertRepository(session).get_open(
                connection.identity.account_id, limit=10
            )
            open_alerts = [alert.to_dict() for alert in alerts]
        await self._send(
            connection,
            envelope(
                "system:status",
                {
                    "connection_id": connection.id,
                    "rooms": sorted(connection.rooms),
                    "alerts": open_alerts,
                },
                self._clock(),
            ),
        )

    # ========================================================================
    # Client messages
    # ========================================================================

    async def handle_text(self, connection_id: str, text: str) -> None:
        """Parse and handle one raw client frame."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        try:
            message = json.loads(text)
        except ValueError:
            await self._reply_error(connection, "Message is not valid JSON")
            return
        if not isinstance(message, dict):
            await self._reply_error(connection, "Message must be a JSON object")
            return
        await self.handle_message(connection_id, message)

    async def handle_message(self, connection_id: str, message: dict[str, Any]) -> None:
        """Handle a client message ``{"type": ..., ...}``."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        connection.last_seen = self._clock()
        kind = message.get("type")
        identity = connection.identity

        if kind == "heartbeat":
            await self._send(connection, envelope("heartbeat:ack", {}, self._clock()))

        elif kind == "subscribe:call":
            call_id = _id_field(message, "call_id", "callId")
            if not call_id:
                await self._reply_error(connection, "call_id required")
            elif not identity.can_access_call(call_id):
                await self._reply_error(connection, "Not allowed to subscribe to calls")
            else:
                self.join(connection, f"call:{call_id}")
                await self._send(
                    connection, envelope("subscribed", {"room": f"call:{call_id}"}, self._clock())
                )

        elif kind == "subscribe:campaign":
            campaign_id = _id_field(message, "campaign_id", "campaignId")
            if not campaign_id:
                await self._reply_error(connection, "campaign_id required")
            elif not identity.can_access_campaign(campaign_id):
                await self._reply_error(connection, "Not allowed to subscribe to campaigns")
            else:
                self.join(connection, f"campaign:{campaign_id}")
                await self._send(
                    connection,
                    envelope("subscribed", {"room": f"campaign:{campaign_id}"}, self._clock()),
                )

        elif kind in ("unsubscribe:call", "unsubscribe:campaign"):
            prefix = kind.split(":", 1)[1]
            target = _id_field(message, f"{prefix}_id", f"{prefix}Id")
            if target:
                self.leave(connection, f"{prefix}:{target}")
            await self._send(
                connection, envelope("unsubscribed", {"room": f"{prefix}:{target}"}, self._clock())
            )

        elif kind == "intervention:request":
            await self._handle_intervention(connection, message)

        elif kind == "alert:acknowledge":
            await self._handle_alert_ack(connection, message)

        else:
            await self._reply_error(connection, f"Unsupported message type: {kind}")

    async def _handle_intervention(self, connection: ClientConnection, message: dict[str, Any]) -> None:
        identity = connection.identity
        if not identity.can_intervene():
            await self._reply_error(connection, "Not allowed to intervene in calls")
            return

        call_id = _id_field(message, "call_id", "callId")
        action = message.get("action")
        if not call_id or not action:
            await self._reply_error(connection, "call_id and action required")
            return

        await self._bus.publish(
            Channel.CALL_INTERVENTIONS,
            "intervention_requested",
            {
                "call_id": call_id,
                "action": action,
                "params": message.get("params") or {},
                "requested_by": identity.user_id,
            },
            account_id=identity.account_id,
            call_id=call_id,
            user_id=identity.user_id,
        )
        log.info(
            "Call intervention requested",
            call_id=call_id,
            action=action,
            requested_by=identity.user_id,
        )
        await self._send(
            connection,
            envelope("intervention:accepted", {"call_id": call_id, "action": action}, self._clock()),
        )

    async def _handle_alert_ack(self, connection: ClientConnection, message: dict[str, Any]) -> None:
        identity = connection.identity
        alert_id = _id_field(message, "alert_id", "alertId")
        if not alert_id:
            await self._reply_error(connection, "alert_id required")
            return

        try:
            async with self._db.session() as session:
                acknowledged = await AlertRepository(session).acknowledge(
                    alert_id,
                    user_id=identity.user_id,
                    account_id=identity.account_id,
                    at=self._clock(),
                )
        except ValueError:
            acknowledged = False

        if not acknowledged:
            await self._reply_error(connection, f"Alert {alert_id} not found or already acknowledged")
            return

        await self.emit(
            [f"account:{identity.account_id}"],
            "alert:acknowledged",
            {"alert_id": alert_id, "acknowledged_by": identity.user_id},
        )

    async def _reply_error(self, connection: ClientConnection, message: str) -> None:
        await self._send(connection, envelope("error", {"message": message}, self._clock()))

    # ========================================================================
    # Routing
    # ========================================================================

    def rooms_for(self, event: BusEvent) -> list[str]:
        """Target rooms for a bus event."""
        rooms: list[str] = []
        if event.channel == Channel.SYSTEM_ALERTS.value:
            severity = str(event.payload.get("severity", "low"))
            return list(ALERT_TARGETS.get(severity, ALERT_TARGETS["low"]))

        if event.account_id:
            rooms.append(f"account:{event.account_id}")
        if event.user_id:
            rooms.append(f"user:{event.user_id}")

        if event.channel == Channel.CALL_EVENTS.value:
            if event.call_id:
                rooms.append(f"call:{event.call_id}")
        elif event.channel == Channel.CAMPAIGN_UPDATES.value:
            if event.campaign_id:
                rooms.append(f"campaign:{event.campaign_id}")
            if not event.account_id:
                rooms.extend(ELEVATED_ROOMS)
        elif event.channel == Channel.CALL_INTERVENTIONS.value:
            rooms = [room for room in rooms if not room.startswith("account:")]
            if event.call_id:
                rooms.append(f"call:{event.call_id}")
            rooms.extend(ELEVATED_ROOMS)
        return rooms

    async def route(self, event: BusEvent) -> int:
        """Deliver a bus event to its rooms. Returns sockets reached."""
        event_type = "system:alert" if event.channel == Channel.SYSTEM_ALERTS.value else event.type
        # Role rooms span accounts; account-scoped events stay in their account
        return await self.emit(
            self.rooms_for(event),
            event_type,
            event.payload,
            campaign_id=event.campaign_id,
            account_id=event.account_id,
            timestamp=event.timestamp,
        )

    async def emit(
        self,
        rooms: Iterable[str],
        type: str,
        payload: dict[str, Any],
        *,
        campaign_id: str | None = None,
        account_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> int:
        """Send one envelope to every connection in ``rooms``, once each."""
        targets: set[str] = set()
        for room in rooms:
            targets |= self._rooms.get(room, set())

        message = envelope(type, payload, timestamp or self._clock())
        sent = 0
        for connection_id in targets:
            connection = self._connections.get(connection_id)
            if connection is None:
                continue
            if account_id and connection.identity.account_id != account_id:
                continue
            if not connection.accepts_campaign(campaign_id):
                continue
            if await self._send(connection, message):
                sent += 1
        return sent

    async def _send(self, connection: ClientConnection, message: dict[str, Any]) -> bool:
        try:
            await connection.transport.send_json(message)
        except Exception as e:
            log.warning(
                "Realtime send failed, dropping connection",
                connection_id=connection.id,
                error=str(e),
            )
            self.disconnect(connection.id)
            return False
        self._delivered += 1
        return True

    # ========================================================================
    # Heartbeat
    # ========================================================================

    async def heartbeat(self) -> dict[str, Any]:
        """Prune dead sockets and publish connection metrics to admins."""
        dead = [c.id for c in self._connections.values() if not c.is_alive()]
        for connection_id in dead:
            self.disconnect(connection_id)
        if dead:
            log.info("Pruned dead realtime connections", count=len(dead))

        metrics = self.get_stats()
        await self.emit(["role:admin"], "realtime:metrics", metrics)
        return metrics

    def get_stats(self) -> dict[str, Any]:
        return {
            "connected_sockets": len(self._connections),
            "authenticated_users": len({c.identity.user_id for c in self._connections.values()}),
            "total_rooms": len(self._rooms),
            "delivered": self._delivered,
            "bus": self._bus.get_stats(),
            "timestamp": self._clock().isoformat(),
        }


def _id_field(message: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = message.get(key)
        if value not in (None, ""):
            return str(value)
    return None
