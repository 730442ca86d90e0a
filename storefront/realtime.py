"""
Realtime row-change notifications.

``ChangeFeed`` is a process-local broker created on application startup and
closed on shutdown. Services publish order and stock projections to it after
their commits; subscribers open a filtered ``Channel`` and own it through a
``Subscription`` handle.

Each ``Subscription`` is a small state machine (connecting, connected,
disconnected, error) recomputed by polling its channel on an interval. When
it becomes connected again after a disconnect or error it fires the recovery
callback so callers can re-fetch what they missed. Delivery is at most once
per published change, but a consumer may see the same row again after a
reconnect, so handlers must be idempotent.
"""
import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect

from .auth import SESSION_COOKIE, get_user_by_token
from .config import settings
from .database import async_session_maker
from .logger import log

router = APIRouter(tags=["realtime"])

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


class ChannelState(str, Enum):
    JOINING = "joining"
    JOINED = "joined"
    LEAVING = "leaving"
    CLOSED = "closed"
    ERRORED = "errored"


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


STATE_TO_STATUS = {
    ChannelState.JOINED: ConnectionStatus.CONNECTED,
    ChannelState.JOINING: ConnectionStatus.CONNECTING,
    ChannelState.LEAVING: ConnectionStatus.DISCONNECTED,
    ChannelState.CLOSED: ConnectionStatus.DISCONNECTED,
}


@dataclass(frozen=True)
class ChannelFilter:
    """Server-side row predicate: ``table`` rows where ``column`` is in ``values``."""

    table: str
    column: Optional[str] = None
    values: Optional[frozenset] = None
    events: tuple = (UPDATE,)

    def matches(self, table: str, event: str, row: dict) -> bool:
        if table != self.table or event not in self.events:
            return False
        if self.column is None:
            return True
        return row.get(self.column) in (self.values or ())


async def _call(handler: Callable, *args) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class Channel:
    def __init__(self, feed: "ChangeFeed", name: str, row_filter: ChannelFilter):
        self.feed = feed
        self.name = name
        self.filter = row_filter
        self.state = ChannelState.JOINING
        self._handlers: list = []

    def on(self, handler: Callable[[dict], Any]) -> "Channel":
        self._handlers.append(handler)
        return self

    async def deliver(self, table: str, event: str, row: dict) -> bool:
        if self.state != ChannelState.JOINED or not self.filter.matches(table, event, row):
            return False
        for handler in list(self._handlers):
            try:
                await asyncio.wait_for(_call(handler, row), timeout=self.feed.handler_timeout)
            except asyncio.TimeoutError:
                log.warning(
                    f"realtime: handler on channel {self.name} exceeded {self.feed.handler_timeout}s, row dropped"
                )
            except Exception:
                # one broken consumer must not stop delivery to the others
                log.exception(f"realtime: handler failed on channel {self.name}")
        return True

    def leave(self) -> None:
        if self.state == ChannelState.CLOSED:
            return
        self.state = ChannelState.LEAVING
        self._handlers.clear()
        self.feed.remove(self)
        self.state = ChannelState.CLOSED


class ChangeFeed:
    """
    In-process fan-out of row changes to open channels.

    Publishers await delivery, so every handler gets at most
    ``handler_timeout`` seconds per row.
    """

    def __init__(self, handler_timeout: Optional[float] = None):
        self.handler_timeout = handler_timeout if handler_timeout is not None else settings.REALTIME_HANDLER_TIMEOUT
        self._channels: set = set()
        self.connected = True
        self.closed = False

    def channel(self, name: str, row_filter: ChannelFilter) -> Channel:
        ch = Channel(self, name, row_filter)
        if not self.closed:
            self._channels.add(ch)
            ch.state = ChannelState.JOINED if self.connected else ChannelState.JOINING
        else:
            ch.state = ChannelState.CLOSED
        return ch

    def remove(self, channel: Channel) -> None:
        self._channels.discard(channel)

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    async def publish(self, table: str, event: str, row: dict) -> int:
        if self.closed or not self.connected:
            return 0
        delivered = 0
        for ch in list(self._channels):
            if await ch.deliver(table, event, row):
                delivered += 1
        return delivered

    def disconnect(self, error: bool = False) -> None:
        """Drop the connection; open channels become errored or joining."""
        self.connected = False
        for ch in self._channels:
            ch.state = ChannelState.ERRORED if error else ChannelState.JOINING

    def reconnect(self) -> None:
        if self.closed:
            return
        self.connected = True
        for ch in self._channels:
            ch.state = ChannelState.JOINED

    async def close(self) -> None:
        self.closed = True
        self.connected = False
        for ch in list(self._channels):
            ch.leave()


class Subscription:
    """Handle owning one channel and its connection-status poller."""

    def __init__(self, channel: Channel, on_reconnect: Optional[Callable] = None,
                 poll_interval: Optional[float] = None):
        self.channel = channel
        self.on_reconnect = on_reconnect
        self.poll_interval = poll_interval if poll_interval is not None else settings.REALTIME_POLL_INTERVAL
        self.status = ConnectionStatus.CONNECTING
        self.reconnect_attempts = 0
        self.closed = False
        self._was_connected = False
        self._task: Optional[asyncio.Task] = None
        self._pending: set = set()

    def start(self) -> "Subscription":
        self.check_status()
        self._task = asyncio.get_running_loop().create_task(self._poll())
        return self

    async def _poll(self) -> None:
        while not self.closed:
            await asyncio.sleep(self.poll_interval)
            self.check_status()

    def check_status(self) -> ConnectionStatus:
        if self.closed:
            return self.status
        previous = self.status
        self.status = STATE_TO_STATUS.get(self.channel.state, ConnectionStatus.ERROR)

        if self.status == ConnectionStatus.CONNECTED:
            recovered = self._was_connected and previous != ConnectionStatus.CONNECTED
            self._was_connected = True
            if recovered:
                self.reconnect_attempts += 1
                log.info(f"realtime: channel {self.channel.name} reconnected")
                self._fire_reconnect()
        elif self.status == ConnectionStatus.ERROR and previous != ConnectionStatus.ERROR:
            log.warning(f"realtime: channel {self.channel.name} errored")
        return self.status

    def _fire_reconnect(self) -> None:
        if self.on_reconnect is None:
            return
        task = asyncio.get_running_loop().create_task(_call(self.on_reconnect))
        self._pending.add(task)
        task.add_done_callback(self._reconnect_done)

    def _reconnect_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.opt(exception=task.exception()).error(
                f"realtime: reconnect callback failed on channel {self.channel.name}")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._task is not None:
            self._task.cancel()
        for task in list(self._pending):
            task.cancel()
        self.channel.leave()
        self.status = ConnectionStatus.DISCONNECTED
        log.debug(f"realtime: unsubscribed from {self.channel.name}")


def subscribe(feed: ChangeFeed, row_filter: ChannelFilter, on_event: Callable[[dict], Any],
              on_reconnect: Optional[Callable] = None, poll_interval: Optional[float] = None,
              name: Optional[str] = None) -> Subscription:
    """Open a filtered channel; must be called from a running event loop."""
    name = name or f"{row_filter.table}:{row_filter.column or '*'}"
    channel = feed.channel(name, row_filter).on(on_event)
    log.debug(f"realtime: subscribed to {name}")
    return Subscription(channel, on_reconnect, poll_interval).start()


def unsubscribe(handle: Optional[Subscription]) -> None:
    if handle is not None:
        handle.close()


def subscribe_to_order_updates(feed: ChangeFeed, user_id: int, on_update, on_reconnect=None, **kwargs) -> Subscription:
    row_filter = ChannelFilter("orders", "user_id", frozenset([user_id]))
    return subscribe(feed, row_filter, on_update, on_reconnect, name=f"orders:{user_id}", **kwargs)


def subscribe_to_stock_updates(feed: ChangeFeed, product_ids: Iterable[int], on_update, on_reconnect=None,
                               **kwargs) -> Subscription:
    row_filter = ChannelFilter("products", "id", frozenset(product_ids), events=(UPDATE, DELETE))
    return subscribe(feed, row_filter, on_update, on_reconnect, name="product-stock-updates", **kwargs)


def subscribe_to_all_orders(feed: ChangeFeed, on_update, on_reconnect=None, **kwargs) -> Subscription:
    row_filter = ChannelFilter("orders", events=(INSERT, UPDATE))
    return subscribe(feed, row_filter, on_update, on_reconnect, name="all-orders", **kwargs)


# 📡 Проекции для публикации
def _plain(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def order_update(order) -> dict:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "status": order.status,
        "tracking_number": order.tracking_number,
        "updated_at": _plain(order.updated_at),
    }


def stock_update(product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "slug": product.slug,
        "stock_quantity": product.stock_quantity,
        "is_available": product.is_available,
    }


async def publish_order(feed: Optional[ChangeFeed], order, event: str = UPDATE) -> None:
    if feed is not None:
        await feed.publish("orders", event, order_update(order))


async def publish_stock(feed: Optional[ChangeFeed], product, event: str = UPDATE) -> None:
    if feed is not None:
        await feed.publish("products", event, stock_update(product))


def get_feed(request: Request) -> Optional[ChangeFeed]:
    return getattr(request.app.state, "feed", None)


async def _pump(websocket: WebSocket, handle: Subscription) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe(handle)


async def socket_user_id(token: Optional[str]) -> Optional[int]:
    """Resolve the socket's user with a session that is closed before streaming starts."""
    async with async_session_maker() as session:
        user = await get_user_by_token(token, session)
        return user.id if user is not None else None


@router.websocket("/ws/orders")
async def orders_socket(websocket: WebSocket, token: Optional[str] = None):
    user_id = await socket_user_id(token or websocket.cookies.get(SESSION_COOKIE))
    feed = getattr(websocket.app.state, "feed", None)
    if user_id is None or feed is None:
        await websocket.close(code=4401)
        return
    await websocket.accept()

    async def forward(row: dict):
        await websocket.send_json({"type": "order", "data": row})

    async def resync():
        await websocket.send_json({"type": "resync"})

    await _pump(websocket, subscribe_to_order_updates(feed, user_id, forward, resync))


@router.websocket("/ws/stock")
async def stock_socket(websocket: WebSocket, ids: str = ""):
    feed = getattr(websocket.app.state, "feed", None)
    product_ids = [int(x) for x in ids.split(",") if x.strip().isdigit()]
    if feed is None or not product_ids:
        await websocket.close(code=4400)
        return
    await websocket.accept()

    async def forward(row: dict):
        await websocket.send_json({"type": "stock", "data": row})

    async def resync():
        await websocket.send_json({"type": "resync"})

    await _pump(websocket, subscribe_to_stock_updates(feed, product_ids, forward, resync))
