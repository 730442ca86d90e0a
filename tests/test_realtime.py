import asyncio
from types import SimpleNamespace

from storefront import realtime
from storefront.auth import create_access_token
from storefront.realtime import (
    ChangeFeed, ChannelFilter, ChannelState, ConnectionStatus, DELETE, INSERT, UPDATE,
    order_update, publish_order, subscribe, subscribe_to_all_orders, subscribe_to_order_updates,
    subscribe_to_stock_updates, unsubscribe,
)


def _order_row(order_id=1, user_id=1, status="paid"):
    return {"id": order_id, "user_id": user_id, "status": status}


async def test_order_updates_are_filtered_by_user(feed):
    mine, theirs = [], []
    a = subscribe_to_order_updates(feed, 1, mine.append, poll_interval=60)
    b = subscribe_to_order_updates(feed, 2, theirs.append, poll_interval=60)

    await feed.publish("orders", UPDATE, _order_row(10, user_id=1))
    await feed.publish("orders", UPDATE, _order_row(11, user_id=2))
    await feed.publish("orders", INSERT, _order_row(12, user_id=1))

    assert [r["id"] for r in mine] == [10]
    assert [r["id"] for r in theirs] == [11]
    unsubscribe(a)
    unsubscribe(b)


async def test_stock_updates_include_deletes(feed):
    rows = []
    handle = subscribe_to_stock_updates(feed, [5, 6], rows.append, poll_interval=60)

    await feed.publish("products", UPDATE, {"id": 5, "stock_quantity": 3})
    await feed.publish("products", DELETE, {"id": 6, "stock_quantity": 0})
    await feed.publish("products", UPDATE, {"id": 7, "stock_quantity": 1})
    await feed.publish("products", INSERT, {"id": 5, "stock_quantity": 9})

    assert [(r["id"], r["stock_quantity"]) for r in rows] == [(5, 3), (6, 0)]
    unsubscribe(handle)


async def test_all_orders_channel_sees_inserts(feed):
    rows = []
    handle = subscribe_to_all_orders(feed, rows.append, poll_interval=60)
    await feed.publish("orders", INSERT, _order_row(1, user_id=1))
    await feed.publish("orders", UPDATE, _order_row(2, user_id=9))
    await feed.publish("orders", DELETE, _order_row(3))
    assert [r["id"] for r in rows] == [1, 2]
    unsubscribe(handle)


async def test_async_handlers_are_awaited(feed):
    rows = []

    async def on_update(row):
        await asyncio.sleep(0)
        rows.append(row)

    handle = subscribe_to_order_updates(feed, 1, on_update, poll_interval=60)
    assert await feed.publish("orders", UPDATE, _order_row()) == 1
    assert rows == [_order_row()]
    unsubscribe(handle)


async def test_failing_handler_does_not_block_others(feed):
    rows = []

    def broken(row):
        raise RuntimeError("boom")

    first = subscribe_to_order_updates(feed, 1, broken, poll_interval=60)
    second = subscribe_to_order_updates(feed, 1, rows.append, poll_interval=60)

    assert await feed.publish("orders", UPDATE, _order_row()) == 2
    assert rows == [_order_row()]
    unsubscribe(first)
    unsubscribe(second)


async def test_unsubscribe_is_idempotent(feed):
    rows = []
    handle = subscribe_to_order_updates(feed, 1, rows.append, poll_interval=60)
    assert feed.channel_count == 1

    unsubscribe(handle)
    unsubscribe(handle)
    unsubscribe(None)

    assert feed.channel_count == 0
    assert handle.status == ConnectionStatus.DISCONNECTED
    assert handle.channel.state == ChannelState.CLOSED
    assert await feed.publish("orders", UPDATE, _order_row()) == 0
    assert rows == []


async def test_reconnect_callback_fires_only_on_recovery(feed):
    calls = []
    handle = subscribe_to_order_updates(feed, 1, lambda row: None, lambda: calls.append("resync"),
                                        poll_interval=60)
    assert handle.status == ConnectionStatus.CONNECTED
    assert handle.check_status() == ConnectionStatus.CONNECTED
    await asyncio.sleep(0)
    assert calls == []

    feed.disconnect()
    assert handle.check_status() == ConnectionStatus.CONNECTING
    feed.reconnect()
    assert handle.check_status() == ConnectionStatus.CONNECTED
    await asyncio.sleep(0)

    assert calls == ["resync"]
    assert handle.reconnect_attempts == 1
    unsubscribe(handle)


async def test_error_then_recovery(feed):
    calls = []

    async def resync():
        calls.append("resync")

    handle = subscribe_to_order_updates(feed, 1, lambda row: None, resync, poll_interval=60)
    feed.disconnect(error=True)
    assert handle.check_status() == ConnectionStatus.ERROR
    assert await feed.publish("orders", UPDATE, _order_row()) == 0

    feed.reconnect()
    handle.check_status()
    await asyncio.sleep(0)
    assert calls == ["resync"]
    unsubscribe(handle)


async def test_failing_reconnect_callback_is_contained(feed):
    def resync():
        raise RuntimeError("refetch failed")

    handle = subscribe_to_order_updates(feed, 1, lambda row: None, resync, poll_interval=60)
    feed.disconnect()
    handle.check_status()
    feed.reconnect()
    assert handle.check_status() == ConnectionStatus.CONNECTED
    await asyncio.sleep(0)
    assert handle.status == ConnectionStatus.CONNECTED
    unsubscribe(handle)


async def test_poller_picks_up_state_changes(feed):
    calls = []
    handle = subscribe_to_order_updates(feed, 1, lambda row: None, lambda: calls.append(1), poll_interval=0.01)
    feed.disconnect()
    await asyncio.sleep(0.05)
    assert handle.status == ConnectionStatus.CONNECTING
    feed.reconnect()
    await asyncio.sleep(0.05)
    assert handle.status == ConnectionStatus.CONNECTED
    assert calls == [1]
    unsubscribe(handle)


async def test_closed_feed_delivers_nothing():
    feed = ChangeFeed()
    rows = []
    handle = subscribe(feed, ChannelFilter("orders"), rows.append, poll_interval=60)
    await feed.close()

    assert await feed.publish("orders", UPDATE, _order_row()) == 0
    assert rows == []
    assert handle.check_status() == ConnectionStatus.DISCONNECTED
    unsubscribe(handle)


async def test_publish_order_projection(feed):
    rows = []
    handle = subscribe_to_order_updates(feed, 3, rows.append, poll_interval=60)
    order = SimpleNamespace(id=7, order_number="SF1", user_id=3, status="shipped",
                            tracking_number="TRK1", updated_at=None)

    await publish_order(feed, order)
    await publish_order(None, order)

    assert rows == [order_update(order)]
    assert rows[0]["tracking_number"] == "TRK1"
    unsubscribe(handle)


async def test_slow_handler_is_cut_off_and_others_still_receive():
    feed = ChangeFeed(handler_timeout=0.05)
    rows = []

    async def stuck(row):
        await asyncio.sleep(30)

    first = subscribe_to_order_updates(feed, 1, stuck, poll_interval=60)
    second = subscribe_to_order_updates(feed, 1, rows.append, poll_interval=60)

    delivered = await asyncio.wait_for(feed.publish("orders", UPDATE, _order_row()), timeout=5)

    assert delivered == 2
    assert rows == [_order_row()]
    unsubscribe(first)
    unsubscribe(second)
    await feed.close()


async def test_socket_user_lookup_uses_its_own_short_session(monkeypatch, session_maker, user):
    opened = []

    def tracking_maker():
        s = session_maker()
        opened.append(s)
        return s

    monkeypatch.setattr(realtime, "async_session_maker", tracking_maker)

    assert await realtime.socket_user_id(create_access_token({"sub": user.email})) == user.id
    assert await realtime.socket_user_id("not-a-token") is None
    assert await realtime.socket_user_id(None) is None

    assert len(opened) == 3
    # closed again before any streaming would start
    assert not any(s.in_transaction() for s in opened)
