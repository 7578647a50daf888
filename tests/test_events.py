"""Tests for the typed event channel."""

import threading

import pytest

from clipkeep.events import EventChannel, ItemCaptured, ItemIndexed, SearchCompleted
from clipkeep.types import CapturedItem


class TestEventChannel:
    def test_fan_out(self):
        channel = EventChannel()
        first = channel.subscribe()
        second = channel.subscribe()
        channel.publish(ItemIndexed("x"))
        assert first.drain() == [ItemIndexed("x")]
        assert second.drain() == [ItemIndexed("x")]

    def test_order_preserved(self):
        channel = EventChannel()
        sub = channel.subscribe()
        item = CapturedItem.create("hello")
        channel.publish(ItemCaptured(item))
        channel.publish(ItemIndexed(item.id, None))
        channel.publish(SearchCompleted("hello", ()))
        kinds = [type(e) for e in sub.drain()]
        assert kinds == [ItemCaptured, ItemIndexed, SearchCompleted]

    def test_full_buffer_drops_oldest(self):
        channel = EventChannel()
        sub = channel.subscribe(buffer_size=2)
        for i in range(5):
            channel.publish(ItemIndexed(str(i)))
        assert [e.item_id for e in sub.drain()] == ["3", "4"]
        assert sub.dropped == 3

    def test_get_timeout(self):
        sub = EventChannel().subscribe()
        assert sub.get(timeout=0.01) is None

    def test_get_wakes_on_publish(self):
        channel = EventChannel()
        sub = channel.subscribe()
        timer = threading.Timer(0.05, channel.publish, args=(ItemIndexed("late"),))
        timer.start()
        try:
            assert sub.get(timeout=5.0) == ItemIndexed("late")
        finally:
            timer.cancel()

    def test_closed_subscription_stops_receiving(self):
        channel = EventChannel()
        with channel.subscribe() as sub:
            assert channel.subscriber_count == 1
        assert channel.subscriber_count == 0
        channel.publish(ItemIndexed("x"))
        assert sub.drain() == []

    def test_publish_without_subscribers(self):
        EventChannel().publish(ItemIndexed("nobody listening"))

    def test_channel_close(self):
        channel = EventChannel()
        sub = channel.subscribe()
        channel.close()
        assert sub.closed
        assert sub.get(timeout=0.01) is None

    def test_invalid_buffer_size(self):
        with pytest.raises(ValueError):
            EventChannel(buffer_size=0)
