"""Tests for the buffer watcher and buffer sources."""

import subprocess
import threading
from unittest.mock import patch

import pytest

from clipkeep.providers.base import BufferSource
from clipkeep.providers.buffers import MemoryBuffer, SystemClipboard
from clipkeep.watcher import BufferWatcher, WatcherState, validate_interval


class BrokenBuffer:
    def change_count(self):
        raise OSError("pasteboard server died")

    def read_text(self):
        raise AssertionError("should not be read")

    def source_app(self):
        return None


class TestPoll:
    """Single ticks, driven by hand."""

    def test_new_text_emits_event(self, memory_buffer):
        watcher = BufferWatcher(memory_buffer)
        memory_buffer.set_text("copied text", source_app="com.example.Editor")
        event = watcher.poll()
        assert event.text == "copied text"
        assert event.source_app == "com.example.Editor"
        assert event.timestamp

    def test_unchanged_counter_skips_read(self, memory_buffer):
        watcher = BufferWatcher(memory_buffer)
        memory_buffer.set_text("copied text")
        watcher.poll()
        reads = memory_buffer.reads
        assert watcher.poll() is None
        assert memory_buffer.reads == reads

    def test_same_content_suppressed(self, memory_buffer):
        watcher = BufferWatcher(memory_buffer)
        memory_buffer.set_text("again")
        assert watcher.poll() is not None
        memory_buffer.set_text("  again  ")
        assert watcher.poll() is None

    def test_same_content_allowed_when_not_suppressing(self, memory_buffer):
        watcher = BufferWatcher(memory_buffer, suppress_duplicates=False)
        memory_buffer.set_text("again")
        watcher.poll()
        memory_buffer.set_text("again")
        assert watcher.poll() is not None

    def test_only_last_content_compared(self, memory_buffer):
        watcher = BufferWatcher(memory_buffer)
        texts = []
        for text in ["a", "b", "a"]:
            memory_buffer.set_text(text)
            event = watcher.poll()
            texts.append(event.text if event else None)
        assert texts == ["a", "b", "a"]

    def test_non_text_payload_ignored(self, memory_buffer):
        watcher = BufferWatcher(memory_buffer)
        memory_buffer.set_binary()
        assert watcher.poll() is None

    def test_oversized_content_ignored(self, memory_buffer):
        watcher = BufferWatcher(memory_buffer, max_size=10)
        memory_buffer.set_text("x" * 11)
        assert watcher.poll() is None
        assert watcher.last_fingerprint is None

    def test_buffer_errors_swallowed(self):
        watcher = BufferWatcher(BrokenBuffer())
        assert watcher.poll() is None

    def test_handler_failure_does_not_stop_others(self, memory_buffer):
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        watcher = BufferWatcher(memory_buffer)
        watcher.add_handler(broken)
        watcher.add_handler(received.append)
        memory_buffer.set_text("hello")
        assert watcher.poll() is not None
        assert [e.text for e in received] == ["hello"]

    def test_remove_handler(self, memory_buffer):
        received = []
        watcher = BufferWatcher(memory_buffer)
        watcher.add_handler(received.append)
        watcher.remove_handler(received.append)
        memory_buffer.set_text("hello")
        watcher.poll()
        assert received == []


class TestInterval:
    @pytest.mark.parametrize("value", [0.1, 0.5, 5.0])
    def test_valid(self, value):
        assert validate_interval(value) == value

    @pytest.mark.parametrize("value", [0.0, 0.05, 5.01, -1])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            validate_interval(value)

    def test_setter_validates(self, memory_buffer):
        watcher = BufferWatcher(memory_buffer)
        watcher.interval = 1.0
        assert watcher.interval == 1.0
        with pytest.raises(ValueError):
            watcher.interval = 10.0

    def test_constructor_validates(self, memory_buffer):
        with pytest.raises(ValueError):
            BufferWatcher(memory_buffer, interval=0.01)


class TestLifecycle:
    """Start, stop and the background poller."""

    def test_existing_content_not_captured(self, memory_buffer):
        memory_buffer.set_text("was here before")
        watcher = BufferWatcher(memory_buffer, interval=5.0)
        watcher.start()
        try:
            assert watcher.poll() is None
        finally:
            watcher.stop(timeout=5.0)

    def test_state_transitions_idempotent(self, memory_buffer):
        watcher = BufferWatcher(memory_buffer, interval=5.0)
        assert watcher.state is WatcherState.STOPPED
        watcher.start()
        watcher.start()
        assert watcher.running
        watcher.stop(timeout=5.0)
        watcher.stop(timeout=5.0)
        assert watcher.state is WatcherState.STOPPED

    def test_background_capture(self, memory_buffer):
        captured = threading.Event()
        received = []

        def handler(event):
            received.append(event.text)
            captured.set()

        watcher = BufferWatcher(memory_buffer, interval=0.1)
        watcher.add_handler(handler)
        watcher.start()
        try:
            memory_buffer.set_text("live copy")
            assert captured.wait(5.0)
        finally:
            watcher.stop(timeout=5.0)
        assert received == ["live copy"]


class TestMemoryBuffer:
    def test_counter_advances(self):
        buffer = MemoryBuffer()
        assert buffer.change_count() == 0
        buffer.set_text("a")
        buffer.set_text("a")
        assert buffer.change_count() == 2
        buffer.clear()
        assert buffer.read_text() is None

    def test_satisfies_protocol(self):
        assert isinstance(MemoryBuffer(), BufferSource)


class TestSystemClipboard:
    """OS clipboard through a command line tool (subprocess mocked)."""

    def _result(self, stdout=b"", returncode=0):
        return subprocess.CompletedProcess(args=["paste"], returncode=returncode, stdout=stdout)

    def test_counter_follows_payload(self):
        clipboard = SystemClipboard(command=["paste"])
        with patch("clipkeep.providers.buffers.subprocess.run") as run:
            run.return_value = self._result(b"one")
            first = clipboard.change_count()
            assert clipboard.change_count() == first
            run.return_value = self._result(b"two")
            assert clipboard.change_count() == first + 1
        assert clipboard.read_text() == "two"

    def test_non_utf8_is_not_text(self):
        clipboard = SystemClipboard(command=["paste"])
        with patch("clipkeep.providers.buffers.subprocess.run",
                   return_value=self._result(b"\xff\xfe\x00")):
            clipboard.change_count()
        assert clipboard.read_text() is None

    def test_tool_failure_is_empty(self):
        clipboard = SystemClipboard(command=["paste"])
        with patch("clipkeep.providers.buffers.subprocess.run",
                   return_value=self._result(b"", returncode=1)):
            clipboard.change_count()
        assert clipboard.read_text() is None

    def test_timeout_is_empty(self):
        clipboard = SystemClipboard(command=["paste"])
        with patch("clipkeep.providers.buffers.subprocess.run",
                   side_effect=subprocess.TimeoutExpired("paste", 3.0)):
            clipboard.change_count()
        assert clipboard.read_text() is None

    def test_no_tool_available(self):
        with patch("clipkeep.providers.buffers.shutil.which", return_value=None):
            clipboard = SystemClipboard()
        assert not clipboard.available
        clipboard.change_count()
        assert clipboard.read_text() is None
        assert clipboard.source_app() is None
