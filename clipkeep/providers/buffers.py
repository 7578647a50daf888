"""
Buffer sources: the external shared text buffer the watcher polls.

- SystemClipboard: the OS clipboard via the platform's command line tools
- MemoryBuffer: an in-process buffer (tests, piping text in from the CLI)
"""

import hashlib
import logging
import platform
import shutil
import subprocess
import threading
from typing import Optional

from .base import get_registry

logger = logging.getLogger(__name__)


# Candidate read commands per platform, tried in order
_CLIPBOARD_COMMANDS = {
    "Darwin": [["pbpaste"]],
    "Linux": [
        ["wl-paste", "--no-newline"],
        ["xclip", "-selection", "clipboard", "-o"],
        ["xsel", "--clipboard", "--output"],
    ],
    "Windows": [["powershell", "-NoProfile", "-Command", "Get-Clipboard"]],
}


class SystemClipboard:
    """
    The system clipboard, read through pbpaste / wl-paste / xclip / xsel /
    powershell.

    None of these tools expose the OS change counter, so the counter here
    advances whenever the raw clipboard payload changes. The payload read
    by ``change_count()`` is cached and returned by ``read_text()``, so a
    poll tick runs one subprocess.
    """

    def __init__(self, command: Optional[list[str]] = None, timeout: float = 3.0):
        self._command = command or self._detect_command()
        self._timeout = timeout
        self._counter = 0
        self._last_digest: Optional[bytes] = None
        self._last_payload: Optional[bytes] = None
        self._lock = threading.Lock()

    @staticmethod
    def _detect_command() -> Optional[list[str]]:
        for cmd in _CLIPBOARD_COMMANDS.get(platform.system(), []):
            if shutil.which(cmd[0]):
                return cmd
        return None

    @property
    def available(self) -> bool:
        return self._command is not None

    def _read_payload(self) -> Optional[bytes]:
        if self._command is None:
            return None
        try:
            result = subprocess.run(
                self._command,
                capture_output=True,
                timeout=self._timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("Clipboard read failed (%s): %s", self._command[0], e)
            return None
        if result.returncode != 0:
            # xclip/wl-paste exit non-zero when the clipboard is empty or not text
            return None
        return result.stdout

    def change_count(self) -> int:
        payload = self._read_payload()
        digest = hashlib.blake2b(payload or b"", digest_size=16).digest()
        with self._lock:
            if digest != self._last_digest:
                self._last_digest = digest
                self._last_payload = payload
                self._counter += 1
            return self._counter

    def read_text(self) -> Optional[str]:
        with self._lock:
            payload = self._last_payload
        if not payload:
            return None
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            return None
        if self._command and self._command[0] == "powershell":
            text = text.replace("\r\n", "\n").rstrip("\n")
        return text or None

    def source_app(self) -> Optional[str]:
        # Command line clipboard tools do not report the owning application
        return None


class MemoryBuffer:
    """
    In-process buffer with an explicit change counter.

    ``set_text`` behaves like an application copying text; ``set_binary``
    like copying a non-text payload (image, file promise).
    """

    def __init__(self, text: Optional[str] = None, source_app: Optional[str] = None):
        self._lock = threading.Lock()
        self._text = text
        self._source_app = source_app
        self._counter = 0
        self.reads = 0

    def set_text(self, text: str, source_app: Optional[str] = None) -> None:
        with self._lock:
            self._text = text
            self._source_app = source_app
            self._counter += 1

    def set_binary(self, source_app: Optional[str] = None) -> None:
        with self._lock:
            self._text = None
            self._source_app = source_app
            self._counter += 1

    def clear(self) -> None:
        self.set_binary()

    def change_count(self) -> int:
        with self._lock:
            return self._counter

    def read_text(self) -> Optional[str]:
        with self._lock:
            self.reads += 1
            return self._text

    def source_app(self) -> Optional[str]:
        with self._lock:
            return self._source_app


# Register providers
_registry = get_registry()
_registry.register_buffer("system", SystemClipboard)
_registry.register_buffer("memory", MemoryBuffer)
