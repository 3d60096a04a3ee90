from __future__ import annotations

import logging
import platform
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

import pyperclip

from .errors import ClipboardAccessError
from .store.types import ContentType

logger = logging.getLogger(__name__)

ACTIVE_APP_TIMEOUT_S = 1.0


@dataclass(frozen=True)
class ClipboardContent:
    content: str
    content_type: ContentType = ContentType.TEXT


def classify_content(content: str, declared: ContentType = ContentType.TEXT) -> ContentType:
    """Refine a declared type by looking at the payload."""

    if declared is ContentType.TEXT and "<" in content and ">" in content:
        if "<html" in content.lower():
            return ContentType.HTML
    return declared


class ClipboardBackend(ABC):
    @abstractmethod
    def read(self) -> ClipboardContent | None:
        """Current clipboard payload, or None when the clipboard holds nothing usable."""

    @abstractmethod
    def write(self, content: ClipboardContent) -> None:
        pass

    def active_application(self) -> str | None:
        return None


class SystemClipboard(ClipboardBackend):
    """Text clipboard of the running desktop session, via pyperclip."""

    def __init__(self) -> None:
        self.system = platform.system()

    def read(self) -> ClipboardContent | None:
        try:
            text = pyperclip.paste()
        except pyperclip.PyperclipException as exc:
            raise ClipboardAccessError(f"clipboard read failed: {exc}") from exc
        if text is None:
            return None
        return ClipboardContent(content=str(text), content_type=ContentType.TEXT)

    def write(self, content: ClipboardContent) -> None:
        try:
            pyperclip.copy(content.content)
        except pyperclip.PyperclipException as exc:
            raise ClipboardAccessError(f"clipboard write failed: {exc}") from exc

    def active_application(self) -> str | None:
        if self.system == "Darwin":
            output = _run_command(["lsappinfo", "front"])
            if output is None:
                return None
            asn = output.strip()
            if not asn:
                return None
            info = _run_command(["lsappinfo", "info", "-only", "name", asn])
            return _parse_quoted(info) if info else None
        if self.system == "Linux":
            output = _run_command(["xdotool", "getactivewindow", "getwindowclassname"])
            name = (output or "").strip()
            return name or None
        return None


class MemoryClipboard(ClipboardBackend):
    """In-process clipboard for tests and headless sessions."""

    def __init__(
        self,
        content: str | None = None,
        *,
        content_type: ContentType = ContentType.TEXT,
        application: str | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._content = (
            ClipboardContent(content=content, content_type=content_type)
            if content is not None
            else None
        )
        self._application = application
        self.reads = 0
        self.writes = 0
        self.fail_reads = False

    def read(self) -> ClipboardContent | None:
        with self._lock:
            self.reads += 1
            if self.fail_reads:
                raise ClipboardAccessError("clipboard read failed")
            return self._content

    def write(self, content: ClipboardContent) -> None:
        with self._lock:
            self.writes += 1
            self._content = content

    def set(
        self,
        content: str,
        *,
        content_type: ContentType = ContentType.TEXT,
        application: str | None = None,
    ) -> None:
        """Simulate another application copying ``content``."""

        with self._lock:
            self._content = ClipboardContent(content=content, content_type=content_type)
            self._application = application

    def active_application(self) -> str | None:
        with self._lock:
            return self._application


def get_clipboard(backend: str | None = None) -> ClipboardBackend:
    if backend == "memory":
        return MemoryClipboard()
    if backend not in (None, "", "system"):
        raise ValueError(f"unknown clipboard backend: {backend}")
    return SystemClipboard()


def _run_command(cmd: list[str]) -> str | None:
    if not shutil.which(cmd[0]):
        return None
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=ACTIVE_APP_TIMEOUT_S,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("%s failed", cmd[0], exc_info=exc)
        return None
    if result.returncode != 0:
        return None
    return result.stdout


def _parse_quoted(text: str) -> str | None:
    # lsappinfo prints `"LSDisplayName"="Safari"`; the last quoted value is the name.
    parts = text.split('"')
    values = [part for index, part in enumerate(parts) if index % 2 == 1]
    if not values:
        return None
    name = values[-1].strip()
    return name or None
