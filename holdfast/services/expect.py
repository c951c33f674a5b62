# holdfast/services/expect.py
"""
Console output matching.

A channel feeds decoded console output into an ExpectMatcher. Callers wait
for one of several candidate strings (case-insensitive substrings, or
compiled regexes) to show up within a deadline. Line listeners are invoked
for every complete line containing one of their trigger strings, which is
how player login/logout events are picked up.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Pattern, Sequence, Tuple, Type, Union

from holdfast.core.config import TRACE
from holdfast.core.errors import DockerConnectPermissionError, HoldfastError

logger = logging.getLogger(__name__)

Candidate = Union[str, Pattern[str]]
LineHandler = Callable[[str], None]

# Phrases that always fail an expect() call, whatever the caller was waiting for
KNOWN_ERRORS: List[Tuple[str, Type[HoldfastError]]] = [
    ("Got permission denied while trying to connect to the Docker daemon", DockerConnectPermissionError),
]

MAX_BUFFER_CHARS = 256 * 1024


@dataclass
class MatchResult:
    """Outcome of an expect() call. index is None on timeout."""
    index: Optional[int] = None
    text: str = ""

    @property
    def matched(self) -> bool:
        return self.index is not None


@dataclass
class _Listener:
    triggers: Tuple[str, ...]
    handler: LineHandler


def _matches(candidate: Candidate, text: str) -> Optional[str]:
    if isinstance(candidate, str):
        return candidate if candidate.lower() in text.lower() else None
    found = candidate.search(text)
    return found.group(0) if found else None


class ExpectMatcher:
    def __init__(self, name: str = "", logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self._buffer = ""
        self._offset = 0  # absolute position of _buffer[0]
        self._pending_line = ""
        self._event = asyncio.Event()
        self._listeners: List[_Listener] = []

    # ==========================================
    # Producer side
    # ==========================================

    def feed(self, text: str):
        """Append console output. Must be called from the event loop thread."""
        if not text:
            return

        self._buffer += text
        overflow = len(self._buffer) - MAX_BUFFER_CHARS
        if overflow > 0:
            self._buffer = self._buffer[overflow:]
            self._offset += overflow

        self._pending_line += text
        *lines, self._pending_line = self._pending_line.split("\n")
        for line in lines:
            self._dispatch_line(line.rstrip("\r"))

        self._event.set()

    def _dispatch_line(self, line: str):
        self.logger.log(TRACE, "[%s] %s", self.name, line)
        lowered = line.lower()
        for listener in list(self._listeners):
            if any(trigger.lower() in lowered for trigger in listener.triggers):
                try:
                    listener.handler(line)
                except Exception as e:
                    self.logger.error("[%s] Line listener failed: %s", self.name, e)

    def add_listener(self, triggers: Sequence[str], handler: LineHandler) -> _Listener:
        listener = _Listener(triggers=tuple(triggers), handler=handler)
        self._listeners.append(listener)
        return listener

    def remove_listener(self, listener: _Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def clear(self):
        """Drop buffered output. Listeners stay registered."""
        self._offset += len(self._buffer)
        self._buffer = ""
        self._pending_line = ""

    # ==========================================
    # Consumer side
    # ==========================================

    def mark(self) -> int:
        """Position of the end of the output seen so far; pass to expect(since=...)."""
        return self._offset + len(self._buffer)

    def _text_since(self, position: int) -> str:
        return self._buffer[max(position - self._offset, 0):]

    def _check_known_errors(self):
        # Anything buffered since the last clear() counts, marks only narrow candidates
        lowered = self._buffer.lower()
        for phrase, error in KNOWN_ERRORS:
            if phrase.lower() in lowered:
                raise error()

    def _check(self, candidates: Sequence[Candidate], text: str) -> Optional[MatchResult]:
        self._check_known_errors()
        for index, candidate in enumerate(candidates):
            found = _matches(candidate, text)
            if found is not None:
                return MatchResult(index=index, text=found)
        return None

    async def expect(self, candidates: Sequence[Candidate], timeout: float,
                     since: Optional[int] = None) -> MatchResult:
        """
        Wait until output after `since` (default: now) contains one of the candidates.

        Returns the first matching candidate's index, or a MatchResult with no
        index once the timeout elapses. Raises if a known error phrase shows up.
        """
        start = self.mark() if since is None else since
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            result = self._check(candidates, self._text_since(start))
            if result is not None:
                return result

            remaining = deadline - loop.time()
            if remaining <= 0:
                self.logger.debug("[%s] Timed out after %.1fs waiting for %s", self.name, timeout, list(candidates))
                return MatchResult()

            self._event.clear()
            try:
                await asyncio.wait_for(self._event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
