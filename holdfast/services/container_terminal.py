# holdfast/services/container_terminal.py
"""
Autosave pause/resume over a server console.

Bedrock and Java servers use different console commands to hold their
autosave while the world files are copied. Each flavor is a small class
with pause_autosave()/resume_autosave(), both built on send_and_expect().
"""

import logging
from enum import Enum
from typing import Optional, Sequence

from holdfast.core.errors import PauseFailed, ResumeFailed, SaveNotCompleted
from holdfast.services.channels import TerminalChannel
from holdfast.services.expect import Candidate, MatchResult

logger = logging.getLogger(__name__)


class ContainerKind(str, Enum):
    BEDROCK = "bedrock"
    JAVA = "java"


async def send_and_expect(channel: TerminalChannel, command: str,
                          candidates: Sequence[Candidate], timeout: float) -> MatchResult:
    """Send one console command and wait for a response that was printed after it."""
    mark = channel.matcher.mark()
    await channel.send_line(command)
    return await channel.matcher.expect(candidates, timeout=timeout, since=mark)


class BedrockTerminal:
    HOLD_TIMEOUT = 10
    QUERY_TIMEOUT = 10
    QUERY_ATTEMPTS = 3
    RESUME_TIMEOUT = 60

    def __init__(self, channel: TerminalChannel, logger: Optional[logging.Logger] = None):
        self.channel = channel
        self.logger = logger or logging.getLogger(__name__)

    async def pause_autosave(self):
        self.logger.debug("[%s] Pausing autosave", self.channel.name)
        result = await send_and_expect(
            self.channel, "save hold", ["Saving", "The command is already running"], self.HOLD_TIMEOUT
        )
        if not result.matched:
            raise PauseFailed()

        for attempt in range(1, self.QUERY_ATTEMPTS + 1):
            result = await send_and_expect(
                self.channel, "save query", ["Files are now ready to be copied"], self.QUERY_TIMEOUT
            )
            if result.matched:
                self.logger.debug("[%s] Save flushed to disk", self.channel.name)
                return
            self.logger.debug("[%s] Save not ready yet (attempt %d of %d)",
                              self.channel.name, attempt, self.QUERY_ATTEMPTS)
        raise SaveNotCompleted()

    async def resume_autosave(self):
        self.logger.debug("[%s] Resuming autosave", self.channel.name)
        result = await send_and_expect(
            self.channel,
            "save resume",
            [
                "Changes to the level are resumed",
                "Changes to the world are resumed",
                "A previous save has not been completed",
            ],
            self.RESUME_TIMEOUT,
        )
        if not result.matched:
            raise ResumeFailed()


class JavaTerminal:
    FLUSH_TIMEOUT = 30
    SAVE_OFF_TIMEOUT = 10
    RESUME_TIMEOUT = 60

    def __init__(self, channel: TerminalChannel, logger: Optional[logging.Logger] = None):
        self.channel = channel
        self.logger = logger or logging.getLogger(__name__)

    async def pause_autosave(self):
        self.logger.debug("[%s] Flushing and pausing autosave", self.channel.name)
        result = await send_and_expect(self.channel, "save-all flush", ["Saved the game"], self.FLUSH_TIMEOUT)
        if not result.matched:
            raise PauseFailed()

        result = await send_and_expect(
            self.channel, "save-off", ["Automatic saving is now disabled"], self.SAVE_OFF_TIMEOUT
        )
        if not result.matched:
            raise PauseFailed()

    async def resume_autosave(self):
        self.logger.debug("[%s] Resuming autosave", self.channel.name)
        result = await send_and_expect(
            self.channel,
            "save-on",
            ["Automatic saving is now enabled", "Saving is already turned on"],
            self.RESUME_TIMEOUT,
        )
        if not result.matched:
            raise ResumeFailed()


def make_terminal(kind: ContainerKind, channel: TerminalChannel, logger: Optional[logging.Logger] = None):
    if kind == ContainerKind.BEDROCK:
        return BedrockTerminal(channel, logger)
    return JavaTerminal(channel, logger)
