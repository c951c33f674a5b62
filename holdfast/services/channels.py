# holdfast/services/channels.py
"""
Terminal channels to a server console.

Three transports share one interface:
- ProcessChannel: a local process (e.g. `docker attach`) under a pseudo-terminal
- RconChannel: the native RCON protocol, responses fed into the same buffer
- SecureShellChannel: an interactive shell over SSH (paramiko)

Every channel owns an ExpectMatcher that receives its console output.
"""

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import struct
import termios
from abc import ABC, abstractmethod
from typing import List, Optional

import paramiko

from holdfast.core.config import TRACE
from holdfast.core.errors import (
    AuthenticationFailed,
    ChannelNotConnected,
    HoldfastError,
    TransportError,
    UnsupportedChannelType,
)
from holdfast.services.expect import ExpectMatcher
from holdfast.services.rcon import RCONClient
from holdfast.services.ssh_host_keys import SSHHostKeyValidator, TrustOnFirstUsePolicy

logger = logging.getLogger(__name__)

# Wide enough that the server never wraps a console line
TERMINAL_COLUMNS = 65000
TERMINAL_ROWS = 24

READ_CHUNK = 4096


class TerminalChannel(ABC):
    """Duplex text stream to a server console."""

    newline = "\n"

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.matcher = ExpectMatcher(name=name, logger=self.logger)
        # Reads can split a multi-byte character
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def start(self):
        ...

    @abstractmethod
    async def close(self):
        ...

    @abstractmethod
    async def _write(self, data: bytes):
        ...

    async def reset(self):
        """Tear down any session and forget buffered output so the next start() is fresh."""
        await self.close()
        self.matcher.clear()
        self._decoder.reset()

    def _feed_bytes(self, data: bytes):
        self.matcher.feed(self._decoder.decode(data))

    async def send_line(self, line: str):
        if not self.is_connected:
            raise ChannelNotConnected(f"[{self.name}] Terminal channel is not connected")
        self.logger.log(TRACE, "[%s] >> %s", self.name, line)
        await self._write((line + self.newline).encode("utf-8"))


# ==========================================
# Local process under a pseudo-terminal
# ==========================================

class ProcessChannel(TerminalChannel):
    def __init__(self, name: str, args: List[str], logger: Optional[logging.Logger] = None):
        super().__init__(name, logger)
        self.args = list(args)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._master_fd: Optional[int] = None

    @property
    def is_connected(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self):
        if self.is_connected:
            return
        # drop the pty of a previous process that exited on its own
        await self.close()

        master_fd, slave_fd = pty.openpty()
        fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, struct.pack("HHHH", TERMINAL_ROWS, TERMINAL_COLUMNS, 0, 0))
        attrs = termios.tcgetattr(slave_fd)
        attrs[3] &= ~termios.ECHO
        termios.tcsetattr(slave_fd, termios.TCSANOW, attrs)

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.args,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
            )
        except OSError as e:
            os.close(master_fd)
            raise TransportError(f"[{self.name}] Unable to launch {self.args[0]}: {e}")
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        self._master_fd = master_fd
        asyncio.get_running_loop().add_reader(master_fd, self._on_readable)
        self.logger.debug("[%s] Started %s (pid %s)", self.name, " ".join(self.args), self._process.pid)

    def _on_readable(self):
        try:
            data = os.read(self._master_fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the child side of the pty is gone
            data = b""

        if not data:
            asyncio.get_running_loop().remove_reader(self._master_fd)
            self.logger.debug("[%s] Console output closed", self.name)
            return
        self._feed_bytes(data)

    async def _write(self, data: bytes):
        os.write(self._master_fd, data)

    async def close(self):
        process, self._process = self._process, None
        if self._master_fd is not None:
            asyncio.get_running_loop().remove_reader(self._master_fd)

        if process is not None and process.returncode is None:
            # docker attach with --sig-proxy=false detaches on SIGTERM, the server keeps running
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                self.logger.warning("[%s] Process did not exit, killing it", self.name)
                process.kill()
                await process.wait()

        if self._master_fd is not None:
            os.close(self._master_fd)
            self._master_fd = None


# ==========================================
# RCON
# ==========================================

class RconChannel(TerminalChannel):
    """
    Console access over RCON.

    RCON is request/response only, so each command's reply is pushed into
    the matcher as if the console had printed it. Unsolicited output (player
    joins and leaves) is never seen over this transport.
    """

    def __init__(self, name: str, host: str, port: int, password: str,
                 logger: Optional[logging.Logger] = None):
        super().__init__(name, logger)
        self.client = RCONClient(host, port, password)
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.client.is_connected

    async def start(self):
        if self.is_connected:
            return
        await asyncio.to_thread(self.client.connect)
        self.logger.debug("[%s] RCON connected to %s:%s", self.name, self.client.host, self.client.port)

    async def _write(self, data: bytes):
        command = data.decode("utf-8").rstrip(self.newline)
        async with self._lock:
            response = await asyncio.to_thread(self.client.send_command, command)
        self.matcher.feed(response + "\n")

    async def close(self):
        await asyncio.to_thread(self.client.disconnect)


# ==========================================
# SSH
# ==========================================

class SecureShellChannel(TerminalChannel):
    newline = "\r\n"

    def __init__(self, name: str, host: str, port: int, username: str, password: str,
                 host_keys: SSHHostKeyValidator, logger: Optional[logging.Logger] = None):
        super().__init__(name, logger)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.host_keys = host_keys
        self._client: Optional[paramiko.SSHClient] = None
        self._channel: Optional[paramiko.Channel] = None
        self._reader: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._channel is not None and not self._channel.closed

    def _connect(self):
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(TrustOnFirstUsePolicy(self.host_keys))
        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                look_for_keys=False,
                allow_agent=False,
                timeout=10,
            )
            channel = client.invoke_shell(term="xterm", width=TERMINAL_COLUMNS, height=TERMINAL_ROWS)
        except paramiko.AuthenticationException:
            client.close()
            raise AuthenticationFailed()
        except paramiko.ChannelException as e:
            client.close()
            if e.code == paramiko.common.OPEN_FAILED_UNKNOWN_CHANNEL_TYPE:
                raise UnsupportedChannelType()
            raise TransportError(f"SSH channel to {self.host}:{self.port} was refused: {e}")
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TransportError(f"SSH connection to {self.host}:{self.port} failed: {e}")
        except HoldfastError:
            client.close()
            raise
        return client, channel

    async def start(self):
        if self.is_connected:
            return
        self._client, self._channel = await asyncio.to_thread(self._connect)
        self._reader = asyncio.create_task(self._pump(self._channel))
        self.logger.debug("[%s] SSH console open on %s:%s", self.name, self.host, self.port)

    async def _pump(self, channel: paramiko.Channel):
        while True:
            data = await asyncio.to_thread(channel.recv, READ_CHUNK)
            if not data:
                self.logger.debug("[%s] SSH console closed by remote", self.name)
                return
            self._feed_bytes(data)

    async def _write(self, data: bytes):
        await asyncio.to_thread(self._channel.sendall, data)

    async def close(self):
        channel, self._channel = self._channel, None
        client, self._client = self._client, None
        if channel is not None:
            channel.close()
        if client is not None:
            await asyncio.to_thread(client.close)
        if self._reader is not None:
            # recv() returns b"" once the channel is closed
            await self._reader
            self._reader = None
