# holdfast/services/rcon.py
"""
Minecraft RCON Protocol Client

Handles:
- RCON connection and authentication
- Command execution (blocking, run from a worker thread by RconChannel)
- Minecraft color code stripping
"""

import logging
import re
import socket
import struct
from typing import Optional, Tuple

from holdfast.core.errors import AuthenticationFailed, ChannelNotConnected, TransportError

logger = logging.getLogger(__name__)


def strip_minecraft_colors(text: str) -> str:
    """Strip Minecraft color/formatting codes (§X) from text"""
    return re.sub(r'§.', '', text)


class RCONClient:
    """Minecraft RCON protocol client"""

    SERVERDATA_AUTH = 3
    SERVERDATA_AUTH_RESPONSE = 2
    SERVERDATA_EXECCOMMAND = 2
    SERVERDATA_RESPONSE_VALUE = 0
    MAX_PACKET_SIZE = 4096  # Standard RCON max packet size

    def __init__(self, host: str, port: int, password: str, timeout: float = 10.0):
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout
        self.socket: Optional[socket.socket] = None
        self.request_id = 0

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False

    @property
    def is_connected(self) -> bool:
        return self.socket is not None

    def _pack_packet(self, packet_type: int, payload: str) -> bytes:
        self.request_id += 1
        payload_bytes = payload.encode("utf-8") + b"\x00\x00"
        length = 4 + 4 + len(payload_bytes)
        return struct.pack("<iii", length, self.request_id, packet_type) + payload_bytes

    def _recv_exact(self, count: int) -> bytes:
        data = b""
        while len(data) < count:
            chunk = self.socket.recv(count - len(data))
            if not chunk:
                raise TransportError("RCON connection lost")
            data += chunk
        return data

    def _read_packet(self) -> Tuple[int, int, str]:
        length = struct.unpack("<i", self._recv_exact(4))[0]
        if length < 10 or length > self.MAX_PACKET_SIZE:
            raise TransportError(f"RCON packet size out of bounds: {length}")

        data = self._recv_exact(length)
        request_id, packet_type = struct.unpack("<ii", data[0:8])
        payload = data[8:-2].decode("utf-8", errors="replace")
        return request_id, packet_type, payload

    def connect(self):
        """Connect and authenticate. Raises AuthenticationFailed on a rejected password."""
        try:
            self.socket = socket.create_connection((self.host, self.port), timeout=self.timeout)
            self.socket.sendall(self._pack_packet(self.SERVERDATA_AUTH, self.password))

            # Some servers send an empty RESPONSE_VALUE ahead of the auth response
            request_id, packet_type, _ = self._read_packet()
            if packet_type == self.SERVERDATA_RESPONSE_VALUE:
                request_id, packet_type, _ = self._read_packet()
        except OSError as e:
            self.disconnect()
            raise TransportError(f"RCON connection to {self.host}:{self.port} failed: {e}")
        except TransportError:
            self.disconnect()
            raise

        # Auth failure returns -1
        if request_id == -1:
            self.disconnect()
            raise AuthenticationFailed()
        logger.debug("[RCON] Authenticated with %s:%s", self.host, self.port)

    def send_command(self, command: str) -> str:
        """Send a command and get response"""
        if not self.socket:
            raise ChannelNotConnected()

        try:
            self.socket.sendall(self._pack_packet(self.SERVERDATA_EXECCOMMAND, command))
            _, _, payload = self._read_packet()
        except OSError as e:
            self.disconnect()
            raise TransportError(f"RCON command failed: {e}")
        return strip_minecraft_colors(payload)

    def disconnect(self):
        if self.socket:
            try:
                self.socket.close()
            except OSError:
                pass
            self.socket = None
