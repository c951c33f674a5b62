import asyncio
import socket
import struct
import threading

import pytest

from holdfast.core.errors import AuthenticationFailed, ChannelNotConnected
from holdfast.services.channels import RconChannel
from holdfast.services.rcon import RCONClient, strip_minecraft_colors

PASSWORD = "hunter2"


def _read_packet(conn):
    length = struct.unpack("<i", conn.recv(4))[0]
    data = b""
    while len(data) < length:
        data += conn.recv(length - len(data))
    request_id, packet_type = struct.unpack("<ii", data[:8])
    return request_id, packet_type, data[8:-2].decode("utf-8")


def _packet(request_id, packet_type, payload):
    body = payload.encode("utf-8") + b"\x00\x00"
    return struct.pack("<iii", 8 + len(body), request_id, packet_type) + body


class _FakeRconServer:
    """One-connection RCON server answering commands from a dict."""

    def __init__(self, replies):
        self.replies = replies
        self.commands = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(1)
        self.port = self.sock.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    def _serve(self):
        conn, _ = self.sock.accept()
        with conn:
            request_id, _, password = _read_packet(conn)
            conn.sendall(_packet(request_id, 0, ""))
            conn.sendall(_packet(request_id if password == PASSWORD else -1, 2, ""))
            if password != PASSWORD:
                return
            while True:
                try:
                    request_id, _, command = _read_packet(conn)
                except (struct.error, OSError):
                    return
                self.commands.append(command)
                conn.sendall(_packet(request_id, 0, self.replies.get(command, "")))

    def close(self):
        self.sock.close()


@pytest.fixture
def server():
    server = _FakeRconServer({"save-off": "§eAutomatic saving is now disabled"})
    yield server
    server.close()


def test_command_round_trip(server):
    with RCONClient("127.0.0.1", server.port, PASSWORD, timeout=2) as client:
        assert client.is_connected
        assert client.send_command("save-off") == "Automatic saving is now disabled"

    assert server.commands == ["save-off"]
    assert not client.is_connected


def test_wrong_password_raises(server):
    client = RCONClient("127.0.0.1", server.port, "wrong", timeout=2)

    with pytest.raises(AuthenticationFailed):
        client.connect()

    assert not client.is_connected


def test_send_before_connect_raises():
    with pytest.raises(ChannelNotConnected):
        RCONClient("127.0.0.1", 1, PASSWORD).send_command("list")


def test_channel_feeds_replies_into_matcher(server):
    channel = RconChannel("java", "127.0.0.1", server.port, PASSWORD)

    async def _run():
        await channel.start()
        mark = channel.matcher.mark()
        await channel.send_line("save-off")
        result = await channel.matcher.expect(["Automatic saving is now disabled"], timeout=1, since=mark)
        await channel.close()
        return result

    assert asyncio.run(_run()).matched
    assert server.commands == ["save-off"]


def test_strip_minecraft_colors():
    assert strip_minecraft_colors("§aThere are §l0§r players") == "There are 0 players"
