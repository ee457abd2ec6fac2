"""Shared socket doubles for the FTP tests.

``ScriptedSocket`` plays the console's control connection: every command
written to it queues the canned reply registered for its verb.  With nothing
queued, ``recv`` times out the way a quiet server does.
"""

from __future__ import annotations

import socket
from typing import Iterable

import pytest

DEFAULT_REPLIES: dict[str, bytes | list[bytes]] = {
    "USER": b"230 Anonymous ok\r\n",
    "PASS": b"230 Logged in\r\n",
    "TYPE": b"200 Type set to I\r\n",
    "PASV": b"227 Entering Passive Mode (127,0,0,1,19,136)\r\n",
    "STOR": b"226 Transfer complete\r\n",
    "DELE": b"550 No such file\r\n",
    "MKD": b"257 Created\r\n",
    "CWD": b"250 Directory changed\r\n",
    "LIST": b"150 Opening data connection\r\n226 Transfer complete\r\n",
}


class ScriptedSocket:
    """Control-socket double with per-verb canned replies."""

    def __init__(
        self,
        greeting: bytes = b"220 Welcome\r\n",
        replies: dict[str, bytes | list[bytes]] | None = None,
    ) -> None:
        self.pending = bytearray(greeting)
        merged = dict(DEFAULT_REPLIES)
        merged.update(replies or {})
        self.replies = {
            verb: list(reply) if isinstance(reply, list) else [reply]
            for verb, reply in merged.items()
        }
        self.sent: list[str] = []
        self.timeouts: list[float | None] = []
        self.closed = False

    def settimeout(self, value: float | None) -> None:
        self.timeouts.append(value)

    def sendall(self, data: bytes) -> None:
        line = data.decode("utf-8")
        assert line.endswith("\n")
        line = line[:-1]
        self.sent.append(line)
        queue = self.replies.get(line.split(" ", 1)[0])
        if queue:
            # The last reply for a verb is sticky.
            reply = queue.pop(0) if len(queue) > 1 else queue[0]
            self.pending.extend(reply)

    def recv(self, size: int) -> bytes:
        if not self.pending:
            raise socket.timeout("timed out")
        chunk = bytes(self.pending[:size])
        del self.pending[:size]
        return chunk

    def shutdown(self, how: int) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    def verbs(self) -> list[str]:
        return [line.split(" ", 1)[0] for line in self.sent]


class DataSocket:
    """Passive data-socket double: serves *payload* then EOF, records writes."""

    def __init__(self, payload: bytes = b"") -> None:
        self.payload = bytearray(payload)
        self.received = bytearray()
        self.closed = False
        self.shut_down = False

    def settimeout(self, value: float | None) -> None:
        pass

    def recv(self, size: int) -> bytes:
        chunk = bytes(self.payload[:size])
        del self.payload[:size]
        return chunk

    def sendall(self, data: bytes) -> None:
        self.received.extend(data)

    def shutdown(self, how: int) -> None:
        self.shut_down = True

    def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Hands out the control socket first, then data sockets in order."""

    def __init__(self, control: ScriptedSocket, data: Iterable[DataSocket] = ()) -> None:
        self.control = control
        self.data = list(data)
        self.addresses: list[tuple] = []

    def __call__(self, address: tuple, timeout: float | None) -> object:
        self.addresses.append(address)
        if len(self.addresses) == 1:
            return self.control
        if not self.data:
            raise ConnectionRefusedError("no data socket scripted")
        return self.data.pop(0)


@pytest.fixture()
def control_socket() -> ScriptedSocket:
    return ScriptedSocket()
