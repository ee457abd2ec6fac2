"""FTP control and passive data channels for skyport.

Implements only the command subset the console's FTP server needs for an
anonymous upload: a line-oriented control channel with status
classification, and single-use passive-mode data channels.  Everything here
is blocking and meant to be driven from one thread per connection.
"""

from __future__ import annotations

import logging
import re
import socket
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

from skyport.errors import (
    ParseError,
    ProtocolError,
    TransportError,
    UnexpectedStatus,
    UnsafeArgumentError,
)
from skyport.utils.path_helpers import has_control_chars

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Protocol constants
# ---------------------------------------------------------------------------

DEFAULT_FTP_PORT = 5000
DEFAULT_TIMEOUT = 10.0  # seconds
DRAIN_TIMEOUT = 0.02  # seconds, used only while discarding stale status lines

COMMAND_TERMINATOR = b"\n"
STATUS_GREETING = 220
STATUS_PASSIVE = 227
STATUS_OPENING_DATA = 150

_RECV_SIZE = 4096
_PAREN_PAYLOAD = re.compile(r"\(([^)]*)\)")

Connector = Callable[[tuple, Optional[float]], socket.socket]


def _default_connector(address: tuple, timeout: float | None) -> socket.socket:
    return socket.create_connection(address, timeout=timeout)


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Response:
    """One parsed status reply."""

    code: int
    text: str

    @property
    def is_success(self) -> bool:
        return is_success(self.code)


@dataclass(frozen=True)
class PassiveAddress:
    """Host and port advertised by a ``227`` reply."""

    host: str
    port: int

    def as_tuple(self) -> tuple[str, int]:
        return (self.host, self.port)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


def is_success(code: int) -> bool:
    """Return True for codes that are "success enough to proceed".

    Accepts 200–299 and the ``150`` preliminary reply; every other code,
    including the remaining 1xx codes, is a failure.
    """
    return 200 <= code <= 299 or code == STATUS_OPENING_DATA


def parse_response(line: str) -> Response:
    """Split a status line into its numeric code and text.

    Raises:
        ProtocolError: The line does not start with a 3-digit code in
            100–599 followed by a space, a dash or the end of the line.
    """
    line = line.rstrip("\r\n")
    prefix = line[:3]
    if len(prefix) != 3 or not (prefix.isascii() and prefix.isdigit()):
        raise ProtocolError(f"Malformed status line: {line!r}")
    code = int(prefix)
    if not 100 <= code <= 599:
        raise ProtocolError(f"Status code out of range: {line!r}")
    if line[3:4] not in ("", " ", "-"):
        raise ProtocolError(f"Malformed status line: {line!r}")
    return Response(code=code, text=line[4:])


def decode_pasv(payload: str) -> PassiveAddress:
    """Decode the ``h1,h2,h3,h4,p1,p2`` address of a PASV reply.

    The tokens may be wrapped in parentheses and surrounded by chatter;
    non-digit characters are stripped from each token.  The port is
    ``p1 * 256 + p2``.

    Raises:
        ParseError: Fewer than six tokens, or a token that is not an octet.
    """
    match = _PAREN_PAYLOAD.search(payload)
    body = match.group(1) if match else payload
    tokens = ["".join(ch for ch in token if ch.isdigit()) for token in body.split(",")]
    if len(tokens) < 6:
        raise ParseError(f"PASV reply has {len(tokens)} tokens, expected 6: {payload!r}")
    try:
        octets = [int(token) for token in tokens[:6]]
    except ValueError as exc:
        raise ParseError(f"PASV reply has an empty token: {payload!r}") from exc
    if any(octet > 255 for octet in octets):
        raise ParseError(f"PASV reply token out of range: {payload!r}")
    host = ".".join(str(octet) for octet in octets[:4])
    port = (octets[4] << 8) + octets[5]
    return PassiveAddress(host=host, port=port)


def build_command(verb: str, argument: str | None = None) -> str:
    """Assemble one command line, refusing arguments that would corrupt it.

    Raises:
        UnsafeArgumentError: *verb* or *argument* contains NUL, CR or LF.
    """
    if has_control_chars(verb) or (argument is not None and has_control_chars(argument)):
        raise UnsafeArgumentError(f"Refusing to send {verb} with argument {argument!r}")
    if argument is None:
        return verb
    return f"{verb} {argument}"


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class ChannelState(Enum):
    """Lifecycle of a control connection."""

    DISCONNECTED = auto()
    CONNECTED = auto()
    AUTHENTICATED = auto()
    CLOSED = auto()


# ---------------------------------------------------------------------------
# ControlChannel
# ---------------------------------------------------------------------------


class ControlChannel:
    """A single text command/response connection to the console's FTP server.

    Keeps an explicit copy of the connection-local working directory in
    :attr:`cwd` (``None`` until a ``CWD`` succeeds), since that state lives
    on the server side and is lost when the connection closes.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_FTP_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        drain_timeout: float = DRAIN_TIMEOUT,
        connector: Connector | None = None,
    ) -> None:
        """Initialise connection parameters (does NOT connect yet).

        Args:
            host: IP address of the console.
            port: FTP control port (default 5000).
            timeout: Default read timeout for control and data sockets.
            drain_timeout: Short timeout used by :meth:`clear_pending`.
            connector: ``(address, timeout) -> socket`` factory; defaults to
                :func:`socket.create_connection`.
        """
        self.host = host
        self.port = port
        self.timeout = timeout
        self.drain_timeout = drain_timeout
        self._connector = connector or _default_connector

        self._sock: socket.socket | None = None
        self._buffer = bytearray()
        self._state = ChannelState.DISCONNECTED
        self._cwd: str | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def cwd(self) -> str | None:
        """Working directory last set with ``CWD`` on this connection."""
        return self._cwd

    @property
    def address(self) -> tuple[str, int]:
        return (self.host, self.port)

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def connect(self) -> "ControlChannel":
        """Open the control connection and require a ``220`` greeting.

        Raises:
            TransportError: The socket could not be opened or closed early.
            UnexpectedStatus: The greeting was not ``220``.
        """
        logger.info("Connecting to %s:%d", self.host, self.port)
        self._sock = self.open_socket(self.address)
        self._buffer.clear()
        self._cwd = None

        try:
            greeting = self.read_response()
        except (TransportError, ProtocolError):
            self.close()
            raise
        if greeting.code != STATUS_GREETING:
            self.close()
            raise UnexpectedStatus(greeting.code, greeting.text)

        self._state = ChannelState.CONNECTED
        logger.debug("Greeting from %s: %s", self.host, greeting.text)
        return self

    def authenticate(self, user: str, password: str) -> None:
        """Log in with ``USER``/``PASS``, failing fast on the first rejection."""
        self.command("USER", user)
        self.expect_success(operation="authentication")
        self.command("PASS", password)
        self.expect_success(operation="authentication")
        self._state = ChannelState.AUTHENTICATED
        logger.info("Logged in to %s as %s", self.host, user)

    def close(self) -> None:
        """Close the control socket; safe to call more than once."""
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError as exc:
                logger.debug("Error closing control socket: %s", exc)
            self._sock = None
        self._buffer.clear()
        self._cwd = None
        self._state = ChannelState.CLOSED

    def __enter__(self) -> "ControlChannel":
        if self._sock is None:
            self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def open_socket(self, address: tuple) -> socket.socket:
        """Open a stream socket to *address* using the configured connector."""
        try:
            sock = self._connector(address, self.timeout)
        except OSError as exc:
            raise TransportError(f"Could not connect to {address[0]}:{address[1]}: {exc}") from exc
        sock.settimeout(self.timeout)
        return sock

    # ------------------------------------------------------------------
    # Command / response
    # ------------------------------------------------------------------

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise TransportError(f"Not connected to {self.host}")
        return self._sock

    def send_command(self, text: str) -> None:
        """Write *text* followed by a single newline.

        Raises:
            UnsafeArgumentError: *text* contains NUL, CR or LF.
            TransportError: The write failed.
        """
        if has_control_chars(text):
            raise UnsafeArgumentError(f"Refusing to send command {text!r}")
        sock = self._require_socket()
        if text.startswith("PASS "):
            logger.debug("[FTP] PASS ****")
        else:
            logger.debug("[FTP] %s", text)
        try:
            sock.sendall(text.encode("utf-8") + COMMAND_TERMINATOR)
        except OSError as exc:
            raise TransportError(f"Failed to send {text.split(' ', 1)[0]}: {exc}") from exc

    def command(self, verb: str, argument: str | None = None) -> None:
        """Build and send ``VERB [argument]``."""
        self.send_command(build_command(verb, argument))

    def read_line(self) -> str:
        """Read one line from the control stream (without its terminator)."""
        sock = self._require_socket()
        while b"\n" not in self._buffer:
            try:
                chunk = sock.recv(_RECV_SIZE)
            except socket.timeout as exc:
                raise TransportError(f"Timed out waiting for a reply from {self.host}") from exc
            except OSError as exc:
                raise TransportError(f"Control connection to {self.host} failed: {exc}") from exc
            if not chunk:
                raise TransportError(f"Control connection to {self.host} closed")
            self._buffer.extend(chunk)

        index = self._buffer.index(b"\n")
        raw = bytes(self._buffer[: index + 1])
        del self._buffer[: index + 1]
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        logger.debug("<FTP> %s", line)
        return line

    def read_response(self) -> Response:
        """Read one reply, following ``NNN-`` continuation lines to their end."""
        line = self.read_line()
        response = parse_response(line)
        if line[3:4] != "-":
            return response

        # Multi-line replies start with "NNN-" and end with "NNN ".
        prefix = line[:3]
        while True:
            line = self.read_line()
            if line == prefix or line.startswith(prefix + " "):
                return Response(code=response.code, text=line[4:])

    def expect_success(self, operation: str | None = None) -> Response:
        """Read one reply and require :func:`is_success` of its code.

        Raises:
            UnexpectedStatus: The code was not 2xx or 150.
        """
        response = self.read_response()
        if not response.is_success:
            raise UnexpectedStatus(response.code, response.text, operation=operation)
        return response

    def clear_pending(self) -> int:
        """Discard buffered and in-flight bytes left over from earlier replies.

        Reads with :attr:`drain_timeout` until the stream goes quiet, then
        restores :attr:`timeout`.  Returns the number of bytes discarded.
        """
        sock = self._require_socket()
        dropped = len(self._buffer)
        self._buffer.clear()
        sock.settimeout(self.drain_timeout)
        try:
            while True:
                chunk = sock.recv(_RECV_SIZE)
                if not chunk:
                    break
                dropped += len(chunk)
        except (socket.timeout, BlockingIOError):
            pass
        except OSError as exc:
            raise TransportError(f"Control connection to {self.host} failed: {exc}") from exc
        finally:
            sock.settimeout(self.timeout)
        if dropped:
            logger.debug("Discarded %d stale bytes from %s", dropped, self.host)
        return dropped

    def change_dir(self, path: str) -> None:
        """Send ``CWD path`` and remember *path* as the working directory."""
        self.command("CWD", path)
        self.expect_success(operation="listing")
        self._cwd = path


# ---------------------------------------------------------------------------
# PassiveDataChannel
# ---------------------------------------------------------------------------


class PassiveDataChannel:
    """A single-use data connection negotiated with ``PASV``.

    The socket is plain and unauthenticated.  Close it (or use the channel
    as a context manager) once the transfer is done; channels are never
    reused.
    """

    def __init__(self, address: PassiveAddress, sock: socket.socket) -> None:
        """Wrap an already-connected data *sock* reached at *address*."""
        self.address = address
        self._sock: socket.socket | None = sock

    @classmethod
    def open(cls, control: ControlChannel, operation: str | None = None) -> "PassiveDataChannel":
        """Negotiate passive mode on *control* and connect to the advertised address.

        Skips 2xx chatter that some servers emit before the ``227`` reply.

        Raises:
            UnexpectedStatus: A non-2xx reply arrived before ``227``.
            ParseError: The ``227`` payload could not be decoded.
            TransportError: The data connection could not be opened.
        """
        control.clear_pending()
        control.command("PASV")

        while True:
            response = control.read_response()
            if response.code == STATUS_PASSIVE:
                break
            if not 200 <= response.code <= 299:
                raise UnexpectedStatus(response.code, response.text, operation=operation)
            logger.debug("Skipping %d before PASV reply", response.code)

        try:
            address = decode_pasv(response.text)
        except ParseError as exc:
            exc.operation = operation
            raise
        logger.debug("Opening data channel to %s", address)
        try:
            sock = control.open_socket(address.as_tuple())
        except TransportError as exc:
            exc.operation = operation
            raise
        return cls(address, sock)

    def __enter__(self) -> "PassiveDataChannel":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise TransportError(f"Data channel to {self.address} already closed")
        return self._sock

    def read_probe(self, size: int) -> bytes:
        """Read until *size* bytes arrived or the server closed the channel."""
        sock = self._require_socket()
        data = bytearray()
        try:
            while len(data) < size:
                chunk = sock.recv(size - len(data))
                if not chunk:
                    break
                data.extend(chunk)
        except OSError as exc:
            raise TransportError(f"Data channel to {self.address} failed: {exc}") from exc
        return bytes(data)

    def read_all(self) -> bytes:
        """Read until the server closes the channel."""
        sock = self._require_socket()
        chunks: list[bytes] = []
        try:
            while True:
                chunk = sock.recv(_RECV_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)
        except OSError as exc:
            raise TransportError(f"Data channel to {self.address} failed: {exc}") from exc
        return b"".join(chunks)

    def write_all(self, data: bytes) -> None:
        """Send every byte of *data*."""
        sock = self._require_socket()
        try:
            sock.sendall(data)
        except OSError as exc:
            raise TransportError(f"Data channel to {self.address} failed: {exc}") from exc

    def close(self) -> None:
        """Close the data socket, signalling end-of-file to the server."""
        if self._sock is None:
            return
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # Peer may already have closed its end
        try:
            self._sock.close()
        finally:
            self._sock = None
