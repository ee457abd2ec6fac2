"""Log relay and restart signal for a running console.

The log relay connects to the console's logger port and copies every byte
to a local stream, reconnecting forever after each disconnect.  The
restart signal is one 8-byte big-endian title id written to the restart
port.  Neither uses the FTP connection.
"""

from __future__ import annotations

import logging
import socket
import struct
import sys
import threading
import time
from typing import BinaryIO

from skyport.errors import TransportError
from skyport.game_paths import parse_title_id

logger = logging.getLogger(__name__)

LOGGER_PORT = 6969
RESTART_PORT = 45423
RESTART_TIMEOUT = 1.0  # seconds
RETRY_DELAY = 0.01  # seconds between reconnect attempts
RESTART_STARTUP_DELAY = 0.05  # lets the relay connect before the game restarts
_RECV_SIZE = 4096


def relay_logs(
    host: str,
    port: int = LOGGER_PORT,
    out: BinaryIO | None = None,
    stop_event: threading.Event | None = None,
    retry_delay: float = RETRY_DELAY,
) -> None:
    """Copy the console's log stream to *out* until *stop_event* is set.

    Connection refusals and disconnects are retried after *retry_delay*.
    Without a *stop_event* this never returns.
    """
    sink = out if out is not None else sys.stdout.buffer
    stop = stop_event or threading.Event()
    logger.info("Listening for logs from %s:%d", host, port)

    while not stop.is_set():
        try:
            with socket.create_connection((host, port), timeout=1.0) as sock:
                sock.settimeout(0.5)
                logger.debug("Log relay connected to %s:%d", host, port)
                _pump(sock, sink, stop)
        except OSError as exc:
            logger.debug("Log relay connection to %s:%d failed: %s", host, port, exc)
        stop.wait(retry_delay)


def _pump(sock: socket.socket, sink: BinaryIO, stop: threading.Event) -> None:
    """Forward bytes from *sock* to *sink* until EOF or *stop*."""
    while not stop.is_set():
        try:
            chunk = sock.recv(_RECV_SIZE)
        except socket.timeout:
            continue
        if not chunk:
            logger.debug("Log relay disconnected")
            return
        sink.write(chunk)
        sink.flush()


def restart_payload(title_id: str) -> bytes:
    """Return the 8-byte big-endian encoding of *title_id*."""
    return struct.pack(">Q", parse_title_id(title_id))


def send_restart(
    host: str,
    title_id: str,
    port: int = RESTART_PORT,
    timeout: float = RESTART_TIMEOUT,
) -> None:
    """Ask the console's restart plugin to relaunch *title_id*.

    Raises:
        TransportError: The restart port could not be reached.
        InvalidTitleId: *title_id* is not hexadecimal.
    """
    payload = restart_payload(title_id)
    try:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            sock.sendall(payload)
    except OSError as exc:
        raise TransportError(f"Could not send restart signal to {host}:{port}: {exc}") from exc
    logger.info("Sent restart signal for %s to %s", title_id, host)


def restart_in_background(
    host: str,
    title_id: str,
    port: int = RESTART_PORT,
    delay: float = RESTART_STARTUP_DELAY,
) -> threading.Thread:
    """Send the restart signal from a daemon thread after *delay* seconds.

    Unordered with respect to the log relay started by the caller; failures
    are logged, not raised.
    """

    def _worker() -> None:
        time.sleep(delay)
        try:
            send_restart(host, title_id, port=port)
        except TransportError as exc:
            logger.warning("Restart signal failed: %s", exc)

    thread = threading.Thread(target=_worker, name="restart-signal", daemon=True)
    thread.start()
    return thread
