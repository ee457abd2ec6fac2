"""Network discovery of consoles running an FTP server.

Scans the local /24 subnet in parallel for hosts whose FTP port accepts a
connection and greets with ``220``.  :meth:`DiscoveryEngine.scan` runs
synchronously; :meth:`DiscoveryEngine.start` runs the same scan on a
daemon thread and reports through callbacks.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable

from skyport.connection import DEFAULT_FTP_PORT, STATUS_GREETING

logger = logging.getLogger(__name__)

_SCAN_TIMEOUT = 1.0  # per-host TCP connect timeout
_GREETING_TIMEOUT = 1.0
_MAX_WORKERS = 50
_SCAN_HOST_MIN = 1
_SCAN_HOST_MAX = 254


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass
class DiscoveredDevice:
    """A host whose FTP port answered with a greeting."""

    hostname: str
    ip: str
    response_ms: float
    greeting: str


# ---------------------------------------------------------------------------
# DiscoveryEngine
# ---------------------------------------------------------------------------


class DiscoveryEngine:
    """Discovers consoles on the local network.

    Usage::

        engine = DiscoveryEngine(on_device_found=print)
        devices = engine.scan()
    """

    def __init__(
        self,
        port: int = DEFAULT_FTP_PORT,
        on_device_found: Callable[[DiscoveredDevice], None] | None = None,
        on_scan_complete: Callable[[int], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ) -> None:
        """Initialise the engine with the probed *port* and optional callbacks."""
        self.port = port
        self.on_device_found = on_device_found
        self.on_scan_complete = on_scan_complete
        self.on_error = on_error

        self._stop_event = threading.Event()
        self._worker_thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._found: list[DiscoveredDevice] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def scan(self, subnet: str | None = None) -> list[DiscoveredDevice]:
        """Probe *subnet* (auto-detected if None) and return what answered."""
        self._stop_event.clear()
        self._found = []
        self._run(subnet)
        return list(self._found)

    def start(self, subnet: str | None = None) -> None:
        """Begin discovery in a daemon thread."""
        if self._worker_thread and self._worker_thread.is_alive():
            logger.warning("Discovery already running")
            return
        self._stop_event.clear()
        self._found = []
        self._worker_thread = threading.Thread(
            target=self._run,
            args=(subnet,),
            name="discovery-worker",
            daemon=True,
        )
        self._worker_thread.start()
        logger.info("Discovery started")

    def cancel(self) -> None:
        """Signal the engine to stop scanning and shut down the executor."""
        logger.info("Discovery cancel requested")
        self._stop_event.set()
        if self._executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
        if self._worker_thread:
            self._worker_thread.join(timeout=3)
        logger.info("Discovery cancelled")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(self, subnet: str | None = None) -> None:
        """Detect the subnet if needed, scan it and report completion."""
        try:
            base = subnet or self._detect_subnet()
            if not base:
                self._emit_error("Could not detect local subnet")
                return

            if self._stop_event.is_set():
                return

            logger.info("Scanning %s.0/24 for FTP port %d", base, self.port)
            self._scan_subnet(base)
            self._emit_complete()
        except Exception as exc:
            logger.exception("Unhandled error in discovery")
            self._emit_error(str(exc))

    def _detect_subnet(self) -> str | None:
        """Detect the local subnet base (e.g. "192.168.1") using a UDP trick.

        Connects a UDP socket to 8.8.8.8:80 to determine the outgoing
        interface IP, then strips the last octet.
        """
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.connect(("8.8.8.8", 80))
                local_ip: str = s.getsockname()[0]
            parts = local_ip.rsplit(".", 1)
            if len(parts) != 2:
                return None
            subnet = parts[0]
            logger.debug("Detected subnet: %s (from local IP %s)", subnet, local_ip)
            return subnet
        except OSError as exc:
            logger.warning("Subnet detection failed: %s", exc)
            return None

    def _scan_subnet(self, base: str) -> None:
        """Probe all 254 hosts on the *base*.x subnet in parallel."""
        ips = [f"{base}.{i}" for i in range(_SCAN_HOST_MIN, _SCAN_HOST_MAX + 1)]

        self._executor = ThreadPoolExecutor(max_workers=_MAX_WORKERS, thread_name_prefix="scan")
        futures = {self._executor.submit(self._probe_host, ip): ip for ip in ips}

        try:
            for future in as_completed(futures):
                if self._stop_event.is_set():
                    break
                result = future.result()
                if result:
                    self._emit_device(result)
        finally:
            self._executor.shutdown(wait=False)
            self._executor = None

    def _probe_host(self, ip: str) -> DiscoveredDevice | None:
        """Connect to *ip* on the FTP port and require a ``220`` greeting."""
        if self._stop_event.is_set():
            return None
        try:
            start = time.monotonic()
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.settimeout(_SCAN_TIMEOUT)
                s.connect((ip, self.port))
                s.settimeout(_GREETING_TIMEOUT)
                greeting = s.recv(512).decode("utf-8", errors="replace").strip()
            elapsed_ms = (time.monotonic() - start) * 1000
        except (socket.timeout, ConnectionRefusedError, OSError):
            return None

        if not greeting.startswith(str(STATUS_GREETING)):
            logger.debug("Host %s answered without an FTP greeting: %r", ip, greeting)
            return None

        try:
            hostname = socket.gethostbyaddr(ip)[0]
        except (socket.herror, OSError):
            hostname = ip

        logger.debug("Found FTP host: %s (%s) in %.1f ms", hostname, ip, elapsed_ms)
        return DiscoveredDevice(
            hostname=hostname,
            ip=ip,
            response_ms=round(elapsed_ms, 1),
            greeting=greeting[4:] if len(greeting) > 3 else "",
        )

    # ------------------------------------------------------------------
    # Callback helpers
    # ------------------------------------------------------------------

    def _emit_device(self, device: DiscoveredDevice) -> None:
        """Record *device* and invoke the on_device_found callback."""
        self._found.append(device)
        if self.on_device_found:
            try:
                self.on_device_found(device)
            except Exception:
                logger.exception("Exception in on_device_found callback")

    def _emit_complete(self) -> None:
        """Invoke the on_scan_complete callback with the total found count."""
        if self.on_scan_complete:
            try:
                self.on_scan_complete(len(self._found))
            except Exception:
                logger.exception("Exception in on_scan_complete callback")

    def _emit_error(self, message: str) -> None:
        """Invoke the on_error callback."""
        if self.on_error:
            try:
                self.on_error(message)
            except Exception:
                logger.exception("Exception in on_error callback")
