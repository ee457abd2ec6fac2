"""Tests for skyport/discovery.py — DiscoveryEngine."""

from __future__ import annotations

import socket
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from skyport.discovery import DiscoveredDevice, DiscoveryEngine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_engine(**kwargs) -> DiscoveryEngine:
    """Create a DiscoveryEngine with default no-op callbacks unless overridden."""
    defaults = {
        "on_device_found": MagicMock(),
        "on_scan_complete": MagicMock(),
        "on_error": MagicMock(),
    }
    defaults.update(kwargs)
    return DiscoveryEngine(**defaults)


def _mock_socket(greeting: bytes = b"220 sys-ftpd ready\r\n") -> MagicMock:
    mock_sock = MagicMock()
    mock_sock.__enter__ = lambda s: s
    mock_sock.__exit__ = MagicMock(return_value=False)
    mock_sock.recv.return_value = greeting
    return mock_sock


# ---------------------------------------------------------------------------
# Scan flow
# ---------------------------------------------------------------------------


class TestScan:
    def test_scan_returns_found_devices(self) -> None:
        """scan() runs synchronously and reports every answering host."""
        complete_cb = MagicMock()
        engine = _make_engine(on_scan_complete=complete_cb)
        device = DiscoveredDevice("switch", "192.168.1.20", 3.2, "sys-ftpd ready")

        def fake_probe(ip: str) -> DiscoveredDevice | None:
            return device if ip == "192.168.1.20" else None

        with patch.object(engine, "_probe_host", side_effect=fake_probe):
            found = engine.scan("192.168.1")

        assert found == [device]
        engine.on_device_found.assert_called_once_with(device)
        complete_cb.assert_called_once_with(1)

    def test_undetectable_subnet_reports_error(self) -> None:
        error_cb = MagicMock()
        engine = _make_engine(on_error=error_cb)
        with patch.object(engine, "_detect_subnet", return_value=None):
            assert engine.scan() == []
        error_cb.assert_called_once_with("Could not detect local subnet")

    def test_detected_subnet_is_scanned(self) -> None:
        engine = _make_engine()
        with patch.object(engine, "_detect_subnet", return_value="192.168.1"):
            with patch.object(engine, "_scan_subnet") as mock_scan:
                engine.scan()
        mock_scan.assert_called_once_with("192.168.1")


# ---------------------------------------------------------------------------
# Subnet detection
# ---------------------------------------------------------------------------


class TestSubnetDetection:
    def test_strips_last_octet(self) -> None:
        """_detect_subnet returns the base without the last octet."""
        engine = _make_engine()
        mock_sock = _mock_socket()
        mock_sock.getsockname.return_value = ("192.168.42.17", 0)

        with patch("socket.socket", return_value=mock_sock):
            subnet = engine._detect_subnet()

        assert subnet == "192.168.42"

    def test_returns_none_on_os_error(self) -> None:
        """_detect_subnet returns None when the socket call fails."""
        engine = _make_engine()
        with patch("socket.socket", side_effect=OSError("no network")):
            subnet = engine._detect_subnet()
        assert subnet is None


# ---------------------------------------------------------------------------
# Host probing
# ---------------------------------------------------------------------------


class TestProbeHost:
    def test_ftp_greeting_returns_device(self) -> None:
        """_probe_host returns a DiscoveredDevice when the port greets with 220."""
        engine = _make_engine()
        mock_sock = _mock_socket()

        with patch("socket.socket", return_value=mock_sock):
            with patch("socket.gethostbyaddr", return_value=("switch", [], ["10.0.0.5"])):
                device = engine._probe_host("10.0.0.5")

        assert device is not None
        assert device.ip == "10.0.0.5"
        assert device.hostname == "switch"
        assert device.greeting == "sys-ftpd ready"
        mock_sock.connect.assert_called_once_with(("10.0.0.5", 5000))

    def test_non_ftp_service_returns_none(self) -> None:
        """An open port that does not speak FTP is not a console."""
        engine = _make_engine()
        with patch("socket.socket", return_value=_mock_socket(b"SSH-2.0-OpenSSH\r\n")):
            assert engine._probe_host("10.0.0.6") is None

    def test_unresolvable_hostname_falls_back_to_ip(self) -> None:
        engine = _make_engine()
        with patch("socket.socket", return_value=_mock_socket()):
            with patch("socket.gethostbyaddr", side_effect=socket.herror("unknown")):
                device = engine._probe_host("10.0.0.7")
        assert device is not None
        assert device.hostname == "10.0.0.7"

    def test_probe_timeout_returns_none(self) -> None:
        """_probe_host returns None on connection timeout."""
        engine = _make_engine()
        mock_sock = _mock_socket()
        mock_sock.connect.side_effect = socket.timeout("timed out")

        with patch("socket.socket", return_value=mock_sock):
            device = engine._probe_host("10.0.0.99")

        assert device is None

    def test_probe_refused_returns_none(self) -> None:
        """_probe_host returns None when the connection is refused."""
        engine = _make_engine()
        mock_sock = _mock_socket()
        mock_sock.connect.side_effect = ConnectionRefusedError()

        with patch("socket.socket", return_value=mock_sock):
            device = engine._probe_host("10.0.0.200")

        assert device is None

    def test_probe_stop_event_returns_none(self) -> None:
        """_probe_host returns None immediately if the stop event is set."""
        engine = _make_engine()
        engine._stop_event.set()
        device = engine._probe_host("10.0.0.1")
        assert device is None

    @pytest.mark.parametrize("port", [5000, 5001])
    def test_probes_configured_port(self, port: int) -> None:
        engine = _make_engine(port=port)
        mock_sock = _mock_socket()
        with patch("socket.socket", return_value=mock_sock):
            with patch("socket.gethostbyaddr", return_value=("switch", [], [])):
                engine._probe_host("10.0.0.5")
        mock_sock.connect.assert_called_once_with(("10.0.0.5", port))


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


class TestCancel:
    def test_cancel_stops_scan(self) -> None:
        """Cancelling mid-scan stops the engine cleanly."""
        probed = []
        barrier = threading.Event()

        def slow_probe(ip: str) -> DiscoveredDevice | None:
            probed.append(ip)
            barrier.wait(timeout=0.5)
            return None

        engine = _make_engine()
        with patch.object(engine, "_probe_host", side_effect=slow_probe):
            with patch.object(engine, "_detect_subnet", return_value="10.0.0"):
                engine.start()
                time.sleep(0.05)  # Let a few probes start
                engine.cancel()
                barrier.set()

        assert engine._stop_event.is_set()
