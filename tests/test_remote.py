"""Tests for skyport/remote.py — RemoteFileOps against a scripted server."""

from __future__ import annotations

import pytest

from conftest import DataSocket, FakeConnector, ScriptedSocket
from skyport.connection import ControlChannel
from skyport.errors import TransportError, UnexpectedStatus
from skyport.remote import OP_DELETE, OP_LIST, OP_MKDIR, OP_PROBE, OP_TRANSFER, RemoteFileOps


def _ops(sock: ScriptedSocket, data=(), **kwargs) -> tuple[RemoteFileOps, FakeConnector]:
    connector = FakeConnector(sock, data)
    control = ControlChannel("127.0.0.1", connector=connector)
    control.connect()
    control.authenticate("anonymous", "anonymous")
    return RemoteFileOps(control, **kwargs), connector


class TestPut:
    def test_end_to_end_upload(self) -> None:
        """220 / 230 / 227 / 226: the data channel receives exactly the payload."""
        sock = ScriptedSocket()
        data = DataSocket()
        ops, connector = _ops(sock, [data])

        ops.put("plugins/test.nro", b"\x00\x01")

        assert connector.addresses[1] == ("127.0.0.1", 5000)
        assert bytes(data.received) == b"\x00\x01"
        assert data.closed
        assert sock.verbs()[2:] == ["DELE", "TYPE", "PASV", "STOR"]
        assert "STOR plugins/test.nro" in sock.sent

    def test_waits_past_preliminary_reply(self) -> None:
        sock = ScriptedSocket(replies={"STOR": b"150 Ok to send\r\n226 Done\r\n"})
        ops, _ = _ops(sock, [DataSocket()])
        ops.put("/a.nro", b"abc")
        assert sock.pending == bytearray()

    def test_failed_completion_is_error(self) -> None:
        sock = ScriptedSocket(replies={"STOR": b"150 Ok to send\r\n451 Write failed\r\n"})
        ops, _ = _ops(sock, [DataSocket()])
        with pytest.raises(UnexpectedStatus) as excinfo:
            ops.put("/a.nro", b"abc")
        assert excinfo.value.code == 451
        assert excinfo.value.operation == OP_TRANSFER

    def test_refused_store(self) -> None:
        sock = ScriptedSocket(replies={"STOR": b"553 Not allowed\r\n"})
        ops, _ = _ops(sock, [DataSocket()])
        with pytest.raises(UnexpectedStatus) as excinfo:
            ops.put("/a.nro", b"abc")
        assert excinfo.value.code == 553

    def test_fixed_delay_fallback(self) -> None:
        """Without awaiting completion one status line is read after the delay."""
        sock = ScriptedSocket()
        data = DataSocket()
        ops, _ = _ops(sock, [data], await_transfer_complete=False, post_write_delay=0)
        ops.put("/a.nro", b"abc")
        assert bytes(data.received) == b"abc"

    def test_type_refused(self) -> None:
        sock = ScriptedSocket(replies={"TYPE": b"504 Not implemented\r\n"})
        ops, _ = _ops(sock)
        with pytest.raises(UnexpectedStatus):
            ops.put("/a.nro", b"abc")
        assert "STOR" not in sock.verbs()

    def test_data_channel_refused(self) -> None:
        ops, _ = _ops(ScriptedSocket())
        with pytest.raises(TransportError) as excinfo:
            ops.put("/a.nro", b"abc")
        assert excinfo.value.operation == OP_TRANSFER


class TestExists:
    def test_empty_listing_is_absent(self) -> None:
        ops, _ = _ops(ScriptedSocket(), [DataSocket(b"")])
        assert ops.exists("/atmosphere/contents/01/exefs/subsdk9") is False

    def test_listing_with_entry_is_present(self) -> None:
        ops, _ = _ops(ScriptedSocket(), [DataSocket(b"-rw-r--r-- 1 subsdk9\r\n")])
        assert ops.exists("/atmosphere/contents/01/exefs/subsdk9") is True

    def test_single_byte_is_absent(self) -> None:
        ops, _ = _ops(ScriptedSocket(), [DataSocket(b"\n")])
        assert ops.exists("/x") is False

    def test_refused_list_is_absent(self) -> None:
        sock = ScriptedSocket(replies={"LIST": b"550 No such file\r\n"})
        ops, _ = _ops(sock, [DataSocket(b"ignored")])
        assert ops.exists("/x") is False

    def test_negotiation_failure_propagates(self) -> None:
        sock = ScriptedSocket(replies={"PASV": b"421 Service closing\r\n"})
        ops, _ = _ops(sock)
        with pytest.raises(UnexpectedStatus) as excinfo:
            ops.exists("/x")
        assert excinfo.value.operation == OP_PROBE


class TestDirectories:
    def test_mkdir(self) -> None:
        sock = ScriptedSocket()
        ops, _ = _ops(sock)
        ops.mkdir("/atmosphere/contents/01")
        assert sock.sent[-1] == "MKD /atmosphere/contents/01"

    def test_mkdir_refused_tagged(self) -> None:
        ops, _ = _ops(ScriptedSocket(replies={"MKD": b"550 Exists\r\n"}))
        with pytest.raises(UnexpectedStatus) as excinfo:
            ops.mkdir("/a")
        assert excinfo.value.operation == OP_MKDIR

    def test_ensure_dir_tolerates_existing(self) -> None:
        ops, _ = _ops(ScriptedSocket(replies={"MKD": b"550 Exists\r\n"}))
        assert ops.ensure_dir("/a") is False

    def test_list_changes_directory(self) -> None:
        sock = ScriptedSocket()
        ops, _ = _ops(sock, [DataSocket(b"libplugin.nro\r\n")])
        assert ops.list("/plugins") == "libplugin.nro\r\n"
        assert ops.control.cwd == "/plugins"
        assert sock.verbs()[-2:] == ["CWD", "LIST"]

    def test_refused_list_is_error(self) -> None:
        sock = ScriptedSocket(replies={"LIST": b"550 No such directory\r\n"})
        data = DataSocket(b"stale")
        ops, _ = _ops(sock, [data])
        with pytest.raises(UnexpectedStatus) as excinfo:
            ops.list("/missing")
        assert excinfo.value.code == 550
        assert excinfo.value.operation == OP_LIST
        assert data.closed


class TestDelete:
    def test_refusal_is_not_error(self) -> None:
        ops, _ = _ops(ScriptedSocket())
        assert ops.delete("/missing") is False

    def test_accepted(self) -> None:
        ops, _ = _ops(ScriptedSocket(replies={"DELE": b"250 Deleted\r\n"}))
        assert ops.delete("/a.nro") is True

    def test_remove_requires_success(self) -> None:
        ops, _ = _ops(ScriptedSocket())
        with pytest.raises(UnexpectedStatus) as excinfo:
            ops.remove("/missing")
        assert excinfo.value.operation == OP_DELETE
