"""Tests for skyport/npdm.py — descriptor template patching."""

from __future__ import annotations

import struct
from pathlib import Path

import pytest

from skyport.errors import InvalidTitleId, RemediationError
from skyport.npdm import TITLE_ID_END, TITLE_ID_OFFSET, generate_npdm, load_template, patch_title_id

TID = "01006A800016E000"


class TestBundledTemplate:
    def test_is_fixed_size(self) -> None:
        assert len(load_template()) == 0x3E0

    def test_only_title_id_field_changes(self) -> None:
        template = load_template()
        patched = generate_npdm(TID)

        assert len(patched) == len(template)
        assert patched[TITLE_ID_OFFSET:TITLE_ID_END] == struct.pack("<Q", 0x01006A800016E000)
        assert patched[:TITLE_ID_OFFSET] == template[:TITLE_ID_OFFSET]
        assert patched[TITLE_ID_END:] == template[TITLE_ID_END:]


class TestPatchTitleId:
    def test_little_endian(self) -> None:
        patched = patch_title_id(bytes(TITLE_ID_END), "0102030405060708")
        assert patched[TITLE_ID_OFFSET:] == bytes([8, 7, 6, 5, 4, 3, 2, 1])

    def test_short_template_rejected(self) -> None:
        with pytest.raises(RemediationError):
            patch_title_id(bytes(16), TID)

    def test_invalid_title_id(self) -> None:
        with pytest.raises(InvalidTitleId):
            patch_title_id(bytes(TITLE_ID_END), "not-hex")


class TestCustomTemplate:
    def test_template_override(self, tmp_path: Path) -> None:
        template = tmp_path / "main.npdm"
        template.write_bytes(b"\xaa" * 0x400)
        patched = generate_npdm("1", template)
        assert patched[TITLE_ID_OFFSET:TITLE_ID_END] == b"\x01" + bytes(7)
        assert patched[-1] == 0xAA

    def test_missing_template(self, tmp_path: Path) -> None:
        with pytest.raises(RemediationError):
            load_template(tmp_path / "absent.npdm")

    def test_truncated_template(self, tmp_path: Path) -> None:
        template = tmp_path / "short.npdm"
        template.write_bytes(bytes(0x100))
        with pytest.raises(RemediationError):
            load_template(template)
