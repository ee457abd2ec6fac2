"""Manifest descriptor (``main.npdm``) generation.

A generated descriptor is the bundled template with the 8-byte
little-endian title id written at ``[0x340, 0x348)``; every other byte is
copied unchanged.
"""

from __future__ import annotations

import logging
import struct
import sys
from pathlib import Path

from skyport.errors import RemediationError
from skyport.game_paths import parse_title_id

logger = logging.getLogger(__name__)

TITLE_ID_OFFSET = 0x340
TITLE_ID_END = 0x348
TEMPLATE_NAME = "template.npdm"

# Module-level cache keyed by template path.
_cache: dict[str, bytes] = {}


def _data_root() -> Path:
    """Return the bundled ``data/`` directory, honouring PyInstaller bundles."""
    if getattr(sys, "frozen", False):
        return Path(sys._MEIPASS) / "skyport" / "data"  # type: ignore[attr-defined]
    return Path(__file__).parent / "data"


def load_template(path: str | Path | None = None) -> bytes:
    """Return the descriptor template at *path*, or the bundled one.

    Raises:
        RemediationError: The template is unreadable or too short to hold
            the title id field.
    """
    template_path = Path(path) if path else _data_root() / TEMPLATE_NAME
    key = str(template_path)
    if key in _cache:
        return _cache[key]

    try:
        blob = template_path.read_bytes()
    except OSError as exc:
        raise RemediationError(f"Cannot read descriptor template {template_path}: {exc}") from exc
    if len(blob) < TITLE_ID_END:
        raise RemediationError(
            f"Descriptor template {template_path} is {len(blob)} bytes, "
            f"need at least {TITLE_ID_END}"
        )
    _cache[key] = blob
    logger.debug("Loaded descriptor template %s (%d bytes)", template_path, len(blob))
    return blob


def patch_title_id(template: bytes, title_id: str) -> bytes:
    """Return *template* with *title_id* written little-endian at 0x340."""
    value = parse_title_id(title_id)
    if len(template) < TITLE_ID_END:
        raise RemediationError(f"Descriptor template is only {len(template)} bytes")
    return template[:TITLE_ID_OFFSET] + struct.pack("<Q", value) + template[TITLE_ID_END:]


def generate_npdm(title_id: str, template_path: str | Path | None = None) -> bytes:
    """Build a ``main.npdm`` for *title_id* from the template."""
    return patch_title_id(load_template(template_path), title_id)
