"""Remote filesystem layout on the console and install-path resolution.

Layout (``<tid>`` is the title id)::

    /atmosphere/contents/<tid>/romfs/skyline/plugins/   default plugin directory
    /atmosphere/contents/<tid>/romfs/...                 romfs-relative paths
    /atmosphere/contents/<tid>/exefs/<runtime module>    default "subsdk9"
    /atmosphere/contents/<tid>/exefs/main.npdm           manifest descriptor
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from skyport.errors import InvalidPathPrefix, InvalidTitleId, PathResolutionError
from skyport.utils.path_helpers import posix_join, validate_remote_path

logger = logging.getLogger(__name__)

CONTENTS_DIR = "/atmosphere/contents"
SD_ROOT = "/"
SD_PREFIX = "sd:/"
ROM_PREFIX = "rom:/"
PLUGINS_SUBPATH = "skyline/plugins"
NRO_EXTENSION = ".nro"
DEFAULT_RUNTIME_MODULE = "subsdk9"
NPDM_NAME = "main.npdm"


# ---------------------------------------------------------------------------
# Title ids
# ---------------------------------------------------------------------------


def parse_title_id(title_id: str) -> int:
    """Parse a hexadecimal title id into its 64-bit value.

    Raises:
        InvalidTitleId: Not 1–16 hexadecimal digits.
    """
    text = title_id.strip()
    if text.lower().startswith("0x"):
        text = text[2:]
    if not 1 <= len(text) <= 16:
        raise InvalidTitleId(title_id)
    try:
        return int(text, 16)
    except ValueError as exc:
        raise InvalidTitleId(title_id) from exc


def canonical_title_id(title_id: str) -> str:
    """Return *title_id* as the 16 upper-case hex digits used in remote paths."""
    return f"{parse_title_id(title_id):016X}"


# ---------------------------------------------------------------------------
# Canonical paths
# ---------------------------------------------------------------------------


def get_game_path(title_id: str) -> str:
    return posix_join(CONTENTS_DIR, title_id)


def get_exefs_path(title_id: str) -> str:
    return posix_join(get_game_path(title_id), "exefs")


def get_romfs_path(title_id: str) -> str:
    return posix_join(get_game_path(title_id), "romfs")


def get_plugins_path(title_id: str) -> str:
    return posix_join(get_romfs_path(title_id), PLUGINS_SUBPATH)


def get_plugin_path(title_id: str, plugin_name: str) -> str:
    return posix_join(get_plugins_path(title_id), plugin_name)


def get_subsdk_path(title_id: str, subsdk_name: str = DEFAULT_RUNTIME_MODULE) -> str:
    return posix_join(get_exefs_path(title_id), subsdk_name)


def get_npdm_path(title_id: str) -> str:
    return posix_join(get_exefs_path(title_id), NPDM_NAME)


# ---------------------------------------------------------------------------
# Install path resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InstallLocation:
    """Where an artifact will be written, and the directories leading to it."""

    root: str
    segments: tuple[str, ...]
    filename: str
    in_romfs: bool

    @property
    def directory(self) -> str:
        return posix_join(self.root, *self.segments)

    @property
    def path(self) -> str:
        return posix_join(self.directory, self.filename)

    def directories(self) -> list[str]:
        """Directories to create, outermost first.

        For romfs targets this starts at the romfs root; for SD-card
        targets it is every prefix below ``/``.
        """
        chain = [self.root] if self.in_romfs else []
        current = self.root
        for segment in self.segments:
            current = posix_join(current, segment)
            chain.append(current)
        return chain


def resolve_install_path(
    title_id: str,
    default_filename: str,
    user_path: str | None = None,
    filename: str | None = None,
    extension: str = NRO_EXTENSION,
) -> InstallLocation:
    """Compute the final remote location of an artifact.

    Precedence:

    * no *user_path*: the canonical plugin directory;
    * ``sd:/rest``: *rest* as an absolute path on the SD card;
    * ``rom:/rest``: *rest* relative to the title's romfs root;
    * anything else: :class:`InvalidPathPrefix`.

    When the last segment ends in *extension* it names the file; otherwise
    the path is a directory and *filename* (or *default_filename*) is
    appended.  Pure: performs no I/O.
    """
    name = filename or default_filename

    if user_path is None:
        return InstallLocation(
            root=get_romfs_path(title_id),
            segments=tuple(PLUGINS_SUBPATH.split("/")),
            filename=name,
            in_romfs=True,
        )

    if user_path.startswith(SD_PREFIX):
        root, rest, in_romfs = SD_ROOT, user_path[len(SD_PREFIX):], False
    elif user_path.startswith(ROM_PREFIX):
        root, rest, in_romfs = get_romfs_path(title_id), user_path[len(ROM_PREFIX):], True
    else:
        raise InvalidPathPrefix(user_path)

    segments = [segment for segment in rest.split("/") if segment]
    if segments and segments[-1].lower().endswith(extension.lower()):
        name = segments.pop()

    location = InstallLocation(
        root=root,
        segments=tuple(segments),
        filename=name,
        in_romfs=in_romfs,
    )
    if not validate_remote_path(location.path):
        raise PathResolutionError(f"Unsafe install path {user_path!r}")
    logger.debug("Resolved install path %r → %s", user_path, location.path)
    return location
