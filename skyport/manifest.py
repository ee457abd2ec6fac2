"""Per-title installation manifest read from the plugin's Cargo metadata.

The ``[package.metadata.skyline]`` table of ``Cargo.toml`` may carry::

    titleid = "01006A800016E000"
    custom-npdm = "path/to/main.npdm"
    subsdk-name = "subsdk9"
    plugin-dependencies = [{ name = "libnro_hook.nro", url = "https://..." }]
    package-resources = [{ local = "assets", package = "atmosphere/..." }]

It is read through ``cargo metadata`` so workspace inheritance and path
resolution behave exactly as cargo sees them.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from skyport.errors import ConfigurationError

logger = logging.getLogger(__name__)

_METADATA_KEY = "skyline"
_CARGO_TIMEOUT = 120  # seconds


@dataclass(frozen=True)
class Dependency:
    """A plugin the deployed artifact needs at runtime."""

    name: str
    url: str


@dataclass(frozen=True)
class PackageResource:
    """A local file or directory shipped alongside the plugin."""

    local_path: Path
    package_path: str


@dataclass
class Manifest:
    """Installation descriptor for one title."""

    title_id: str
    package_name: str | None = None
    custom_npdm: Path | None = None
    subsdk_name: str | None = None
    dependencies: list[Dependency] = field(default_factory=list)
    package_resources: list[PackageResource] = field(default_factory=list)

    @property
    def default_filename(self) -> str | None:
        """``lib<name>.nro`` for the package, as cargo names the artifact."""
        if not self.package_name:
            return None
        return f"lib{self.package_name.replace('-', '_')}.nro"


def _skyline_table(package: dict[str, Any]) -> dict[str, Any] | None:
    metadata = package.get("metadata") or {}
    table = metadata.get(_METADATA_KEY) if isinstance(metadata, dict) else None
    return table if isinstance(table, dict) else None


def from_cargo_metadata(data: dict[str, Any], title_id: str | None = None) -> Manifest:
    """Build a :class:`Manifest` from ``cargo metadata`` JSON output.

    Uses the first package declaring a skyline table.  *title_id*
    overrides the one in the metadata.

    Raises:
        ConfigurationError: No title id could be determined, or an entry
            is malformed.
    """
    packages = data.get("packages") or []
    chosen: dict[str, Any] | None = None
    table: dict[str, Any] = {}
    for package in packages:
        found = _skyline_table(package)
        if found is not None:
            chosen, table = package, found
            break
    if chosen is None and packages:
        chosen = packages[0]

    resolved_tid = title_id or table.get("titleid")
    if not resolved_tid:
        raise ConfigurationError(
            "No title id found. Pass --title-id or add `titleid` under "
            "[package.metadata.skyline] in Cargo.toml."
        )

    base_dir = Path(chosen["manifest_path"]).parent if chosen and chosen.get("manifest_path") else Path.cwd()

    dependencies = []
    for entry in table.get("plugin-dependencies") or []:
        try:
            dependencies.append(Dependency(name=str(entry["name"]), url=str(entry["url"])))
        except (KeyError, TypeError) as exc:
            raise ConfigurationError(f"Malformed plugin dependency entry: {entry!r}") from exc

    resources = []
    for entry in table.get("package-resources") or []:
        try:
            resources.append(
                PackageResource(
                    local_path=base_dir / str(entry["local"]),
                    package_path=str(entry["package"]),
                )
            )
        except (KeyError, TypeError) as exc:
            raise ConfigurationError(f"Malformed package resource entry: {entry!r}") from exc

    custom_npdm = table.get("custom-npdm")
    return Manifest(
        title_id=str(resolved_tid),
        package_name=chosen.get("name") if chosen else None,
        custom_npdm=base_dir / custom_npdm if custom_npdm else None,
        subsdk_name=table.get("subsdk-name"),
        dependencies=dependencies,
        package_resources=resources,
    )


def load_manifest(project_dir: str | Path | None = None, title_id: str | None = None) -> Manifest:
    """Read the manifest of the Cargo project in *project_dir* (default: cwd).

    Without a ``Cargo.toml`` a bare manifest is returned when *title_id*
    is given.

    Raises:
        ConfigurationError: cargo failed, or no title id is available.
    """
    directory = Path(project_dir) if project_dir else Path.cwd()
    if not (directory / "Cargo.toml").is_file():
        if title_id:
            logger.debug("No Cargo.toml in %s — using title id %s only", directory, title_id)
            return Manifest(title_id=title_id)
        raise ConfigurationError(
            f"No Cargo.toml in {directory} and no --title-id given"
        )

    cmd = ["cargo", "metadata", "--format-version", "1", "--no-deps"]
    logger.debug("Running %s in %s", " ".join(cmd), directory)
    try:
        result = subprocess.run(
            cmd,
            cwd=directory,
            capture_output=True,
            text=True,
            timeout=_CARGO_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise ConfigurationError(f"Could not run cargo metadata: {exc}") from exc

    if result.returncode != 0:
        raise ConfigurationError(
            f"cargo metadata failed ({result.returncode}): {result.stderr.strip()}"
        )
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"cargo metadata produced invalid JSON: {exc}") from exc

    manifest = from_cargo_metadata(data, title_id=title_id)
    logger.info(
        "Manifest: title %s, %d dependencies",
        manifest.title_id,
        len(manifest.dependencies),
    )
    return manifest
