"""Configuration management for skyport.

Settings are stored as JSON under ``~/.skyport/config.json``; the console
address set with ``skyport set-ip`` lives there too.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import os
from pathlib import Path
from typing import Any

from skyport.errors import ConfigurationError
from skyport.fetch import DEFAULT_RUNTIME_URL

logger = logging.getLogger(__name__)

IP_ENV_VAR = "SWITCH_IP"

NO_IP = (
    "No IP address found. Configure one using `skyport set-ip <addr>`, "
    f"set the {IP_ENV_VAR} environment variable, or pass --ip."
)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "ip": None,
    "ftp_port": 5000,
    "logger_port": 6969,
    "restart_port": 45423,
    "scan_port": 5000,
    "ftp_timeout": 10.0,
    "drain_timeout": 0.02,
    "post_write_delay": 0.5,
    "await_transfer_complete": True,
    "download_timeout": 60.0,
    "runtime_url": DEFAULT_RUNTIME_URL,
    "runtime_module_name": "subsdk9",
    "npdm_template": None,
}

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages skyport settings.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt config triggers a warning and
    a safe reset; it never crashes the tool.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.skyport/`` if necessary."""
        self._base = base_dir or Path.home() / ".skyport"
        self._config_path = self._base / "config.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file — creating defaults")
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            raw = self._config_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            # Merge with defaults so new keys are always present
            merged = dict(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning(
                "Corrupt config.json (%s) — resetting to defaults", exc
            )
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    @property
    def path(self) -> Path:
        return self._config_path

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    # ------------------------------------------------------------------
    # Target address
    # ------------------------------------------------------------------

    def set_ip(self, ip: str) -> str:
        """Validate and store the console address; returns the normalised form."""
        normalised = verify_ip(ip)
        self.set("ip", normalised)
        logger.info("Stored console address %s", normalised)
        return normalised

    def resolve_ip(self, cli_ip: str | None = None) -> str:
        """Return the console address: *cli_ip*, then ``$SWITCH_IP``, then stored.

        Raises:
            ConfigurationError: No address anywhere, or it does not parse.
        """
        candidate = cli_ip or os.environ.get(IP_ENV_VAR) or self.get("ip")
        if not candidate:
            raise ConfigurationError(NO_IP)
        return verify_ip(candidate)


def verify_ip(ip: str) -> str:
    """Return *ip* normalised, after stripping whitespace anywhere in it.

    Raises:
        ConfigurationError: *ip* is not an IPv4 or IPv6 address.
    """
    cleaned = "".join(str(ip).split())
    try:
        return str(ipaddress.ip_address(cleaned))
    except ValueError as exc:
        raise ConfigurationError(
            f"Could not parse IP address {ip!r}: likely is not correctly formatted."
        ) from exc
