"""Deployment orchestration: provision the console and install a plugin.

One run is a forward-only state machine::

    PLAN → CONNECT → ENSURE_BASE_DIRS → DETECT_LEGACY_RUNTIME → ENSURE_RUNTIME
         → ENSURE_MANIFEST_DESCRIPTOR → ENSURE_DEPENDENCIES → UPLOAD → COMPLETED

Any fatal error moves the run to ABORTED; the failing step's name is
attached to the raised error as ``error.step``.  Each remediation step
re-probes the console before acting and mutates at most once.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Iterator

from skyport.connection import DEFAULT_FTP_PORT, Connector, ControlChannel
from skyport.errors import ConfigurationError, PathResolutionError, RemediationError, SkyportError
from skyport.fetch import DEFAULT_RUNTIME_URL, Fetcher
from skyport.game_paths import (
    DEFAULT_RUNTIME_MODULE,
    InstallLocation,
    canonical_title_id,
    get_exefs_path,
    get_game_path,
    get_npdm_path,
    get_plugin_path,
    get_subsdk_path,
    resolve_install_path,
)
from skyport.manifest import Dependency, Manifest
from skyport.npdm import generate_npdm
from skyport.remote import RemoteFileOps

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"
LEGACY_RUNTIME_MARKER = "subsdk"

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class DeployStep(Enum):
    """States of a deployment run, in execution order."""

    PENDING = auto()
    PLAN = auto()
    CONNECT = auto()
    ENSURE_BASE_DIRS = auto()
    DETECT_LEGACY_RUNTIME = auto()
    ENSURE_RUNTIME = auto()
    ENSURE_MANIFEST_DESCRIPTOR = auto()
    ENSURE_DEPENDENCIES = auto()
    UPLOAD = auto()
    COMPLETED = auto()
    ABORTED = auto()


StepCallback = Callable[[DeployStep], None]
WarningCallback = Callable[[str], None]

_TRUE_WORDS = frozenset({"true", "yes", "on", "1"})
_FALSE_WORDS = frozenset({"false", "no", "off", "0"})


def _as_bool(key: str, value) -> bool:
    """Interpret a config flag that may have been hand-edited as a string.

    Raises:
        ConfigurationError: *value* is neither a boolean nor a recognised word.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ConfigurationError(f"{key} must be true or false, got {value!r}")


@dataclass
class DeploySettings:
    """Connection and remediation tunables for one run."""

    port: int = DEFAULT_FTP_PORT
    timeout: float = 10.0
    drain_timeout: float = 0.02
    await_transfer_complete: bool = True
    post_write_delay: float = 0.5
    download_timeout: float = 60.0
    runtime_url: str = DEFAULT_RUNTIME_URL
    runtime_module_name: str = DEFAULT_RUNTIME_MODULE
    npdm_template: str | None = None
    user: str = ANONYMOUS
    password: str = ANONYMOUS

    @classmethod
    def from_config(cls, config) -> "DeploySettings":
        """Build settings from a :class:`~skyport.config.ConfigManager`."""
        return cls(
            port=int(config.get("ftp_port", DEFAULT_FTP_PORT)),
            timeout=float(config.get("ftp_timeout", 10.0)),
            drain_timeout=float(config.get("drain_timeout", 0.02)),
            await_transfer_complete=_as_bool(
                "await_transfer_complete", config.get("await_transfer_complete", True)
            ),
            post_write_delay=float(config.get("post_write_delay", 0.5)),
            download_timeout=float(config.get("download_timeout", 60.0)),
            runtime_url=config.get("runtime_url") or DEFAULT_RUNTIME_URL,
            runtime_module_name=config.get("runtime_module_name") or DEFAULT_RUNTIME_MODULE,
            npdm_template=config.get("npdm_template"),
        )


@dataclass(frozen=True)
class DeploymentPlan:
    """Everything a run will touch, computed before any network I/O."""

    title_id: str
    game_dir: str
    exefs_dir: str
    runtime_path: str
    npdm_path: str
    location: InstallLocation
    dependencies: tuple[tuple[Dependency, str], ...]
    artifact: bytes

    @property
    def install_path(self) -> str:
        return self.location.path

    def base_directories(self) -> list[str]:
        """Directories created in ENSURE_BASE_DIRS, outermost first."""
        return [self.game_dir, self.exefs_dir, *self.location.directories()]


@dataclass
class DeploymentResult:
    """Outcome of a completed run."""

    install_path: str
    installed: list[str] = field(default_factory=list)
    legacy_runtime_detected: bool = False
    state: DeployStep = DeployStep.COMPLETED


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def open_control(
    host: str,
    settings: DeploySettings,
    connector: Connector | None = None,
) -> ControlChannel:
    """Connect to *host* and log in anonymously."""
    control = ControlChannel(
        host,
        port=settings.port,
        timeout=settings.timeout,
        drain_timeout=settings.drain_timeout,
        connector=connector,
    )
    control.connect()
    try:
        control.authenticate(settings.user, settings.password)
    except SkyportError:
        control.close()
        raise
    return control


def build_plan(
    manifest: Manifest,
    artifact_path: str | Path,
    settings: DeploySettings,
    install_path: str | None = None,
    filename: str | None = None,
) -> DeploymentPlan:
    """Resolve every remote path and read the artifact.

    Raises:
        PathResolutionError: Bad install path or unreadable artifact.
        InvalidTitleId: The manifest's title id is not hexadecimal.
    """
    title_id = canonical_title_id(manifest.title_id)

    artifact = Path(artifact_path)
    location = resolve_install_path(
        title_id,
        default_filename=artifact.name,
        user_path=install_path,
        filename=filename,
    )
    try:
        data = artifact.read_bytes()
    except OSError as exc:
        raise PathResolutionError(f"Cannot read build artifact {artifact}: {exc}") from exc

    runtime_module = manifest.subsdk_name or settings.runtime_module_name
    return DeploymentPlan(
        title_id=title_id,
        game_dir=get_game_path(title_id),
        exefs_dir=get_exefs_path(title_id),
        runtime_path=get_subsdk_path(title_id, runtime_module),
        npdm_path=get_npdm_path(title_id),
        location=location,
        dependencies=tuple(
            (dep, get_plugin_path(title_id, dep.name)) for dep in manifest.dependencies
        ),
        artifact=data,
    )


# ---------------------------------------------------------------------------
# DeploymentOrchestrator
# ---------------------------------------------------------------------------


class DeploymentOrchestrator:
    """Runs one deployment against one console.

    Usage::

        orchestrator = DeploymentOrchestrator(
            host="192.168.1.20",
            manifest=load_manifest(),
            artifact_path="target/aarch64-skyline-switch/release/libplugin.nro",
        )
        result = orchestrator.run()
    """

    def __init__(
        self,
        host: str,
        manifest: Manifest,
        artifact_path: str | Path,
        install_path: str | None = None,
        filename: str | None = None,
        settings: DeploySettings | None = None,
        fetcher: Fetcher | None = None,
        connector: Connector | None = None,
        on_step: StepCallback | None = None,
        on_warning: WarningCallback | None = None,
    ) -> None:
        """Initialise the run (does NOT connect yet).

        Args:
            host: Console IP address.
            manifest: Installation descriptor for the target title.
            artifact_path: Local path of the built plugin.
            install_path: Optional ``sd:/`` or ``rom:/`` destination.
            filename: Optional override for the installed file name.
            settings: Connection and remediation tunables.
            fetcher: Download collaborator for missing components.
            connector: Socket factory, forwarded to :class:`ControlChannel`.
            on_step: Called on every state transition.
            on_warning: Called with advisory messages (legacy runtime).
        """
        self.host = host
        self.manifest = manifest
        self.artifact_path = Path(artifact_path)
        self.install_path = install_path
        self.filename = filename
        self.settings = settings or DeploySettings()
        self.fetcher = fetcher or Fetcher(timeout=self.settings.download_timeout)
        self._connector = connector
        self._on_step = on_step
        self._on_warning = on_warning

        self._state = DeployStep.PENDING
        self._plan: DeploymentPlan | None = None

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> DeployStep:
        return self._state

    @property
    def plan(self) -> DeploymentPlan | None:
        return self._plan

    def _set_state(self, step: DeployStep) -> None:
        self._state = step
        logger.debug("Deployment state → %s", step.name)
        if self._on_step:
            try:
                self._on_step(step)
            except Exception:
                logger.exception("Exception in on_step callback")

    @contextmanager
    def _step(self, step: DeployStep) -> Iterator[None]:
        """Enter *step*; on failure tag the error with it and abort."""
        self._set_state(step)
        try:
            yield
        except SkyportError as exc:
            if exc.step is None:
                exc.step = step.name
            logger.error("Deployment aborted in %s: %s", step.name, exc)
            self._set_state(DeployStep.ABORTED)
            raise

    def _warn(self, message: str) -> None:
        logger.warning(message)
        if self._on_warning:
            try:
                self._on_warning(message)
            except Exception:
                logger.exception("Exception in on_warning callback")

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> DeploymentResult:
        """Execute every step in order.

        Returns:
            A :class:`DeploymentResult` on success.

        Raises:
            SkyportError: The first fatal failure, with ``step`` set.
        """
        with self._step(DeployStep.PLAN):
            plan = build_plan(
                self.manifest,
                self.artifact_path,
                self.settings,
                install_path=self.install_path,
                filename=self.filename,
            )
            self._plan = plan

        result = DeploymentResult(install_path=plan.install_path)

        with self._step(DeployStep.CONNECT):
            control = open_control(self.host, self.settings, self._connector)

        try:
            ops = RemoteFileOps(
                control,
                await_transfer_complete=self.settings.await_transfer_complete,
                post_write_delay=self.settings.post_write_delay,
            )
            with self._step(DeployStep.ENSURE_BASE_DIRS):
                self._ensure_base_dirs(ops, plan)

            self._set_state(DeployStep.DETECT_LEGACY_RUNTIME)
            result.legacy_runtime_detected = self._detect_legacy_runtime(ops, plan)

            with self._step(DeployStep.ENSURE_RUNTIME):
                if self._ensure_runtime(ops, plan):
                    result.installed.append(plan.runtime_path)

            with self._step(DeployStep.ENSURE_MANIFEST_DESCRIPTOR):
                if self._ensure_descriptor(ops, plan):
                    result.installed.append(plan.npdm_path)

            with self._step(DeployStep.ENSURE_DEPENDENCIES):
                result.installed.extend(self._ensure_dependencies(ops, plan))

            with self._step(DeployStep.UPLOAD):
                logger.info("Transferring %s to %s", self.artifact_path.name, plan.install_path)
                ops.put(plan.install_path, plan.artifact)
        finally:
            control.close()

        self._set_state(DeployStep.COMPLETED)
        logger.info("Deployment to %s complete: %s", self.host, plan.install_path)
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _ensure_base_dirs(self, ops: RemoteFileOps, plan: DeploymentPlan) -> None:
        for directory in plan.base_directories():
            ops.ensure_dir(directory)

    def _detect_legacy_runtime(self, ops: RemoteFileOps, plan: DeploymentPlan) -> bool:
        """Warn when the exefs holds more than one runtime module; never fatal."""
        try:
            listing = ops.list(plan.exefs_dir + "/")
        except SkyportError as exc:
            logger.debug("Legacy runtime scan skipped: %s", exc)
            return False
        if listing.count(LEGACY_RUNTIME_MARKER) > 1:
            self._warn("An old install of skyline is detected, this may cause problems.")
            return True
        return False

    def _ensure_runtime(self, ops: RemoteFileOps, plan: DeploymentPlan) -> bool:
        if ops.exists(plan.runtime_path):
            return False
        logger.info("Runtime not installed for %s, downloading", plan.title_id)
        module = self.fetcher.fetch_runtime(self.settings.runtime_url)
        ops.put(plan.runtime_path, module)
        return True

    def _ensure_descriptor(self, ops: RemoteFileOps, plan: DeploymentPlan) -> bool:
        if ops.exists(plan.npdm_path):
            return False
        custom = self.manifest.custom_npdm
        if custom is not None:
            logger.info("Installing custom descriptor %s", custom)
            try:
                descriptor = Path(custom).read_bytes()
            except OSError as exc:
                raise RemediationError(f"Cannot read custom descriptor {custom}: {exc}") from exc
        else:
            logger.info("Descriptor not installed for %s, generating", plan.title_id)
            descriptor = generate_npdm(plan.title_id, self.settings.npdm_template)
        ops.put(plan.npdm_path, descriptor)
        return True

    def _ensure_dependencies(self, ops: RemoteFileOps, plan: DeploymentPlan) -> list[str]:
        installed = []
        for dependency, remote_path in plan.dependencies:
            if ops.exists(remote_path):
                continue
            logger.info("Downloading dependency %s", dependency.name)
            data = self.fetcher.fetch_bytes(dependency.url)
            ops.put(remote_path, data)
            installed.append(remote_path)
        return installed
