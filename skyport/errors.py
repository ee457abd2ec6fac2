"""Error taxonomy for skyport.

Every error carries a *category* naming the party responsible (network,
target, user input, local configuration, remediation) and the process exit
code the CLI uses for it.  Remote-file operations tag the sub-step that
failed in :attr:`SkyportError.operation`; the deployment orchestrator tags
the failing step in :attr:`SkyportError.step`.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

NETWORK = "network"
TARGET = "target"
USER_INPUT = "user-input"
CONFIGURATION = "configuration"
REMEDIATION = "remediation"


class SkyportError(Exception):
    """Base class for every error skyport raises on purpose."""

    category = TARGET
    exit_code = 1

    def __init__(self, message: str = "", operation: str | None = None) -> None:
        """Initialise with an optional remote sub-step name."""
        super().__init__(message)
        self.operation = operation
        self.step: str | None = None


# ---------------------------------------------------------------------------
# Wire-level errors
# ---------------------------------------------------------------------------


class TransportError(SkyportError):
    """Connection refused, reset, closed or timed out at the socket layer."""

    category = NETWORK
    exit_code = 3


class ProtocolError(SkyportError):
    """A response line could not be parsed as ``<3-digit code> <text>``."""

    category = TARGET
    exit_code = 4


class ParseError(ProtocolError):
    """A response payload (e.g. the PASV address) was malformed."""


class UnexpectedStatus(SkyportError):
    """A command's status code fell outside the accepted range."""

    category = TARGET
    exit_code = 4

    def __init__(self, code: int, text: str = "", operation: str | None = None) -> None:
        """Initialise with the offending status *code* and its text."""
        message = f"Unexpected status {code}"
        if text:
            message = f"{message}: {text}"
        super().__init__(message, operation=operation)
        self.code = code
        self.text = text


# ---------------------------------------------------------------------------
# Local errors
# ---------------------------------------------------------------------------


class PathResolutionError(SkyportError):
    """An install path could not be resolved."""

    category = USER_INPUT
    exit_code = 2


class InvalidPathPrefix(PathResolutionError):
    """An install path started with an unrecognised ``xx:/`` prefix."""

    def __init__(self, path: str) -> None:
        """Initialise with the rejected *path*."""
        super().__init__(
            f"Unrecognised install path {path!r}: expected a 'sd:/' or 'rom:/' prefix"
        )
        self.path = path


class UnsafeArgumentError(SkyportError):
    """A command argument contained characters that would corrupt the command stream."""

    category = USER_INPUT
    exit_code = 2


class ConfigurationError(SkyportError):
    """Local configuration is missing or invalid (IP address, title id, ...)."""

    category = CONFIGURATION
    exit_code = 6


class InvalidTitleId(ConfigurationError):
    """A title identifier was not a 64-bit hexadecimal value."""

    def __init__(self, title_id: str) -> None:
        """Initialise with the rejected *title_id*."""
        super().__init__(
            f"Invalid title id {title_id!r}: expected up to 16 hexadecimal digits"
        )
        self.title_id = title_id


class RemediationError(SkyportError):
    """Fetching or generating a missing runtime, descriptor or dependency failed."""

    category = REMEDIATION
    exit_code = 5
