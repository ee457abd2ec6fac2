"""Download collaborator for runtime distributions and plugin dependencies."""

from __future__ import annotations

import io
import logging
import zipfile
import zlib

import requests

from skyport.errors import RemediationError
from skyport.utils.path_helpers import human_readable_size

logger = logging.getLogger(__name__)

DEFAULT_RUNTIME_URL = "https://github.com/skyline-dev/skyline/releases/download/beta/skyline.zip"
RUNTIME_MEMBER = "exefs/subsdk9"
DOWNLOAD_TIMEOUT = 60.0  # seconds


class Fetcher:
    """Fetches remote bytes over HTTP(S)."""

    def __init__(self, timeout: float = DOWNLOAD_TIMEOUT) -> None:
        self.timeout = timeout

    def fetch_bytes(self, url: str) -> bytes:
        """Return the body of *url*.

        Raises:
            RemediationError: Network failure or a non-2xx response.
        """
        logger.info("Downloading %s", url)
        try:
            response = requests.get(url, timeout=self.timeout, allow_redirects=True)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise RemediationError(f"Download of {url} failed: {exc}") from exc
        data = response.content
        logger.debug("Downloaded %s from %s", human_readable_size(len(data)), url)
        return data

    def fetch_runtime(self, url: str = DEFAULT_RUNTIME_URL, member: str = RUNTIME_MEMBER) -> bytes:
        """Download the runtime distribution zip and return its *member*.

        Raises:
            RemediationError: Download failed, the archive is not a zip, or
                its *member* is missing or cannot be decompressed.
        """
        archive = self.fetch_bytes(url)
        return extract_member(archive, member, source=url)


def extract_member(archive: bytes, member: str, source: str = "archive") -> bytes:
    """Return *member* from the zip *archive*."""
    try:
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            return zf.read(member)
    except KeyError as exc:
        raise RemediationError(f"{source} has no {member}") from exc
    except zipfile.BadZipFile as exc:
        raise RemediationError(f"{source} is not a valid zip archive: {exc}") from exc
    except (zlib.error, EOFError, RuntimeError, NotImplementedError) as exc:
        raise RemediationError(f"{source} has an unreadable {member}: {exc}") from exc
