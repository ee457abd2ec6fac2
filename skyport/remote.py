"""Remote filesystem operations over a :class:`ControlChannel`.

Each listing or upload opens a fresh passive data channel; the control
channel is reused for the whole run.  Nothing here retries: callers decide
whether a failure is fatal, expected, or worth remediating.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator

from skyport.connection import (
    STATUS_OPENING_DATA,
    ControlChannel,
    PassiveDataChannel,
)
from skyport.errors import SkyportError, UnexpectedStatus
from skyport.utils.path_helpers import human_readable_size

logger = logging.getLogger(__name__)

PROBE_SIZE = 2  # bytes read from a LIST to tell "empty" from "has an entry"
POST_WRITE_DELAY = 0.5  # seconds, used only when not awaiting the completion reply

# Sub-step names attached to errors as ``SkyportError.operation``.
OP_MKDIR = "directory creation"
OP_PROBE = "existence probe"
OP_LIST = "listing"
OP_DELETE = "deletion"
OP_TRANSFER = "transfer"


@contextmanager
def _operation(name: str) -> Iterator[None]:
    """Tag any :class:`SkyportError` escaping the block with sub-step *name*."""
    try:
        yield
    except SkyportError as exc:
        if exc.operation is None:
            exc.operation = name
        raise


class RemoteFileOps:
    """mkdir / exists / list / delete / put against the console's FTP server."""

    def __init__(
        self,
        control: ControlChannel,
        await_transfer_complete: bool = True,
        post_write_delay: float = POST_WRITE_DELAY,
    ) -> None:
        """Initialise on an authenticated *control* channel.

        Args:
            control: Connected, logged-in control channel.
            await_transfer_complete: After a ``STOR``, wait for the server's
                completion reply.  When False, sleep *post_write_delay*
                and read one status line best-effort instead, for servers
                that never send the final reply.
            post_write_delay: Fixed delay used in the fallback mode.
        """
        self.control = control
        self.await_transfer_complete = await_transfer_complete
        self.post_write_delay = post_write_delay

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    def mkdir(self, path: str) -> None:
        """Create *path* with ``MKD``.

        Raises:
            UnexpectedStatus: The server refused, e.g. because it exists.
        """
        with _operation(OP_MKDIR):
            self.control.command("MKD", path)
            self.control.expect_success()
        logger.debug("Created remote directory %s", path)

    def ensure_dir(self, path: str) -> bool:
        """Best-effort :meth:`mkdir`; returns False if the server refused."""
        try:
            self.mkdir(path)
            return True
        except UnexpectedStatus as exc:
            logger.debug("MKD %s refused (%d), assuming it exists", path, exc.code)
            return False

    # ------------------------------------------------------------------
    # Probing and listing
    # ------------------------------------------------------------------

    def exists(self, path: str) -> bool:
        """Return True if ``LIST path`` yields at least one entry.

        A refused ``LIST`` means the path is absent.  Failures to negotiate
        the data channel are raised, not treated as absence.
        """
        with _operation(OP_PROBE):
            with PassiveDataChannel.open(self.control) as channel:
                self.control.command("LIST", path)
                response = self.control.read_response()
                if not response.is_success:
                    logger.debug("LIST %s refused (%d): absent", path, response.code)
                    return False
                self.control.read_line()
                probe = channel.read_probe(PROBE_SIZE)

        found = len(probe) > 1
        logger.debug("Probe %s: %s", path, "present" if found else "absent")
        return found

    def list(self, directory: str | None = None) -> str:
        """Return the raw ``LIST`` text of *directory* (or the working directory).

        Raises:
            UnexpectedStatus: The server refused the listing.
        """
        with _operation(OP_LIST):
            with PassiveDataChannel.open(self.control) as channel:
                if directory is not None:
                    self.control.change_dir(directory)
                self.control.command("LIST")
                self.control.expect_success()
                data = channel.read_all()
        return data.decode("utf-8", errors="replace")

    # ------------------------------------------------------------------
    # Deletion and upload
    # ------------------------------------------------------------------

    def delete(self, path: str) -> bool:
        """Send ``DELE path`` and report whether the server accepted it.

        The reply is read but a refusal is not an error.
        """
        with _operation(OP_DELETE):
            self.control.command("DELE", path)
            response = self.control.read_response()
        if not response.is_success:
            logger.debug("DELE %s refused (%d)", path, response.code)
        return response.is_success

    def remove(self, path: str) -> None:
        """Delete *path*, requiring the server to accept it."""
        with _operation(OP_DELETE):
            self.control.clear_pending()
            self.control.command("DELE", path)
            self.control.expect_success()
        logger.info("Deleted %s", path)

    def put(self, path: str, data: bytes) -> None:
        """Upload *data* to *path*.

        Sequence: best-effort ``DELE`` → ``TYPE I`` → ``PASV`` → ``STOR`` →
        write → close data channel → completion reply.
        """
        with _operation(OP_TRANSFER):
            self.control.clear_pending()
            self.delete(path)
            self.control.command("TYPE", "I")
            self.control.expect_success()

            with PassiveDataChannel.open(self.control) as channel:
                self.control.command("STOR", path)
                channel.write_all(bytes(data))

            if self.await_transfer_complete:
                self._await_completion()
            else:
                time.sleep(self.post_write_delay)
                self.control.read_line()

        logger.info("Uploaded %s to %s", human_readable_size(len(data)), path)

    def _await_completion(self) -> None:
        """Consume the ``STOR`` reply and, after a ``150``, the final 2xx."""
        response = self.control.expect_success()
        if response.code == STATUS_OPENING_DATA:
            final = self.control.read_response()
            if not 200 <= final.code <= 299:
                raise UnexpectedStatus(final.code, final.text)
