# =============================================================================
# Session Base
# =============================================================================
# Shared plumbing for the SMTP, POP3 and IMAP sessions:
#   - the current state and the terminal state
#   - a guard around every public operation that checks the required state
#     and, on any MailError or cancellation, ends the session and closes
#     its transport
#   - command logging with secrets masked
#
# A session is bound to one transport for its whole life. Once it reaches its
# terminal state (QUIT/LOGOUT, protocol error or transport failure) it is
# never reused.
# =============================================================================

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum, auto
from typing import AsyncIterator

from mailcheck.protocol.errors import MailError, ProtocolError
from mailcheck.protocol.framer import LineFramer

logger = logging.getLogger(__name__)


class ResponseStatus(Enum):
    """
    Protocol-neutral classification of a terminal server reply.

        POSITIVE:     SMTP 2xx, POP3 +OK, IMAP OK
        NEGATIVE:     SMTP 4xx/5xx, POP3 -ERR, IMAP NO/BAD
        CONTINUATION: SMTP 3xx, POP3/IMAP "+" (server wants more input)
    """
    POSITIVE = auto()
    NEGATIVE = auto()
    CONTINUATION = auto()


class Session:
    """
    Base class for a protocol session bound to one LineFramer.

    Subclasses set PROTOCOL and TERMINAL_STATE and wrap each public
    operation in `async with self._operation(stage, *allowed_states):`.
    """

    PROTOCOL = "mail"
    TERMINAL_STATE: Enum

    def __init__(self, framer: LineFramer, initial_state: Enum) -> None:
        self.framer = framer
        self.state = initial_state

    @property
    def is_terminated(self) -> bool:
        """True once the session has ended and must not be used again."""
        return self.state == self.TERMINAL_STATE

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        # Leaving the block without a clean quit/logout just drops the connection
        if not self.is_terminated:
            await self.abort()

    async def abort(self) -> None:
        """
        End the session immediately by closing the transport.

        No goodbye is sent. For POP3 this means pending deletions are dropped.
        """
        logger.debug(f"{self.PROTOCOL}: aborting session in state {self.state.name}")
        await self._terminate()

    # =========================================================================
    # Helpers for subclasses
    # =========================================================================

    @asynccontextmanager
    async def _operation(self, stage: str, *allowed: Enum) -> AsyncIterator[None]:
        """
        Run one operation: check state, and terminate the session on failure.

        Args:
            stage: Name of the step, recorded on any error raised inside.
            allowed: States in which the operation is valid (empty = any
                     non-terminal state).
        """
        try:
            if self.is_terminated:
                raise ProtocolError(f"{self.PROTOCOL} session is closed")
            if allowed and self.state not in allowed:
                raise ProtocolError(
                    f"{stage} is not valid in state {self.state.name}"
                )
            yield
        except MailError as e:
            if e.stage is None:
                e.stage = stage
            logger.warning(f"{self.PROTOCOL}: {e}")
            await self._terminate()
            raise
        except asyncio.CancelledError:
            # A reply may still be in flight, so the stream is out of step
            logger.warning(f"{self.PROTOCOL}: {stage} cancelled, closing session")
            await self._terminate()
            raise

    async def _terminate(self) -> None:
        self.state = self.TERMINAL_STATE
        await self.framer.transport.close()

    def _check_command(self, line: str, masked: str | None = None) -> None:
        """Refuse command text that would split into several lines on the wire."""
        if "\r" in line or "\n" in line:
            shown = masked if masked is not None else line
            raise ProtocolError(
                "Command must not contain CR or LF",
                fragment=shown.encode("utf-8", "replace"),
            )

    async def _send_line(self, line: str, *, masked: str | None = None) -> None:
        """
        Send one command line.

        Args:
            line: The full command text, without CRLF.
            masked: What to log instead of `line` when it carries a secret.

        Raises:
            ProtocolError: If `line` contains CR or LF. Nothing is sent.
        """
        self._check_command(line, masked)
        logger.debug(f"{self.PROTOCOL} C: {masked if masked is not None else line}")
        await self.framer.write_line(line.encode("utf-8"))

    async def _read_line(self) -> bytes:
        line = await self.framer.read_line()
        logger.debug(f"{self.PROTOCOL} S: {line[:200]!r}")
        return line
