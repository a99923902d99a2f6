# =============================================================================
# Line Protocol Framer
# =============================================================================
# Reads and writes the units SMTP, POP3 and IMAP are built from:
#   - CRLF-terminated text lines
#   - byte-counted literals (IMAP "{n}" segments)
#
# Each call returns one complete unit or raises. Nothing is buffered across
# logical messages beyond what the underlying StreamReader holds.
# =============================================================================

import asyncio
import logging
from typing import Awaitable, TypeVar

from mailcheck.protocol.errors import MailTimeoutError, ProtocolError, TransportError
from mailcheck.protocol.transport import Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")

CRLF = b"\r\n"

# More than 8 times the 1000 octet line limit of RFC 5321
DEFAULT_MAX_LINE_LENGTH = 8192


class LineFramer:
    """
    Line and literal framing over a Transport.

    Attributes:
        transport: The connection being framed.
        timeout: Seconds to wait for each read (None waits forever).
        max_line_length: Longest line accepted, terminator excluded.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        timeout: float | None = 30.0,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
    ) -> None:
        self.transport = transport
        self.timeout = timeout
        self.max_line_length = max_line_length

    # =========================================================================
    # Writing
    # =========================================================================

    async def write_line(self, data: bytes) -> None:
        """Send one line; CRLF is appended here."""
        await self.write(data + CRLF)

    async def write(self, data: bytes) -> None:
        """
        Send raw bytes and flush.

        Raises:
            TransportError: If the connection is closed or breaks.
        """
        if self.transport.closed:
            raise TransportError("Connection is closed")
        try:
            self.transport.writer.write(data)
            await self._bounded(self.transport.writer.drain())
        except (ConnectionError, OSError) as e:
            raise TransportError(f"Connection lost while sending: {e}") from e

    # =========================================================================
    # Reading
    # =========================================================================

    async def read_line(self) -> bytes:
        """
        Read one line and return it without its CRLF (or bare LF) terminator.

        Raises:
            TransportError: If the connection closes before a full line arrives.
            MailTimeoutError: If no line arrives within the timeout.
            ProtocolError: If the line is longer than max_line_length.
        """
        try:
            line = await self._bounded(self.transport.reader.readuntil(b"\n"))
        except asyncio.IncompleteReadError as e:
            raise TransportError(
                "Connection closed by server", fragment=e.partial or None
            ) from e
        except asyncio.LimitOverrunError as e:
            raise ProtocolError(
                f"Line exceeds {self.max_line_length} bytes"
            ) from e
        except (ConnectionError, OSError) as e:
            raise TransportError(f"Connection lost while reading: {e}") from e

        line = line[:-1]
        if line.endswith(b"\r"):
            line = line[:-1]

        if len(line) > self.max_line_length:
            raise ProtocolError(
                f"Line exceeds {self.max_line_length} bytes",
                fragment=line[:self.max_line_length],
            )
        return line

    async def read_literal(self, size: int) -> bytes:
        """
        Read exactly `size` bytes, whatever they contain.

        Raises:
            TransportError: If the connection closes first.
            MailTimeoutError: If the bytes do not arrive within the timeout.
        """
        try:
            return await self._bounded(self.transport.reader.readexactly(size))
        except asyncio.IncompleteReadError as e:
            raise TransportError(
                f"Connection closed after {len(e.partial)} of {size} literal bytes",
                fragment=e.partial or None,
            ) from e
        except (ConnectionError, OSError) as e:
            raise TransportError(f"Connection lost while reading: {e}") from e

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        """Await with the configured timeout, mapped to MailTimeoutError."""
        if self.timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise MailTimeoutError(
                f"No response within {self.timeout}s"
            ) from e
