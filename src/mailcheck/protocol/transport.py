# =============================================================================
# Transport Connection
# =============================================================================
# A duplex byte stream to one mail server, wrapping an asyncio
# StreamReader/StreamWriter pair.
#
# A Transport is owned by exactly one session at a time. TLS is delegated to
# the standard ssl module: either wrapped from the start ("ssl") or upgraded
# in place after STARTTLS. Host, port and TLS policy come from configuration;
# nothing here knows about accounts.
# =============================================================================

import asyncio
import logging
import ssl
from typing import Awaitable, Callable

from mailcheck.protocol.errors import MailTimeoutError, TransportError

logger = logging.getLogger(__name__)


class Transport:
    """
    An open connection to a mail server.

    Usage:
        >>> transport = await Transport.open("imap.example.com", 993, security="ssl")
        >>> framer = LineFramer(transport)
        >>> ...
        >>> await transport.close()

    Tests build one directly around an in-memory reader and writer:
        >>> transport = Transport(reader, writer, peer="mock")
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        peer: str = "",
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.peer = peer
        self._closed = False

    @classmethod
    async def open(
        cls,
        host: str,
        port: int,
        *,
        security: str = "ssl",
        timeout: float = 30.0,
        ssl_context: ssl.SSLContext | None = None,
    ) -> "Transport":
        """
        Connect to host:port.

        Args:
            host: Server hostname.
            port: Server port.
            security: "ssl" wraps the socket in TLS immediately. "starttls"
                      and "plain" connect in the clear (the SMTP session
                      upgrades a "starttls" connection itself).
            timeout: Seconds to wait for the TCP (and TLS) handshake.
            ssl_context: Custom context; defaults to ssl.create_default_context().

        Raises:
            MailTimeoutError: If the handshake does not finish in time.
            TransportError: If the connection is refused or fails.
        """
        peer = f"{host}:{port}"
        logger.info(f"Connecting to {peer} ({security})")

        tls = None
        if security == "ssl":
            tls = ssl_context or ssl.create_default_context()

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, ssl=tls),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise MailTimeoutError(
                f"Connection to {peer} timed out after {timeout}s", stage="connect"
            ) from e
        except (OSError, ssl.SSLError) as e:
            raise TransportError(
                f"Failed to connect to {peer}: {e}", stage="connect"
            ) from e

        logger.debug(f"Connected to {peer}")
        return cls(reader, writer, peer=peer)

    @property
    def closed(self) -> bool:
        return self._closed

    async def start_tls(
        self,
        ssl_context: ssl.SSLContext | None = None,
        server_hostname: str | None = None,
    ) -> None:
        """
        Upgrade this connection to TLS in place (after STARTTLS).

        Raises:
            TransportError: If the handshake fails.
        """
        context = ssl_context or ssl.create_default_context()
        hostname = server_hostname or self.peer.rsplit(":", 1)[0] or None
        logger.debug(f"Upgrading {self.peer} to TLS")
        try:
            await self.writer.start_tls(context, server_hostname=hostname)
        except (OSError, ssl.SSLError) as e:
            raise TransportError(f"TLS upgrade failed: {e}", stage="starttls") from e

    async def close(self) -> None:
        """
        Close the connection. Safe to call more than once.

        Any read blocked on this connection is aborted.
        """
        if self._closed:
            return
        self._closed = True
        logger.debug(f"Closing connection to {self.peer or 'server'}")
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (OSError, ssl.SSLError) as e:
            # Peer already went away; the connection is closed either way
            logger.debug(f"Error while closing {self.peer}: {e}")


# Anything with the signature of Transport.open; tests plug in fakes here
Opener = Callable[..., Awaitable[Transport]]
