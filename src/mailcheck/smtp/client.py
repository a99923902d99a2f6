# =============================================================================
# SMTP Client
# =============================================================================
# Account-level wrapper around SMTPSession.
#
# Key responsibilities:
#   - Opening the connection according to the account's security mode
#     (implicit TLS, STARTTLS upgrade, or plain)
#   - Greeting and authenticating
#   - Submitting OutgoingMessages
#   - Saying goodbye politely
#
# The transport opener is injectable so tests can plug in an in-memory
# server instead of a socket.
# =============================================================================

import logging
import ssl

from mailcheck.config import CheckConfig
from mailcheck.core import Account, Credentials, OutgoingMessage
from mailcheck.protocol import LineFramer, MailError, Opener, ProtocolError, Transport
from mailcheck.smtp.session import SMTPReply, SMTPSession

logger = logging.getLogger(__name__)


class SMTPClient:
    """
    SMTP client for submitting probe messages.

    Usage:
        >>> client = SMTPClient(account, credentials)
        >>> await client.connect()
        >>> await client.send(message)
        >>> await client.disconnect()

    Attributes:
        account: Account configuration with SMTP server details.
        settings: Timeouts and limits.
    """

    def __init__(
        self,
        account: Account,
        credentials: Credentials,
        *,
        settings: CheckConfig | None = None,
        opener: Opener = Transport.open,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self.account = account
        self.credentials = credentials
        self.settings = settings or CheckConfig()
        self._opener = opener
        self._ssl_context = ssl_context
        self._session: SMTPSession | None = None

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.is_terminated

    async def connect(self) -> None:
        """
        Connect, greet, upgrade to TLS if configured, and authenticate.

        Raises:
            TransportError: If unable to connect.
            AuthError: If authentication fails.
            ProtocolError: If the server misbehaves.
        """
        host, port, security = self.account.server("smtp")
        logger.info(f"Connecting to SMTP {host}:{port}")

        transport = await self._opener(
            host,
            port,
            security=security,
            timeout=self.settings.timeout_seconds,
            ssl_context=self._ssl_context,
        )
        session = SMTPSession(
            LineFramer(
                transport,
                timeout=self.settings.timeout_seconds,
                max_line_length=self.settings.max_line_length,
            ),
            local_hostname=self.settings.local_hostname,
        )
        self._session = session

        await session.greet()
        if security == "starttls":
            await session.starttls(self._ssl_context, host)
            await session.greet()
        await session.authenticate(self.credentials)

        logger.info(f"Authenticated to SMTP {host} as {self.credentials.username}")

    async def send(self, message: OutgoingMessage) -> SMTPReply:
        """
        Submit one message.

        Returns:
            The server's final 250 reply.

        Raises:
            ProtocolError: If not connected or the server rejects the message.
        """
        if not self.is_connected:
            raise ProtocolError("Not connected to SMTP server", stage="send")

        logger.info(f"Sending '{message.subject}' to {message.to_address}")
        return await self._session.submit(message)

    async def disconnect(self) -> None:
        """Send QUIT and drop the session."""
        if self._session is None:
            return
        try:
            if not self._session.is_terminated:
                logger.debug("Disconnecting from SMTP")
                await self._session.quit()
        except MailError as e:
            logger.warning(f"Error during SMTP disconnect: {e}")
        finally:
            self._session = None
