# =============================================================================
# IMAP Client
# =============================================================================
# Account-level wrapper around IMAPSession: connect and log in, read the most
# recent message of a mailbox, delete a message, log out.
#
# Deleting over IMAP takes effect as soon as EXPUNGE completes, independent
# of how the session ends.
# =============================================================================

import logging
import ssl

from mailcheck.config import CheckConfig
from mailcheck.core import Account, Credentials, FetchedMessage, MessageFlags
from mailcheck.imap.session import IMAPSession, IMAPState
from mailcheck.protocol import LineFramer, MailError, Opener, ProtocolError, Transport

logger = logging.getLogger(__name__)


class IMAPClient:
    """
    IMAP client for reading probe messages back.

    Usage:
        >>> client = IMAPClient(account, credentials)
        >>> await client.connect()
        >>> message = await client.fetch_latest("INBOX")
        >>> await client.delete(message.sequence_number)
        >>> await client.disconnect()
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
        self._session: IMAPSession | None = None

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.is_terminated

    async def connect(self) -> None:
        """
        Connect, read the greeting and log in.

        Raises:
            TransportError: If unable to connect.
            AuthError: If login fails.
        """
        host, port, security = self.account.server("imap")
        logger.info(f"Connecting to IMAP {host}:{port}")

        transport = await self._opener(
            host,
            port,
            security=security,
            timeout=self.settings.timeout_seconds,
            ssl_context=self._ssl_context,
        )
        self._session = IMAPSession(
            LineFramer(
                transport,
                timeout=self.settings.timeout_seconds,
                max_line_length=self.settings.max_line_length,
            )
        )
        await self._session.login(self.credentials)
        logger.info(f"Logged in to IMAP {host} as {self.credentials.username}")

    async def fetch_latest(self, mailbox: str = "INBOX") -> FetchedMessage | None:
        """
        Select a mailbox and fetch its most recent message.

        Returns:
            The decoded message, or None if the mailbox is empty.
        """
        session = self._require_session()
        if session.selected_mailbox != mailbox:
            await session.select(mailbox)
        message = await session.fetch_latest()
        if message is None:
            logger.info(f"{mailbox} is empty")
        return message

    async def delete(self, number: int) -> None:
        """Flag a message \\Deleted in the selected mailbox and expunge it."""
        session = self._require_session()
        await session.store(str(number), MessageFlags.DELETED)
        await session.expunge()
        logger.debug(f"Deleted message {number} from {session.selected_mailbox}")

    async def disconnect(self) -> None:
        """Close the mailbox (if selected) and log out."""
        if self._session is None:
            return
        try:
            if self._session.state is IMAPState.SELECTED:
                await self._session.close()
            if not self._session.is_terminated:
                logger.debug("Sending LOGOUT")
                await self._session.logout()
        except MailError as e:
            logger.warning(f"Error during logout: {e}")
        finally:
            self._session = None

    def _require_session(self) -> IMAPSession:
        if not self.is_connected:
            raise ProtocolError("Not connected to IMAP server")
        return self._session
