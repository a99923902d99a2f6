# =============================================================================
# POP3 Client
# =============================================================================
# Account-level wrapper around POP3Session: connect and log in, read the most
# recent message, mark it deleted, quit.
#
# Unlike IMAP, delete() only marks the message. The server removes it when
# disconnect() sends QUIT; if the connection is lost first, the message stays.
# =============================================================================

import logging
import ssl

from mailcheck.config import CheckConfig
from mailcheck.core import Account, Credentials, FetchedMessage
from mailcheck.pop3.session import POP3Session
from mailcheck.protocol import LineFramer, MailError, Opener, ProtocolError, Transport

logger = logging.getLogger(__name__)


class POP3Client:
    """
    POP3 client for reading probe messages back.

    Usage:
        >>> client = POP3Client(account, credentials)
        >>> await client.connect()
        >>> message = await client.fetch_latest()
        >>> await client.delete(message.sequence_number)
        >>> await client.disconnect()   # the deletion is committed here
    """

    def __init__(
        self,
        account: Account,
        credentials: Credentials,
        *,
        settings: CheckConfig | None = None,
        opener: Opener = Transport.open,
        ssl_context: ssl.SSLContext | None = None,
        use_apop: bool = False,
    ) -> None:
        self.account = account
        self.credentials = credentials
        self.settings = settings or CheckConfig()
        self.use_apop = use_apop
        self._opener = opener
        self._ssl_context = ssl_context
        self._session: POP3Session | None = None

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.is_terminated

    async def connect(self) -> None:
        """
        Connect, read the greeting and log in (USER/PASS or APOP).

        Raises:
            TransportError: If unable to connect.
            AuthError: If login fails.
        """
        host, port, security = self.account.server("pop3")
        logger.info(f"Connecting to POP3 {host}:{port}")

        transport = await self._opener(
            host,
            port,
            security=security,
            timeout=self.settings.timeout_seconds,
            ssl_context=self._ssl_context,
        )
        self._session = POP3Session(
            LineFramer(
                transport,
                timeout=self.settings.timeout_seconds,
                max_line_length=self.settings.max_line_length,
            )
        )
        await self._session.read_greeting()
        if self.use_apop:
            await self._session.apop(self.credentials)
        else:
            await self._session.login(self.credentials)
        logger.info(f"Logged in to POP3 {host} as {self.credentials.username}")

    async def fetch_latest(self) -> FetchedMessage | None:
        """
        Fetch the most recent message in the maildrop.

        Returns:
            The decoded message, or None if the maildrop is empty.
        """
        session = self._require_session()
        count = await session.list_messages()
        if not count:
            logger.info("Maildrop is empty")
            return None
        return await session.fetch_message(count)

    async def delete(self, index: int) -> None:
        """Mark a message for deletion; it is removed at disconnect()."""
        await self._require_session().mark_deleted(index)

    async def disconnect(self) -> None:
        """Send QUIT, committing any deletions."""
        if self._session is None:
            return
        try:
            if not self._session.is_terminated:
                logger.debug("Sending QUIT")
                await self._session.quit()
        except MailError as e:
            logger.warning(f"Error during POP3 quit: {e}")
        finally:
            self._session = None

    def _require_session(self) -> POP3Session:
        if not self.is_connected:
            raise ProtocolError("Not connected to POP3 server")
        return self._session
