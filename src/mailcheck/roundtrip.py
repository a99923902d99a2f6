# =============================================================================
# Delivery Round Trip
# =============================================================================
# Sends a uniquely labelled probe message to an account over SMTP, reads the
# most recent message back over IMAP or POP3, and compares the two.
#
# There is no polling: the message is fetched once, right after submission.
# On servers that deliver with a delay the comparison simply fails and the
# caller decides whether to try again.
# =============================================================================

import dataclasses
import logging
import ssl
from dataclasses import dataclass

from mailcheck.config import RETRIEVAL_PROTOCOLS, CheckConfig
from mailcheck.core import Account, Credentials, FetchedMessage, OutgoingMessage
from mailcheck.imap.client import IMAPClient
from mailcheck.pop3.client import POP3Client
from mailcheck.protocol import Opener, Transport
from mailcheck.smtp.client import SMTPClient

logger = logging.getLogger(__name__)


@dataclass
class RoundTripResult:
    """
    Outcome of one round trip.

    Attributes:
        via: Retrieval protocol used ("imap" or "pop3").
        sent: The probe that was submitted.
        received: The most recent message read back (None if the mailbox
                  was empty).
        deleted: Whether deletion of the received message was requested.
                 Only a message matching the probe is ever deleted.
                 Over POP3 it only takes effect if the closing QUIT succeeds.
    """
    via: str
    sent: OutgoingMessage
    received: FetchedMessage | None = None
    deleted: bool = False

    @property
    def matched(self) -> bool:
        return self.received is not None and self.received.matches(self.sent)


async def run_round_trip(
    account: Account,
    credentials: Credentials,
    unique_id: str | int,
    *,
    via: str | None = None,
    settings: CheckConfig | None = None,
    opener: Opener = Transport.open,
    ssl_context: ssl.SSLContext | None = None,
) -> RoundTripResult:
    """
    Send a probe to the account and read it back.

    Args:
        account: The account under test (the probe goes to and from its email).
        credentials: Used for SMTP and for the retrieval server.
        unique_id: Label that makes this probe's subject and body unique.
        via: "imap" or "pop3"; overrides settings.retrieve_via.
        settings: Retrieval protocol, mailbox, timeouts, deletion policy.
        opener: Connection factory (Transport.open, or a fake in tests).
        ssl_context: TLS settings for all connections.

    Returns:
        RoundTripResult; check `.matched`.

    Raises:
        ValueError: If the retrieval protocol is not "imap" or "pop3".
        MailError: If any protocol step fails.
    """
    settings = settings or CheckConfig()
    if via is not None:
        settings = dataclasses.replace(settings, retrieve_via=via)
    if settings.retrieve_via not in RETRIEVAL_PROTOCOLS:
        raise ValueError(f"Unknown retrieval protocol: {settings.retrieve_via}")

    message = OutgoingMessage.probe(account.email, unique_id)
    result = RoundTripResult(via=settings.retrieve_via, sent=message)

    # Send
    smtp = SMTPClient(
        account, credentials, settings=settings, opener=opener, ssl_context=ssl_context
    )
    try:
        await smtp.connect()
        await smtp.send(message)
    finally:
        await smtp.disconnect()

    # Receive
    if settings.retrieve_via == "imap":
        retriever = IMAPClient(
            account, credentials, settings=settings, opener=opener, ssl_context=ssl_context
        )
    else:
        retriever = POP3Client(
            account, credentials, settings=settings, opener=opener, ssl_context=ssl_context
        )

    try:
        await retriever.connect()
        if isinstance(retriever, IMAPClient):
            result.received = await retriever.fetch_latest(settings.mailbox)
        else:
            result.received = await retriever.fetch_latest()

        # Never delete mail that is not our own message
        if settings.delete_after_fetch and result.matched:
            await retriever.delete(result.received.sequence_number)
            result.deleted = True
    finally:
        await retriever.disconnect()

    if result.matched:
        logger.info(f"Round trip via {result.via} succeeded: {message.subject}")
    else:
        logger.warning(
            f"Round trip via {result.via} did not match: sent {message.subject!r}, "
            f"got {result.received.subject if result.received else None!r}"
        )
    return result
