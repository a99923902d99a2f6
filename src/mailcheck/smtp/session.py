# =============================================================================
# SMTP Session
# =============================================================================
# Drives one SMTP submission conversation (RFC 5321) over a LineFramer:
#
#   CONNECTED --greet--> GREETED --authenticate--> AUTHENTICATED
#       ^                  |  \                          |
#       '----starttls------'   '--begin_message----------'
#                                      |
#                                 MAIL_STARTED --add_recipient--> RECIPIENT_ADDED
#                                                                   |
#                                      ready state <--250-- DATA_SENDING
#
# quit() (or any error) ends in DONE. One command is outstanding at a time.
# Unexpected reply codes are surfaced as ProtocolError with the code and the
# server text; nothing is retried here.
# =============================================================================

import base64
import logging
import ssl
from dataclasses import dataclass, field
from email.utils import parseaddr
from enum import Enum, auto

from mailcheck import codec
from mailcheck.core import Credentials, OutgoingMessage
from mailcheck.protocol.errors import AuthError, ProtocolError
from mailcheck.protocol.framer import LineFramer
from mailcheck.protocol.session import ResponseStatus, Session

logger = logging.getLogger(__name__)


class SMTPState(Enum):
    CONNECTED = auto()
    GREETED = auto()
    AUTHENTICATED = auto()
    MAIL_STARTED = auto()
    RECIPIENT_ADDED = auto()
    DATA_SENDING = auto()
    DONE = auto()


@dataclass
class SMTPReply:
    """
    One (possibly multi-line) SMTP reply.

    Attributes:
        code: The 3-digit reply code.
        lines: Text of each line, code and separator removed.
    """
    code: int
    lines: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @property
    def status(self) -> ResponseStatus:
        if 200 <= self.code < 300:
            return ResponseStatus.POSITIVE
        if 300 <= self.code < 400:
            return ResponseStatus.CONTINUATION
        return ResponseStatus.NEGATIVE


class SMTPSession(Session):
    """
    SMTP client session over an already connected transport.

    Usage:
        >>> session = SMTPSession(LineFramer(transport))
        >>> await session.greet()
        >>> await session.authenticate(Credentials("me@example.com", "secret"))
        >>> await session.submit(message)
        >>> await session.quit()

    Attributes:
        banner: The 220 greeting, once read.
        extensions: EHLO keywords (upper case) mapped to their parameters.
    """

    PROTOCOL = "smtp"
    TERMINAL_STATE = SMTPState.DONE

    def __init__(self, framer: LineFramer, *, local_hostname: str = "localhost") -> None:
        super().__init__(framer, SMTPState.CONNECTED)
        self.local_hostname = local_hostname
        self.banner: SMTPReply | None = None
        self.extensions: dict[str, str] = {}
        # State to return to after a message has been accepted
        self._ready_state = SMTPState.GREETED

    # =========================================================================
    # Properties
    # =========================================================================

    def has_extension(self, name: str) -> bool:
        return name.upper() in self.extensions

    @property
    def auth_mechanisms(self) -> list[str]:
        """AUTH mechanisms advertised in the EHLO reply."""
        return self.extensions.get("AUTH", "").upper().split()

    # =========================================================================
    # Commands
    # =========================================================================

    async def greet(self, hostname: str | None = None) -> SMTPReply:
        """
        Read the server banner (first time only) and introduce ourselves.

        Sends EHLO and falls back to HELO if the server does not know EHLO.

        Returns:
            The 250 reply to EHLO/HELO.

        Raises:
            ProtocolError: If the banner is not 220 or the greeting is refused.
        """
        async with self._operation("EHLO", SMTPState.CONNECTED):
            if self.banner is None:
                self.banner = await self.read_reply()
                self._expect(self.banner, (220,), "greeting")

            name = hostname or self.local_hostname
            await self._send_line(f"EHLO {name}")
            reply = await self.read_reply()

            if reply.code in (500, 502):
                # Pre-ESMTP server
                logger.debug("EHLO not supported, falling back to HELO")
                reply = await self._command(f"HELO {name}", (250,), "HELO")
                self.extensions = {}
            else:
                self._expect(reply, (250,), "EHLO")
                self.extensions = self._parse_extensions(reply)

            self.state = SMTPState.GREETED
            self._ready_state = SMTPState.GREETED
            return reply

    async def starttls(
        self,
        ssl_context: ssl.SSLContext | None = None,
        server_hostname: str | None = None,
    ) -> None:
        """
        Upgrade the connection to TLS.

        After this the session is back in CONNECTED and greet() must be
        called again; extensions advertised before TLS are forgotten.
        """
        async with self._operation("STARTTLS", SMTPState.GREETED):
            if not self.has_extension("STARTTLS"):
                raise ProtocolError("Server does not support STARTTLS")
            await self._command("STARTTLS", (220,), "STARTTLS")
            await self.framer.transport.start_tls(ssl_context, server_hostname)
            self.extensions = {}
            self.state = SMTPState.CONNECTED

    async def authenticate(
        self,
        credentials: Credentials,
        mechanism: str | None = None,
    ) -> None:
        """
        Log in with AUTH PLAIN or AUTH LOGIN.

        Args:
            credentials: Username and secret.
            mechanism: "PLAIN" or "LOGIN"; picked from the server's list
                       when not given (PLAIN preferred).

        Raises:
            AuthError: If the server rejects the credentials.
        """
        async with self._operation("auth", SMTPState.GREETED):
            mechanism = (mechanism or self._choose_mechanism()).upper()
            logger.debug(f"Authenticating as {credentials.username} via {mechanism}")

            if mechanism == "PLAIN":
                token = _b64(f"\0{credentials.username}\0{credentials.secret}")
                await self._command(
                    f"AUTH PLAIN {token}", (235,), "auth",
                    masked="AUTH PLAIN ****", error=AuthError,
                )
            elif mechanism == "LOGIN":
                await self._command("AUTH LOGIN", (334,), "auth", error=AuthError)
                await self._command(
                    _b64(credentials.username), (334,), "auth", error=AuthError,
                )
                await self._command(
                    _b64(credentials.secret), (235,), "auth",
                    masked="****", error=AuthError,
                )
            else:
                raise AuthError(f"Unsupported AUTH mechanism: {mechanism}")

            self.state = SMTPState.AUTHENTICATED
            self._ready_state = SMTPState.AUTHENTICATED

    async def begin_message(self, from_address: str) -> None:
        """Send MAIL FROM for a new message."""
        async with self._operation(
            "MAIL FROM", SMTPState.GREETED, SMTPState.AUTHENTICATED
        ):
            await self._command(f"MAIL FROM:<{from_address}>", (250,), "MAIL FROM")
            self.state = SMTPState.MAIL_STARTED

    async def add_recipient(self, to_address: str) -> None:
        """Send RCPT TO. May be called repeatedly for several recipients."""
        async with self._operation(
            "RCPT TO", SMTPState.MAIL_STARTED, SMTPState.RECIPIENT_ADDED
        ):
            await self._command(f"RCPT TO:<{to_address}>", (250, 251), "RCPT TO")
            self.state = SMTPState.RECIPIENT_ADDED

    async def send(self, message: OutgoingMessage | bytes) -> SMTPReply:
        """
        Send DATA, the encoded message and the terminating "." line.

        Args:
            message: An OutgoingMessage (encoded here) or bytes that are
                     already dot-stuffed and CRLF terminated.

        Returns:
            The server's 250 reply (usually carries the queue id).
        """
        async with self._operation("DATA", SMTPState.RECIPIENT_ADDED):
            payload = codec.encode(message) if isinstance(message, OutgoingMessage) else message
            if not payload.endswith(b"\r\n"):
                payload += b"\r\n"

            await self._command("DATA", (354,), "DATA")
            self.state = SMTPState.DATA_SENDING

            logger.debug(f"smtp C: <{len(payload)} bytes of message data>")
            await self.framer.write(payload + b".\r\n")
            reply = await self.read_reply()
            self._expect(reply, (250,), "DATA")

            self.state = self._ready_state
            logger.info(f"Message accepted: {reply.text}")
            return reply

    async def submit(self, message: OutgoingMessage) -> SMTPReply:
        """MAIL FROM, RCPT TO and DATA for one message."""
        await self.begin_message(_mailbox(message.from_address))
        await self.add_recipient(_mailbox(message.to_address))
        return await self.send(message)

    async def quit(self) -> None:
        """Send QUIT, expect 221 and close the connection."""
        async with self._operation("QUIT"):
            await self._command("QUIT", (221,), "QUIT")
            await self._terminate()

    # =========================================================================
    # Reply handling
    # =========================================================================

    async def read_reply(self) -> SMTPReply:
        """
        Read one reply, following "NNN-" continuation lines.

        Raises:
            ProtocolError: If a line does not start with a 3-digit code, or
                           the code changes between lines.
        """
        reply: SMTPReply | None = None
        while True:
            line = await self._read_line()
            code_text = line[:3]
            separator = line[3:4]
            if len(code_text) != 3 or not code_text.isdigit() or separator not in (b"", b" ", b"-"):
                raise ProtocolError("Malformed SMTP reply", fragment=line)

            code = int(code_text)
            text = line[4:].decode("utf-8", errors="replace")
            if reply is None:
                reply = SMTPReply(code)
            elif code != reply.code:
                raise ProtocolError(
                    f"Reply code changed from {reply.code} to {code}", fragment=line
                )
            reply.lines.append(text)

            if separator != b"-":
                return reply

    async def _command(
        self,
        line: str,
        expected: tuple[int, ...],
        stage: str,
        *,
        masked: str | None = None,
        error: type[ProtocolError] = ProtocolError,
    ) -> SMTPReply:
        await self._send_line(line, masked=masked)
        reply = await self.read_reply()
        self._expect(reply, expected, stage, error)
        return reply

    @staticmethod
    def _expect(
        reply: SMTPReply,
        expected: tuple[int, ...],
        stage: str,
        error: type[ProtocolError] = ProtocolError,
    ) -> None:
        if reply.code not in expected:
            raise error(
                f"{stage} failed with {reply.code}: {reply.text}",
                stage=stage,
                code=reply.code,
                server_text=reply.text,
            )

    @staticmethod
    def _parse_extensions(reply: SMTPReply) -> dict[str, str]:
        """
        Parse EHLO keywords. The first line is the server's greeting.

            250-smtp.example.com Hello
            250-SIZE 35882577
            250-AUTH LOGIN PLAIN
            250 STARTTLS
        """
        extensions = {}
        for line in reply.lines[1:]:
            keyword, _, params = line.strip().partition(" ")
            if keyword:
                extensions[keyword.upper()] = params
        return extensions

    def _choose_mechanism(self) -> str:
        offered = self.auth_mechanisms
        if not offered or "PLAIN" in offered:
            return "PLAIN"
        if "LOGIN" in offered:
            return "LOGIN"
        raise AuthError(f"No supported AUTH mechanism in {offered}")


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def _mailbox(address: str) -> str:
    """The bare mailbox of "Name <box@host>", for the envelope."""
    if "\r" in address or "\n" in address:
        # Left intact so the command check refuses it
        return address
    return parseaddr(address)[1] or address
