# =============================================================================
# POP3 Session
# =============================================================================
# Drives one POP3 conversation (RFC 1939) over a LineFramer:
#
#   AUTHORIZATION --USER/PASS or APOP--> TRANSACTION --QUIT--> UPDATE --> CLOSED
#
# Deletion semantics follow POP3 exactly: DELE only marks a message. The
# server removes marked messages when it enters UPDATE, which happens only
# after a clean QUIT. A session that is aborted, fails or simply drops the
# connection before QUIT deletes nothing. IMAP behaves differently (STORE
# \Deleted + EXPUNGE take effect immediately); callers relying on deletion
# must quit() a POP3 session.
# =============================================================================

import hashlib
import logging
import re
from dataclasses import dataclass
from enum import Enum, auto

from mailcheck import codec
from mailcheck.core import Credentials, FetchedMessage
from mailcheck.protocol.errors import AuthError, ProtocolError
from mailcheck.protocol.framer import LineFramer
from mailcheck.protocol.session import ResponseStatus, Session

logger = logging.getLogger(__name__)

# APOP timestamp in the greeting, e.g. <1896.697170952@dbc.mtview.ca.us>
_TIMESTAMP = re.compile(rb"<[^<>\s]+>")


class POP3State(Enum):
    AUTHORIZATION = auto()
    TRANSACTION = auto()
    UPDATE = auto()
    CLOSED = auto()


@dataclass
class POP3Reply:
    """A single-line status reply: "+OK text", "-ERR text" or "+ challenge"."""
    status: ResponseStatus
    text: str

    @property
    def ok(self) -> bool:
        return self.status is ResponseStatus.POSITIVE

    @classmethod
    def parse(cls, line: bytes) -> "POP3Reply":
        """
        Raises:
            ProtocolError: If the line is not a POP3 status line.
        """
        if line.startswith(b"+OK"):
            status = ResponseStatus.POSITIVE
            rest = line[3:]
        elif line.startswith(b"-ERR"):
            status = ResponseStatus.NEGATIVE
            rest = line[4:]
        elif line.startswith(b"+ ") or line == b"+":
            status = ResponseStatus.CONTINUATION
            rest = line[1:]
        else:
            raise ProtocolError("Malformed POP3 status line", fragment=line)
        return cls(status, rest.strip().decode("utf-8", errors="replace"))


class POP3Session(Session):
    """
    POP3 client session over an already connected transport.

    Usage:
        >>> session = POP3Session(LineFramer(transport))
        >>> await session.read_greeting()
        >>> await session.login(Credentials("me@example.com", "secret"))
        >>> count = await session.list_messages()
        >>> message = await session.fetch_message(count)
        >>> await session.mark_deleted(count)
        >>> await session.quit()   # deletion happens here, and only here

    Attributes:
        greeting: The server's +OK banner, once read.
        timestamp: APOP timestamp from the banner, if the server sent one.
        deleted: Message numbers marked with DELE in this session.
    """

    PROTOCOL = "pop3"
    TERMINAL_STATE = POP3State.CLOSED

    def __init__(self, framer: LineFramer) -> None:
        super().__init__(framer, POP3State.AUTHORIZATION)
        self.greeting: POP3Reply | None = None
        self.timestamp: bytes | None = None
        self.deleted: set[int] = set()

    # =========================================================================
    # Authorization state
    # =========================================================================

    async def read_greeting(self) -> POP3Reply:
        """
        Read the server banner.

        Raises:
            ProtocolError: If the server greets with -ERR.
        """
        async with self._operation("greeting", POP3State.AUTHORIZATION):
            return await self._read_greeting()

    async def login(self, credentials: Credentials) -> None:
        """
        Log in with USER and PASS.

        Raises:
            AuthError: If either command is answered with -ERR.
        """
        async with self._operation("auth", POP3State.AUTHORIZATION):
            if self.greeting is None:
                await self._read_greeting()
            logger.debug(f"Authenticating as {credentials.username}")
            await self._command(f"USER {credentials.username}", error=AuthError)
            await self._command(
                f"PASS {credentials.secret}", masked="PASS ****", error=AuthError
            )
            self.state = POP3State.TRANSACTION

    async def apop(self, credentials: Credentials) -> None:
        """
        Log in with APOP (MD5 of the greeting timestamp and the secret).

        Raises:
            AuthError: If the server sent no timestamp or rejects the digest.
        """
        async with self._operation("auth", POP3State.AUTHORIZATION):
            if self.greeting is None:
                await self._read_greeting()
            if self.timestamp is None:
                raise AuthError("Server greeting has no APOP timestamp")
            digest = hashlib.md5(
                self.timestamp + credentials.secret.encode("utf-8")
            ).hexdigest()
            await self._command(
                f"APOP {credentials.username} {digest}",
                masked=f"APOP {credentials.username} ****",
                error=AuthError,
            )
            self.state = POP3State.TRANSACTION

    # =========================================================================
    # Transaction state
    # =========================================================================

    async def stat(self) -> tuple[int, int]:
        """
        Returns:
            (message count, maildrop size in octets)
        """
        async with self._operation("STAT", POP3State.TRANSACTION):
            reply = await self._command("STAT")
            parts = reply.text.split()
            if len(parts) < 2 or not parts[0].isdigit() or not parts[1].isdigit():
                raise ProtocolError(
                    "Malformed STAT reply", fragment=reply.text.encode("utf-8")
                )
            return int(parts[0]), int(parts[1])

    async def list_messages(self) -> int:
        """Returns the number of messages in the maildrop."""
        count, _ = await self.stat()
        return count

    async def fetch(self, index: int) -> bytes:
        """
        Retrieve message `index` (1-based) with RETR.

        Returns:
            The raw message, dot-stuffing removed, CRLF line endings.
        """
        _check_index(index)
        async with self._operation("RETR", POP3State.TRANSACTION):
            return await self._retrieve(index)

    async def fetch_message(self, index: int) -> FetchedMessage:
        """Retrieve message `index` and decode it."""
        _check_index(index)
        async with self._operation("RETR", POP3State.TRANSACTION):
            raw = await self._retrieve(index)
            return codec.decode(raw, index, dot_stuffed=False)

    async def mark_deleted(self, index: int) -> None:
        """
        Mark message `index` for deletion (DELE).

        Nothing is removed until quit() completes.
        """
        _check_index(index)
        async with self._operation("DELE", POP3State.TRANSACTION):
            await self._command(f"DELE {index}")
            self.deleted.add(index)

    async def reset(self) -> None:
        """Unmark every message marked in this session (RSET)."""
        async with self._operation("RSET", POP3State.TRANSACTION):
            await self._command("RSET")
            self.deleted.clear()

    async def noop(self) -> None:
        async with self._operation("NOOP", POP3State.TRANSACTION):
            await self._command("NOOP")

    async def quit(self) -> None:
        """
        Send QUIT and close the connection.

        From TRANSACTION this passes through UPDATE, where the server commits
        the deletions marked in this session.
        """
        async with self._operation("QUIT"):
            if self.state is POP3State.TRANSACTION:
                self.state = POP3State.UPDATE
            reply = await self._command("QUIT")
            if self.deleted:
                logger.info(f"Deleted {len(self.deleted)} message(s): {reply.text}")
            await self._terminate()

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _read_greeting(self) -> POP3Reply:
        reply = POP3Reply.parse(await self._read_line())
        if not reply.ok:
            raise ProtocolError(
                f"Server refused connection: {reply.text}",
                stage="greeting",
                server_text=reply.text,
            )
        self.greeting = reply
        match = _TIMESTAMP.search(reply.text.encode("utf-8"))
        self.timestamp = match.group(0) if match else None
        return reply

    async def _command(
        self,
        line: str,
        *,
        masked: str | None = None,
        error: type[ProtocolError] = ProtocolError,
    ) -> POP3Reply:
        await self._send_line(line, masked=masked)
        reply = POP3Reply.parse(await self._read_line())
        if not reply.ok:
            command = (masked or line).split(" ", 1)[0]
            raise error(
                f"{command} failed: {reply.text}", server_text=reply.text
            )
        return reply

    async def _retrieve(self, index: int) -> bytes:
        await self._command(f"RETR {index}")
        lines = await self._read_multiline()
        return b"".join(line + b"\r\n" for line in lines)

    async def _read_multiline(self) -> list[bytes]:
        """Read lines up to the lone "." terminator and remove dot-stuffing."""
        lines = []
        while True:
            line = await self.framer.read_line()
            if line == b".":
                break
            lines.append(line)
        logger.debug(f"pop3 S: <{len(lines)} lines>")
        return codec.dot_unstuff(lines)


def _check_index(index: int) -> None:
    if index < 1:
        raise ValueError(f"POP3 message numbers start at 1, got {index}")
