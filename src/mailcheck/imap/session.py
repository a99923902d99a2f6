# =============================================================================
# IMAP Session
# =============================================================================
# Drives one IMAP4rev1 conversation (RFC 3501) over a LineFramer:
#
#   NOT_AUTHENTICATED --login--> AUTHENTICATED --select--> SELECTED
#                     (PREAUTH greeting skips login)   <--close--'
#   any state --logout--> LOGOUT
#
# Every command carries a unique tag (A0001, A0002, ...) and is completed by
# exactly one tagged OK/NO/BAD. Untagged responses that arrive before the
# tagged completion are attributed to the outstanding command; the ones that
# do not answer it (EXISTS pushes, FETCH for messages we did not ask about)
# are kept in `unsolicited`. One command is outstanding at a time.
#
# Reading a response switches between line mode and byte-counted mode: a
# line ending in {n} is followed by exactly n raw bytes, after which the
# response continues on the next line.
# =============================================================================

import logging
import re
from enum import Enum, auto
from typing import Any

from mailcheck import codec
from mailcheck.core import Credentials, FetchedMessage, MessageFlags
from mailcheck.imap.parser import (
    IMAPResponse,
    encode_astring,
    parse_response,
    parse_sequence_set,
)
from mailcheck.protocol.errors import AuthError, ProtocolError
from mailcheck.protocol.framer import LineFramer
from mailcheck.protocol.session import Session

logger = logging.getLogger(__name__)

# A literal announcement at the end of a line, e.g. "BODY[] {2048}"
_LITERAL_MARKER = re.compile(rb"\{([^{}\s]{0,20})\}$")

# Refuse literals larger than this (guards against unbounded buffering)
DEFAULT_MAX_LITERAL_SIZE = 64 * 1024 * 1024

# Oldest unsolicited responses are dropped beyond this many
MAX_UNSOLICITED = 1000


class IMAPState(Enum):
    NOT_AUTHENTICATED = auto()
    AUTHENTICATED = auto()
    SELECTED = auto()
    LOGOUT = auto()


class IMAPSession(Session):
    """
    IMAP client session over an already connected transport.

    Usage:
        >>> session = IMAPSession(LineFramer(transport))
        >>> await session.read_greeting()
        >>> await session.login(Credentials("me@example.com", "secret"))
        >>> count = await session.select("INBOX")
        >>> message = await session.fetch_message(count)
        >>> await session.store(str(count), MessageFlags.DELETED)
        >>> await session.expunge()
        >>> await session.logout()

    Attributes:
        capabilities: Server capabilities, upper case.
        selected_mailbox: Name of the selected mailbox, if any.
        exists: Message count of the selected mailbox (kept current from
                EXISTS / EXPUNGE responses).
        unsolicited: Untagged responses not claimed by any command. Cleared
                     on SELECT; only the newest MAX_UNSOLICITED are kept.
    """

    PROTOCOL = "imap"
    TERMINAL_STATE = IMAPState.LOGOUT

    def __init__(
        self,
        framer: LineFramer,
        *,
        tag_prefix: str = "A",
        max_literal_size: int = DEFAULT_MAX_LITERAL_SIZE,
    ) -> None:
        super().__init__(framer, IMAPState.NOT_AUTHENTICATED)
        self.tag_prefix = tag_prefix
        self.max_literal_size = max_literal_size
        self.greeting: IMAPResponse | None = None
        self.capabilities: list[str] = []
        self.selected_mailbox: str | None = None
        self.exists = 0
        self.recent = 0
        self.unsolicited: list[IMAPResponse] = []
        self._tag_counter = 0

    # =========================================================================
    # Connection setup
    # =========================================================================

    async def read_greeting(self) -> IMAPResponse:
        """
        Read the server greeting.

        "* OK" leaves the session NOT_AUTHENTICATED, "* PREAUTH" moves it to
        AUTHENTICATED, "* BYE" means the server refused us.

        Raises:
            ProtocolError: On BYE or anything that is not a greeting.
        """
        async with self._operation("greeting", IMAPState.NOT_AUTHENTICATED):
            return await self._read_greeting()

    async def capability(self) -> list[str]:
        """Ask for and return the server's capability list."""
        async with self._operation("CAPABILITY"):
            _, untagged = await self._execute("CAPABILITY")
            for response in self._claim(untagged, "CAPABILITY"):
                self.capabilities = [str(c).upper() for c in response.data or []]
            return self.capabilities

    async def login(self, credentials: Credentials) -> None:
        """
        Log in with LOGIN.

        Raises:
            AuthError: If the server answers NO.
        """
        async with self._operation("auth", IMAPState.NOT_AUTHENTICATED):
            if self.greeting is None:
                await self._read_greeting()
                if self.state is IMAPState.AUTHENTICATED:
                    logger.debug("Server sent PREAUTH, skipping LOGIN")
                    return

            logger.debug(f"Authenticating as {credentials.username}")
            await self._execute(
                "LOGIN",
                credentials.username,
                credentials.secret,
                masked=f"LOGIN {credentials.username} ****",
                error=AuthError,
            )
            self.state = IMAPState.AUTHENTICATED

    # =========================================================================
    # Mailbox operations
    # =========================================================================

    async def select(self, mailbox: str = "INBOX") -> int:
        """
        Select a mailbox for message operations.

        Returns:
            Number of messages in the mailbox (EXISTS).
        """
        async with self._operation(
            "SELECT", IMAPState.AUTHENTICATED, IMAPState.SELECTED
        ):
            # A SELECT deselects the current mailbox whatever the outcome
            self.state = IMAPState.AUTHENTICATED
            self.selected_mailbox = None
            self.exists = 0
            self.recent = 0
            self.unsolicited.clear()

            await self._execute("SELECT", mailbox)

            self.state = IMAPState.SELECTED
            self.selected_mailbox = mailbox
            logger.debug(f"Selected {mailbox}: {self.exists} messages")
            return self.exists

    async def fetch(self, sequence_set: str, items: str = "(FLAGS)") -> dict[int, dict[str, Any]]:
        """
        Fetch data items for a set of messages.

        Args:
            sequence_set: Message numbers, e.g. "1", "2:4", "1,5:*".
            items: FETCH items, e.g. "(UID FLAGS BODY.PEEK[])".

        Returns:
            Mapping of message number to {ITEM NAME: value} for the
            requested messages only.

        Raises:
            ProtocolError: If no mailbox is selected.
        """
        async with self._operation("FETCH", IMAPState.SELECTED):
            return await self._fetch(sequence_set, items)

    async def fetch_message(self, number: int) -> FetchedMessage:
        """
        Fetch one whole message without setting \\Seen, and decode it.

        Raises:
            ProtocolError: If the server does not return the message body.
        """
        async with self._operation("FETCH", IMAPState.SELECTED):
            return await self._fetch_message(number)

    async def fetch_latest(self) -> FetchedMessage | None:
        """Fetch the most recent message, or None if the mailbox is empty."""
        async with self._operation("FETCH", IMAPState.SELECTED):
            if not self.exists:
                return None
            return await self._fetch_message(self.exists)

    async def store(
        self,
        sequence_set: str,
        flag: MessageFlags | str,
        value: bool = True,
    ) -> None:
        """
        Set (value=True) or clear (value=False) a flag on messages.

        Args:
            sequence_set: Messages to change.
            flag: A MessageFlags value or a flag atom such as "\\Deleted".
            value: Whether to add or remove the flag.
        """
        atoms = flag.to_imap() if isinstance(flag, MessageFlags) else [flag]
        action = "+FLAGS.SILENT" if value else "-FLAGS.SILENT"
        parse_sequence_set(sequence_set, self.exists)
        async with self._operation("STORE", IMAPState.SELECTED):
            _, untagged = await self._execute(
                f"STORE {sequence_set} {action} ({' '.join(atoms)})"
            )
            self._keep_unsolicited(untagged)

    async def expunge(self) -> list[int]:
        """
        Permanently remove messages flagged \\Deleted.

        Returns:
            The EXPUNGE message numbers reported by the server, in order.
        """
        async with self._operation("EXPUNGE", IMAPState.SELECTED):
            _, untagged = await self._execute("EXPUNGE")
            expunged = [r.number for r in self._claim(untagged, "EXPUNGE")]
            logger.debug(f"Expunged {len(expunged)} message(s)")
            return expunged

    async def close(self) -> None:
        """
        Close the selected mailbox, removing \\Deleted messages silently.

        The session goes back to AUTHENTICATED.
        """
        async with self._operation("CLOSE", IMAPState.SELECTED):
            _, untagged = await self._execute("CLOSE")
            self._keep_unsolicited(untagged)
            self.state = IMAPState.AUTHENTICATED
            self.selected_mailbox = None

    async def noop(self) -> list[IMAPResponse]:
        """Send NOOP and return whatever the server pushed meanwhile."""
        async with self._operation("NOOP"):
            _, untagged = await self._execute("NOOP")
            return untagged

    async def logout(self) -> None:
        """Send LOGOUT, accept the BYE, and close the connection."""
        async with self._operation("LOGOUT"):
            _, untagged = await self._execute("LOGOUT")
            if not any(r.kind == "BYE" for r in untagged):
                logger.debug("Server completed LOGOUT without BYE")
            await self._terminate()

    # =========================================================================
    # Internals
    # =========================================================================

    async def _read_greeting(self) -> IMAPResponse:
        greeting = parse_response(await self._read_response())
        if greeting.tag != "*" or greeting.kind not in ("OK", "PREAUTH", "BYE"):
            raise ProtocolError("Unexpected IMAP greeting", fragment=greeting.raw)
        if greeting.kind == "BYE":
            raise ProtocolError(
                f"Server refused connection: {greeting.text}",
                stage="greeting",
                server_text=greeting.text,
            )

        self.greeting = greeting
        if greeting.code and greeting.code.upper().startswith("CAPABILITY "):
            self.capabilities = greeting.code.upper().split()[1:]
        if greeting.kind == "PREAUTH":
            self.state = IMAPState.AUTHENTICATED
        return greeting

    async def _fetch(self, sequence_set: str, items: str) -> dict[int, dict[str, Any]]:
        wanted = parse_sequence_set(sequence_set, self.exists)
        _, untagged = await self._execute(f"FETCH {sequence_set} {items}")

        results: dict[int, dict[str, Any]] = {}
        for response in self._claim(
            untagged, "FETCH", lambda r: r.number in wanted
        ):
            results.setdefault(response.number, {}).update(response.data)
        return results

    async def _fetch_message(self, number: int) -> FetchedMessage:
        data = await self._fetch(str(number), "(BODY.PEEK[])")
        body = data.get(number, {}).get("BODY[]")
        if body is None:
            raise ProtocolError(f"Server returned no body for message {number}")
        if isinstance(body, str):
            body = body.encode("utf-8")
        return codec.decode(body, number, dot_stuffed=False)

    def _next_tag(self) -> str:
        self._tag_counter += 1
        return f"{self.tag_prefix}{self._tag_counter:04d}"

    async def _execute(
        self,
        command: str,
        *arguments: str,
        masked: str | None = None,
        error: type[ProtocolError] = ProtocolError,
    ) -> tuple[IMAPResponse, list[IMAPResponse]]:
        """
        Send one tagged command and read up to its tagged completion.

        Args:
            command: Command name plus any pre-formatted arguments.
            arguments: String arguments, quoted or sent as literals here.
            masked: Text to log instead of the command (hides secrets).
            error: Exception raised when the server answers NO.

        Returns:
            (tagged completion, untagged responses received meanwhile)

        Raises:
            `error` on NO, ProtocolError on BAD or a stray tag.
        """
        self._check_command(command, masked)
        tag = self._next_tag()
        untagged: list[IMAPResponse] = []
        logger.debug(f"imap C: {tag} {masked or ' '.join((command,) + arguments)}")

        line = f"{tag} {command}".encode("utf-8")
        for argument in arguments:
            data, is_literal = encode_astring(argument)
            if not is_literal:
                line += b" " + data
                continue
            # Synchronising literal: announce, wait for "+", then send the bytes
            await self.framer.write_line(line + b" {%d}" % len(data))
            await self._await_continuation(tag, untagged, error)
            line = data
        await self.framer.write_line(line)

        while True:
            response = parse_response(await self._read_response())
            if response.tag == "*":
                self._track(response)
                untagged.append(response)
                continue
            if response.tag == "+":
                raise ProtocolError("Unexpected continuation request", fragment=response.raw)
            if response.tag != tag:
                raise ProtocolError(
                    f"Response for unknown tag {response.tag}", fragment=response.raw
                )
            self._check_completion(command, response, error)
            return response, untagged

    async def _await_continuation(
        self,
        tag: str,
        untagged: list[IMAPResponse],
        error: type[ProtocolError],
    ) -> None:
        while True:
            response = parse_response(await self._read_response())
            if response.tag == "+":
                return
            if response.tag == "*":
                self._track(response)
                untagged.append(response)
                continue
            if response.tag == tag:
                self._check_completion("literal", response, error)
            raise ProtocolError(
                "Expected continuation for literal", fragment=response.raw
            )

    @staticmethod
    def _check_completion(
        command: str,
        response: IMAPResponse,
        error: type[ProtocolError],
    ) -> None:
        if response.kind == "OK":
            return
        name = command.split(" ", 1)[0]
        exc_type = error if response.kind == "NO" else ProtocolError
        raise exc_type(
            f"{name} failed: {response.kind} {response.text}",
            stage=name,
            server_text=response.text,
        )

    def _track(self, response: IMAPResponse) -> None:
        """Keep mailbox counters current from untagged data."""
        if response.kind == "EXISTS":
            self.exists = response.number
        elif response.kind == "RECENT":
            self.recent = response.number
        elif response.kind == "EXPUNGE" and self.exists:
            self.exists -= 1

    def _claim(self, untagged, kind, predicate=None) -> list[IMAPResponse]:
        """
        Return the responses of `kind` (matching `predicate`) and move the
        rest to `unsolicited`.
        """
        claimed = []
        for response in untagged:
            if response.kind == kind and (predicate is None or predicate(response)):
                claimed.append(response)
            else:
                self._keep_unsolicited([response])
        return claimed

    def _keep_unsolicited(self, responses: list[IMAPResponse]) -> None:
        self.unsolicited.extend(responses)
        del self.unsolicited[:-MAX_UNSOLICITED]

    async def _read_response(self) -> bytes:
        """
        Read one complete response, following {n} literals.

        Returns:
            The response in wire form: each literal is kept after its {n}
            marker and CRLF, so the parser can count bytes.

        Raises:
            ProtocolError: If a literal length is malformed or too large.
        """
        buffer = bytearray()
        while True:
            line = await self._read_line()
            buffer += line

            marker = _LITERAL_MARKER.search(line)
            if marker is None:
                return bytes(buffer)

            size_text = marker.group(1)
            if not size_text.isdigit():
                raise ProtocolError("Malformed literal length", fragment=line)
            size = int(size_text)
            if size > self.max_literal_size:
                raise ProtocolError(
                    f"Literal of {size} bytes exceeds limit of {self.max_literal_size}",
                    fragment=line,
                )

            literal = await self.framer.read_literal(size)
            logger.debug(f"imap S: <literal {size} bytes>")
            buffer += b"\r\n" + literal
