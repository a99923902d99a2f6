# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the mailcheck test suite.
#
# The fake servers below speak just enough SMTP, POP3 and IMAP to drive the
# sessions end to end without a network. Each one owns an asyncio
# StreamReader (what the client reads) and a FakeWriter (what the client
# writes); every complete line the client writes is answered immediately by
# feeding reply bytes into the reader.
#
# Servers must be created inside a running event loop (i.e. from an async
# test or from a fake opener), because StreamReader binds to the loop.
# =============================================================================

import asyncio
import base64
import hashlib
import re

import pytest

from mailcheck.core import Account, Credentials
from mailcheck.imap.parser import parse_sequence_set, parse_values
from mailcheck.protocol import LineFramer, Transport

USERNAME = "test@example.com"
SECRET = "hunter2"

_CLIENT_LITERAL = re.compile(rb"\{(\d+)\}$")


# =============================================================================
# Plumbing
# =============================================================================

class Maildrop:
    """Messages shared by the fake servers, as raw CRLF bytes (unstuffed)."""

    def __init__(self, messages: list[bytes] | None = None) -> None:
        self.messages: list[bytes] = list(messages or [])


class FakeWriter:
    """Stands in for asyncio.StreamWriter; hands written bytes to the server."""

    def __init__(self, server: "FakeServer") -> None:
        self.server = server
        self.closed = False
        self.tls_hostname: str | None = None
        self.tls = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("writer is closed")
        self.server.receive(bytes(data))

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.server.disconnected()

    def is_closing(self) -> bool:
        return self.closed

    async def wait_closed(self) -> None:
        pass

    async def start_tls(self, context, server_hostname=None) -> None:
        self.tls = True
        self.tls_hostname = server_hostname


class FakeServer:
    """
    Base for the scripted servers.

    Subclasses implement handle_line(); they answer with send() / send_lines().
    """

    greeting: bytes = b""

    def __init__(self, maildrop: Maildrop | None = None) -> None:
        self.maildrop = maildrop if maildrop is not None else Maildrop()
        self.reader = asyncio.StreamReader()
        self.writer = FakeWriter(self)
        self.received: list[bytes] = []
        self.eof = False
        # When set, lines are recorded but never answered
        self.muted = False
        self._buffer = b""
        self._partial = b""
        self._literal_needed = 0
        if self.greeting:
            self.send(self.greeting)

    # -- client side helpers --------------------------------------------------

    def transport(self) -> Transport:
        return Transport(self.reader, self.writer, peer="fake")

    def framer(self, **kwargs) -> LineFramer:
        return LineFramer(self.transport(), **kwargs)

    # -- server side ----------------------------------------------------------

    def send(self, data: bytes) -> None:
        if not self.eof:
            self.reader.feed_data(data)

    def send_lines(self, *lines: bytes) -> None:
        self.send(b"".join(line + b"\r\n" for line in lines))

    def hang_up(self) -> None:
        """Close the connection from the server side."""
        if not self.eof:
            self.eof = True
            self.reader.feed_eof()

    def disconnected(self) -> None:
        self.hang_up()

    def receive(self, data: bytes) -> None:
        if self.eof:
            return
        self._buffer += data
        while True:
            if self._literal_needed:
                if len(self._buffer) < self._literal_needed:
                    return
                self._partial += self._buffer[:self._literal_needed]
                self._buffer = self._buffer[self._literal_needed:]
                self._literal_needed = 0
                continue
            index = self._buffer.find(b"\r\n")
            if index == -1:
                return
            line = self._partial + self._buffer[:index]
            self._buffer = self._buffer[index + 2:]
            self._partial = b""
            if self.muted:
                self.received.append(line)
                continue
            self.handle_line(line)

    def expect_literal(self, line: bytes, size: int) -> None:
        """Collect `size` raw bytes after `line` before the command continues."""
        self._partial = line + b"\r\n"
        self._literal_needed = size

    def handle_line(self, line: bytes) -> None:
        raise NotImplementedError


# =============================================================================
# SMTP
# =============================================================================

class FakeSMTPServer(FakeServer):
    """
    A submission server that delivers accepted messages into the maildrop.

    Args:
        banner: First line sent on connect.
        extensions: EHLO keywords to advertise (STARTTLS is dropped after TLS).
        ehlo: Whether EHLO is understood (False answers 502).
        reject: Map of command verb to a reply line replacing the normal one.
    """

    def __init__(
        self,
        maildrop: Maildrop | None = None,
        *,
        banner: bytes = b"220 smtp.example.com ESMTP ready",
        extensions: tuple[str, ...] = ("SIZE 35882577", "AUTH PLAIN LOGIN", "STARTTLS"),
        ehlo: bool = True,
        reject: dict[str, bytes] | None = None,
        username: str = USERNAME,
        secret: str = SECRET,
    ) -> None:
        self.extensions = list(extensions)
        self.greeting = banner + b"\r\n"
        self.ehlo = ehlo
        self.reject = reject or {}
        self.username = username
        self.secret = secret
        self.in_data = False
        self.data_lines: list[bytes] = []
        self.auth_step: str | None = None
        self.login_user = ""
        self.envelope: list[bytes] = []
        super().__init__(maildrop)

    def handle_line(self, line: bytes) -> None:
        self.received.append(line)

        if self.in_data:
            if line == b".":
                self.in_data = False
                unstuffed = [l[1:] if l.startswith(b".") else l for l in self.data_lines]
                self.maildrop.messages.append(b"".join(l + b"\r\n" for l in unstuffed))
                self.data_lines = []
                self.send_lines(b"250 2.0.0 Ok: queued as 4F2A1")
            else:
                self.data_lines.append(line)
            return

        if self.auth_step == "username":
            self.login_user = base64.b64decode(line).decode()
            self.auth_step = "password"
            self.send_lines(b"334 UGFzc3dvcmQ6")
            return
        if self.auth_step == "password":
            self.auth_step = None
            password = base64.b64decode(line).decode()
            self._auth_result(self.login_user, password)
            return

        verb = line.split(b" ", 1)[0].split(b":", 1)[0].upper().decode()
        if verb in self.reject:
            self.send_lines(self.reject[verb])
            return

        if verb == "EHLO":
            if not self.ehlo:
                self.send_lines(b"502 5.5.2 Error: command not recognized")
                return
            lines = [b"smtp.example.com"] + [e.encode() for e in self.extensions]
            replies = [b"250-" + l for l in lines[:-1]] + [b"250 " + lines[-1]]
            self.send_lines(*replies)
        elif verb == "HELO":
            self.send_lines(b"250 smtp.example.com")
        elif verb == "STARTTLS":
            self.extensions = [e for e in self.extensions if e != "STARTTLS"]
            self.send_lines(b"220 2.0.0 Ready to start TLS")
        elif verb == "AUTH":
            parts = line.split(b" ")
            mechanism = parts[1].upper()
            if mechanism == b"PLAIN":
                _, user, password = base64.b64decode(parts[2]).decode().split("\0")
                self._auth_result(user, password)
            elif mechanism == b"LOGIN":
                self.auth_step = "username"
                self.send_lines(b"334 VXNlcm5hbWU6")
            else:
                self.send_lines(b"504 5.5.4 Unrecognized authentication type")
        elif verb in ("MAIL", "RCPT"):
            self.envelope.append(line)
            self.send_lines(b"250 2.1.0 Ok")
        elif verb == "DATA":
            self.in_data = True
            self.send_lines(b"354 End data with <CR><LF>.<CR><LF>")
        elif verb == "QUIT":
            self.send_lines(b"221 2.0.0 Bye")
        else:
            self.send_lines(b"500 5.5.2 Error: command not recognized")

    def _auth_result(self, user: str, password: str) -> None:
        if user == self.username and password == self.secret:
            self.send_lines(b"235 2.7.0 Authentication successful")
        else:
            self.send_lines(b"535 5.7.8 Error: authentication failed")


# =============================================================================
# POP3
# =============================================================================

class FakePOP3Server(FakeServer):
    """
    A POP3 server over the maildrop. DELE marks; only QUIT removes.
    """

    APOP_TIMESTAMP = b"<1896.697170952@dbc.mtview.ca.us>"
    greeting = b"+OK POP3 server ready " + APOP_TIMESTAMP + b"\r\n"

    def __init__(
        self,
        maildrop: Maildrop | None = None,
        *,
        username: str = USERNAME,
        secret: str = SECRET,
    ) -> None:
        self.username = username
        self.secret = secret
        self.user: str | None = None
        self.authenticated = False
        self.marked: set[int] = set()
        super().__init__(maildrop)

    def handle_line(self, line: bytes) -> None:
        self.received.append(line)
        parts = line.decode().split(" ")
        verb, args = parts[0].upper(), parts[1:]

        if verb == "USER":
            self.user = args[0]
            self.send_lines(b"+OK send PASS")
        elif verb == "PASS":
            if self.user == self.username and " ".join(args) == self.secret:
                self.authenticated = True
                self.send_lines(b"+OK maildrop locked and ready")
            else:
                self.send_lines(b"-ERR [AUTH] invalid password")
        elif verb == "APOP":
            expected = hashlib.md5(self.APOP_TIMESTAMP + self.secret.encode()).hexdigest()
            if args == [self.username, expected]:
                self.authenticated = True
                self.send_lines(b"+OK maildrop locked and ready")
            else:
                self.send_lines(b"-ERR permission denied")
        elif not self.authenticated and verb != "QUIT":
            self.send_lines(b"-ERR not authenticated")
        elif verb == "STAT":
            size = sum(len(m) for m in self.maildrop.messages)
            self.send_lines(b"+OK %d %d" % (len(self.maildrop.messages), size))
        elif verb == "RETR":
            index = int(args[0])
            if not 1 <= index <= len(self.maildrop.messages) or index in self.marked:
                self.send_lines(b"-ERR no such message")
                return
            raw = self.maildrop.messages[index - 1]
            lines = raw.split(b"\r\n")
            if lines and lines[-1] == b"":
                lines.pop()
            stuffed = [b"." + l if l.startswith(b".") else l for l in lines]
            self.send_lines(b"+OK %d octets" % len(raw), *stuffed, b".")
        elif verb == "DELE":
            index = int(args[0])
            if not 1 <= index <= len(self.maildrop.messages):
                self.send_lines(b"-ERR no such message")
                return
            self.marked.add(index)
            self.send_lines(b"+OK message %d deleted" % index)
        elif verb == "RSET":
            self.marked.clear()
            self.send_lines(b"+OK")
        elif verb == "NOOP":
            self.send_lines(b"+OK")
        elif verb == "QUIT":
            if self.authenticated and self.marked:
                self.maildrop.messages[:] = [
                    m for i, m in enumerate(self.maildrop.messages, 1)
                    if i not in self.marked
                ]
            self.send_lines(b"+OK bye")
        else:
            self.send_lines(b"-ERR unknown command")


# =============================================================================
# IMAP
# =============================================================================

class FakeIMAPServer(FakeServer):
    """
    An IMAP server with a single mailbox, INBOX, backed by the maildrop.

    Args:
        greeting_kind: "OK", "PREAUTH" or "BYE".
        pushes: Untagged lines sent before the next tagged completion
                (simulates server pushes such as new-mail EXISTS).
    """

    def __init__(
        self,
        maildrop: Maildrop | None = None,
        *,
        greeting_kind: str = "OK",
        username: str = USERNAME,
        secret: str = SECRET,
    ) -> None:
        self.greeting = (
            b"* %s [CAPABILITY IMAP4rev1 LITERAL+] server ready\r\n"
            % greeting_kind.encode()
        )
        self.username = username
        self.secret = secret
        self.pushes: list[bytes] = []
        self.flags: dict[int, set[str]] = {}
        self.selected = False
        super().__init__(maildrop)

    def handle_line(self, line: bytes) -> None:
        literal = _CLIENT_LITERAL.search(line)
        if literal:
            self.expect_literal(line, int(literal.group(1)))
            self.send_lines(b"+ Ready for literal data")
            return

        self.received.append(line)
        tag, _, rest = line.partition(b" ")
        verb, _, arguments = rest.partition(b" ")
        verb = verb.upper().decode()
        args = parse_values(arguments)
        handler = getattr(self, f"_do_{verb.lower()}", None)
        if handler is None:
            self.send_lines(tag + b" BAD unknown command")
            return
        handler(tag, args)

    def _complete(self, tag: bytes, text: bytes, *untagged: bytes) -> None:
        pushes, self.pushes = self.pushes, []
        self.send_lines(*untagged, *pushes, tag + b" " + text)

    def _do_capability(self, tag, args):
        self._complete(tag, b"OK CAPABILITY completed", b"* CAPABILITY IMAP4rev1 IDLE")

    def _do_login(self, tag, args):
        user, password = (a.decode() if isinstance(a, bytes) else a for a in args)
        if user == self.username and password == self.secret:
            self._complete(tag, b"OK LOGIN completed")
        else:
            self._complete(tag, b"NO [AUTHENTICATIONFAILED] Invalid credentials")

    def _do_select(self, tag, args):
        if str(args[0]).upper() != "INBOX":
            self._complete(tag, b"NO [NONEXISTENT] No such mailbox")
            return
        self.selected = True
        self._complete(
            tag,
            b"OK [READ-WRITE] SELECT completed",
            b"* %d EXISTS" % len(self.maildrop.messages),
            b"* 0 RECENT",
            b"* FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)",
            b"* OK [UIDVALIDITY 3857529045] UIDs valid",
        )

    def _do_fetch(self, tag, args):
        numbers = parse_sequence_set(args[0], len(self.maildrop.messages))
        items = args[1] if isinstance(args[1], list) else [args[1]]
        items = [str(i).upper() for i in items]
        untagged = []
        for number in sorted(numbers):
            if not 1 <= number <= len(self.maildrop.messages):
                continue
            parts = []
            if "FLAGS" in items:
                parts.append(
                    b"FLAGS (%s)" % " ".join(sorted(self.flags.get(number, ()))).encode()
                )
            if "BODY.PEEK[]" in items or "BODY[]" in items:
                raw = self.maildrop.messages[number - 1]
                parts.append(b"BODY[] {%d}\r\n" % len(raw) + raw)
            untagged.append(b"* %d FETCH (%s)" % (number, b" ".join(parts)))
        self._complete(tag, b"OK FETCH completed", *untagged)

    def _do_store(self, tag, args):
        numbers = parse_sequence_set(args[0], len(self.maildrop.messages))
        action = args[1].upper()
        for number in numbers:
            flags = self.flags.setdefault(number, set())
            if action.startswith("+"):
                flags.update(args[2])
            else:
                flags.difference_update(args[2])
        self._complete(tag, b"OK STORE completed")

    def _expunge(self) -> list[int]:
        removed = sorted(
            (n for n, f in self.flags.items() if "\\Deleted" in f), reverse=True
        )
        for number in removed:
            del self.maildrop.messages[number - 1]
        self.flags = {}
        return removed

    def _do_expunge(self, tag, args):
        untagged = [b"* %d EXPUNGE" % n for n in self._expunge()]
        self._complete(tag, b"OK EXPUNGE completed", *untagged)

    def _do_close(self, tag, args):
        self._expunge()
        self.selected = False
        self._complete(tag, b"OK CLOSE completed")

    def _do_noop(self, tag, args):
        self._complete(tag, b"OK NOOP completed")

    def _do_logout(self, tag, args):
        self._complete(tag, b"OK LOGOUT completed", b"* BYE IMAP server logging out")


# =============================================================================
# Helpers
# =============================================================================

def probe_bytes(unique_id: str | int = 1700000000000) -> bytes:
    """A delivered probe message, as a server would store it."""
    return (
        b"From: test@example.com\r\n"
        b"To: test@example.com\r\n"
        b"Subject: Test email subject: %s\r\n"
        b"Date: Tue, 14 Nov 2023 22:13:20 +0000\r\n"
        b"Message-ID: <probe@example.com>\r\n"
        b"\r\n"
        b"Test email text: %s\r\n"
    ) % (str(unique_id).encode(), str(unique_id).encode())


class FakeOpener:
    """
    Replacement for Transport.open that connects to fake servers by host.

    Usage:
        opener = FakeOpener({"smtp.example.com": lambda: FakeSMTPServer(drop)})
        client = SMTPClient(account, credentials, opener=opener)
    """

    def __init__(self, factories: dict) -> None:
        self.factories = factories
        self.opened: list[tuple[str, int, str]] = []
        self.servers: list[FakeServer] = []

    async def __call__(self, host, port, *, security="ssl", timeout=30.0, ssl_context=None):
        self.opened.append((host, port, security))
        server = self.factories[host]()
        self.servers.append(server)
        return server.transport()


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def sample_account():
    """Create a sample Account for testing."""
    return Account(
        name="test",
        email=USERNAME,
        display_name="Test User",
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_security="starttls",
        imap_host="imap.example.com",
        imap_port=993,
        imap_security="ssl",
        pop3_host="pop.example.com",
        pop3_port=995,
        pop3_security="ssl",
    )


@pytest.fixture
def credentials():
    """Credentials the fake servers accept."""
    return Credentials(username=USERNAME, secret=SECRET)


@pytest.fixture
def maildrop():
    """An empty shared maildrop."""
    return Maildrop()
