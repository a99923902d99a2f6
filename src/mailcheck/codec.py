# =============================================================================
# Message Codec
# =============================================================================
# Turns an OutgoingMessage into the bytes we hand to SMTP DATA, and a fetched
# raw message back into a FetchedMessage we can compare with what was sent.
#
# Wire form produced by encode():
#   - header lines (From, To, Subject, Date, Message-ID, MIME headers)
#   - one blank line
#   - the body with CRLF line endings and dot-stuffing applied
#     (a body line starting with "." gets a second "." in front)
#
# decode() undoes the dot-stuffing when asked to. Retrieval sessions hand it
# messages the protocol layer has already unstuffed (POP3 RETR) or that were
# never stuffed (IMAP), and say so with dot_stuffed=False.
#
# Only single-part text is produced. On the way back the first text/plain
# part of a multipart message is used, which is enough to recognise a probe.
# =============================================================================

import email
import re
from email.errors import HeaderParseError
from email.header import Header, decode_header, make_header
from email.message import Message as EmailMessage
from email.utils import formataddr, formatdate, make_msgid, parseaddr

from mailcheck.core import FetchedMessage, OutgoingMessage
from mailcheck.protocol.errors import ProtocolError

CRLF = b"\r\n"

# Folded header continuation: a line break followed by whitespace
_FOLD = re.compile(r"\r?\n(?=[ \t])")


# =============================================================================
# Dot-stuffing
# =============================================================================

def dot_stuff(lines: list[bytes]) -> list[bytes]:
    """Prefix an extra "." to every line that starts with "."."""
    return [b"." + line if line.startswith(b".") else line for line in lines]


def dot_unstuff(lines: list[bytes]) -> list[bytes]:
    """Remove the extra "." added by dot_stuff()."""
    return [line[1:] if line.startswith(b".") else line for line in lines]


# =============================================================================
# Encoding
# =============================================================================

def encode(
    message: OutgoingMessage,
    *,
    date: str | None = None,
    message_id: str | None = None,
) -> bytes:
    """
    Render an outgoing message into dot-stuffed transport bytes.

    The result ends with CRLF but does NOT include the lone "." line that
    terminates SMTP DATA; the SMTP session adds that.

    Args:
        message: The message to render.
        date: Date header value (default: now, local time).
        message_id: Message-ID header value (default: generated).

    Returns:
        Header block, blank line and body, CRLF separated.

    Raises:
        ValueError: If an address or the subject contains a line break, or
                    an address has a non-ASCII mailbox part.
    """
    for name, value in (
        ("from_address", message.from_address),
        ("to_address", message.to_address),
        ("subject", message.subject),
    ):
        if "\r" in value or "\n" in value:
            raise ValueError(f"{name} must not contain line breaks")

    body = _normalise_newlines(message.body_text)
    body_bytes = body.encode("utf-8")

    headers = [
        ("From", _encode_address("from_address", message.from_address)),
        ("To", _encode_address("to_address", message.to_address)),
        ("Subject", _encode_header(message.subject)),
        ("Date", date or formatdate(localtime=True)),
        ("Message-ID", message_id or make_msgid(domain=_domain_of(message.from_address))),
        ("MIME-Version", "1.0"),
        ("Content-Type", 'text/plain; charset="utf-8"'),
        ("Content-Transfer-Encoding", "7bit" if body.isascii() else "8bit"),
    ]
    header_lines = [f"{name}: {value}".encode("ascii") for name, value in headers]
    body_lines = dot_stuff(body_bytes.split(b"\n"))

    return CRLF.join(header_lines + [b""] + body_lines) + CRLF


def _encode_header(value: str) -> str:
    """RFC 2047 encode a header value if it is not plain ASCII."""
    if value.isascii():
        return value
    return Header(value, "utf-8").encode(linesep="\r\n")


def _encode_address(field_name: str, value: str) -> str:
    """
    Render an address for a From/To header.

    A non-ASCII display name is RFC 2047 encoded; the mailbox itself must
    be ASCII.
    """
    name, address = parseaddr(value)
    if name and address.isascii():
        return formataddr((name, address))
    if not value.isascii():
        raise ValueError(f"{field_name} must have an ASCII mailbox, got {value!r}")
    return value


def _domain_of(address: str) -> str:
    _, _, domain = address.rpartition("@")
    return domain.strip("<> ") or "localhost"


def _normalise_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


# =============================================================================
# Decoding
# =============================================================================

def split_message(raw: bytes) -> tuple[bytes, bytes]:
    """
    Split a raw message at the first blank line.

    Returns:
        (header block, body). Neither includes the separator.

    Raises:
        ProtocolError: If there is no blank line at all.
    """
    if raw.startswith(CRLF):
        return b"", raw[2:]
    if raw.startswith(b"\n"):
        return b"", raw[1:]

    found = [
        (index, len(separator))
        for separator in (b"\r\n\r\n", b"\n\n")
        if (index := raw.find(separator)) != -1
    ]
    if not found:
        raise ProtocolError(
            "Message has no blank line between headers and body",
            stage="decode",
            fragment=raw[:200],
        )
    index, length = min(found)
    return raw[:index], raw[index + length:]


def decode(
    raw: bytes,
    sequence_number: int = 0,
    *,
    dot_stuffed: bool = True,
) -> FetchedMessage:
    """
    Decode a raw message into subject and body text.

    Args:
        raw: The message as fetched (headers, blank line, body).
        sequence_number: Server sequence number / POP3 index to record.
        dot_stuffed: Whether body lines still carry SMTP dot-stuffing.

    Returns:
        FetchedMessage with the decoded subject (stripped) and body text
        (LF line endings, trailing whitespace stripped).

    Raises:
        ProtocolError: If headers and body cannot be told apart.
    """
    header_block, body = split_message(raw)

    if dot_stuffed:
        lines = body.replace(CRLF, b"\n").split(b"\n")
        body = b"\n".join(dot_unstuff(lines))

    if header_block:
        parsed = email.message_from_bytes(header_block + b"\n\n" + body)
    else:
        parsed = email.message_from_bytes(b"\n" + body)

    return FetchedMessage(
        subject=decode_header_value(parsed.get("Subject", "")).strip(),
        body_text=_normalise_newlines(_text_body(parsed)).rstrip(),
        sequence_number=sequence_number,
        headers=[(name, str(value)) for name, value in parsed.items()],
    )


def decode_header_value(value: str) -> str:
    """Unfold and decode an RFC 2047 encoded header value."""
    if not value:
        return ""
    value = _FOLD.sub("", str(value))
    try:
        return str(make_header(decode_header(value)))
    except (HeaderParseError, LookupError, UnicodeDecodeError):
        # Undecodable encoded-word or unknown charset: show it as sent
        return value


def _text_body(parsed: EmailMessage) -> str:
    """Return the first text/plain payload, transfer encoding removed."""
    part = parsed
    if parsed.is_multipart():
        part = next(
            (
                p for p in parsed.walk()
                if p.get_content_type() == "text/plain"
                and p.get_content_disposition() != "attachment"
            ),
            None,
        )
        if part is None:
            return ""

    payload = part.get_payload(decode=True)
    if payload is None:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")
