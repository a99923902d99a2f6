# =============================================================================
# IMAP Response Parser
# =============================================================================
# Parses one complete server response (RFC 3501 section 7) into an
# IMAPResponse. "Complete" means every literal has already been read and
# spliced back in wire form:
#
#   * 12 FETCH (UID 44 BODY[] {11}\r\nHEL\r\nLO WOR)
#                             ^^^^^^^^^^^^^^^^^^^^^ exactly 11 bytes
#
# The parser switches to byte counting at each {n} and takes exactly n bytes,
# so CRLF sequences or parentheses inside a literal are never mistaken for
# structure.
#
# Values produced for parenthesised data:
#   atom            -> str        (NIL -> None)
#   quoted string   -> str
#   literal         -> bytes
#   (list)          -> list
#
# Also here: formatting of outgoing string arguments and sequence sets.
# =============================================================================

import re
from dataclasses import dataclass, field
from typing import Any

from mailcheck.protocol.errors import ProtocolError
from mailcheck.protocol.session import ResponseStatus

# Responses whose text is human readable, optionally led by a [CODE]
STATUS_KINDS = ("OK", "NO", "BAD", "BYE", "PREAUTH")

# Untagged responses that carry a message number before the type
NUMBERED_KINDS = ("EXISTS", "RECENT", "EXPUNGE", "FETCH")

# Untagged responses whose payload is a plain list of values
LIST_KINDS = ("CAPABILITY", "SEARCH", "FLAGS", "LIST", "LSUB", "STATUS")

# FETCH items whose values are numbers
NUMERIC_ITEMS = ("UID", "RFC822.SIZE", "MODSEQ")

# Characters that may not appear in an atom (RFC 3501 atom-specials)
_ATOM_SPECIALS = set('(){ %*"\\]')

_SEQUENCE_SET = re.compile(r"^(\d+|\*)(:(\d+|\*))?(,(\d+|\*)(:(\d+|\*))?)*$")


@dataclass
class IMAPResponse:
    """
    One parsed server response.

    Attributes:
        tag: Command tag, "*" for untagged data or "+" for a continuation.
        kind: Response type in upper case ("OK", "FETCH", "EXISTS", ...).
              Empty for continuations.
        number: Message number for EXISTS / RECENT / EXPUNGE / FETCH.
        text: Human readable text (status responses) or the raw payload.
        code: Response code from "[...]" in a status response, if any.
        data: Parsed payload: dict of items for FETCH, list for CAPABILITY,
              SEARCH, FLAGS and friends, None otherwise.
        raw: The complete response as received, literals included.
    """
    tag: str
    kind: str
    number: int | None = None
    text: str = ""
    code: str | None = None
    data: Any = None
    raw: bytes = field(default=b"", repr=False)

    @property
    def tagged(self) -> bool:
        return self.tag not in ("*", "+")

    @property
    def status(self) -> ResponseStatus | None:
        """Classification for status responses; None for server data."""
        if self.tag == "+":
            return ResponseStatus.CONTINUATION
        if self.kind in ("OK", "PREAUTH"):
            return ResponseStatus.POSITIVE
        if self.kind in ("NO", "BAD", "BYE"):
            return ResponseStatus.NEGATIVE
        return None


# =============================================================================
# Response parsing
# =============================================================================

def parse_response(raw: bytes) -> IMAPResponse:
    """
    Parse one complete response (without its final CRLF).

    Raises:
        ProtocolError: If the response is malformed. The offending bytes are
                       attached as `fragment`.
    """
    tag_bytes, _, rest = raw.partition(b" ")
    tag = tag_bytes.decode("ascii", errors="replace")
    if not tag:
        raise ProtocolError("Empty IMAP response", fragment=raw)

    if tag == "+":
        return IMAPResponse(
            tag="+", kind="", text=rest.decode("utf-8", errors="replace"), raw=raw
        )

    word, _, remainder = rest.partition(b" ")
    number = None
    if tag == "*" and word.isdigit():
        number = int(word)
        word, _, remainder = remainder.partition(b" ")

    kind = word.decode("ascii", errors="replace").upper()
    if not kind:
        raise ProtocolError("IMAP response has no type", fragment=raw)
    if tag != "*" and kind not in ("OK", "NO", "BAD"):
        raise ProtocolError(f"Tagged response with status {kind!r}", fragment=raw)
    if kind in NUMBERED_KINDS and number is None:
        raise ProtocolError(f"{kind} response without message number", fragment=raw)

    response = IMAPResponse(
        tag=tag,
        kind=kind,
        number=number,
        text=remainder.decode("utf-8", errors="replace"),
        raw=raw,
    )

    if kind in STATUS_KINDS:
        response.code, response.text = _split_code(response.text)
    elif kind == "FETCH":
        response.data = parse_fetch_items(remainder)
    elif kind in LIST_KINDS:
        response.data = parse_values(remainder)

    return response


def parse_fetch_items(data: bytes) -> dict[str, Any]:
    """
    Parse the parenthesised msg-att list of a FETCH response.

    Example:
        >>> parse_fetch_items(b'(UID 7 FLAGS (\\\\Seen) BODY[] {5}\\r\\nhello)')
        {'UID': 7, 'FLAGS': ['\\\\Seen'], 'BODY[]': b'hello'}
    """
    values = parse_values(data)
    if len(values) != 1 or not isinstance(values[0], list):
        raise ProtocolError("FETCH data is not a parenthesised list", fragment=data)

    items = values[0]
    if len(items) % 2:
        raise ProtocolError("FETCH data has an item without a value", fragment=data)

    result: dict[str, Any] = {}
    for name, value in zip(items[::2], items[1::2]):
        if not isinstance(name, str):
            raise ProtocolError("FETCH item name is not an atom", fragment=data)
        name = name.upper()
        if name in NUMERIC_ITEMS and isinstance(value, str) and value.isdigit():
            value = int(value)
        result[name] = value
    return result


def parse_values(data: bytes) -> list[Any]:
    """Parse a sequence of space separated IMAP values."""
    return _Reader(data).read_values()


def _split_code(text: str) -> tuple[str | None, str]:
    """Split "[UIDVALIDITY 3857529045] UIDs valid" into code and text."""
    if not text.startswith("["):
        return None, text
    end = text.find("]")
    if end == -1:
        return None, text
    return text[1:end], text[end + 1:].strip()


class _Reader:
    """Cursor over response bytes producing IMAP values."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def read_values(self, closing: bytes | None = None) -> list[Any]:
        values: list[Any] = []
        while True:
            self._skip_spaces()
            if self.pos >= len(self.data):
                if closing:
                    raise ProtocolError("Unterminated list", fragment=self.data)
                return values
            char = self.data[self.pos:self.pos + 1]
            if closing and char == closing:
                self.pos += 1
                return values
            values.append(self._read_value())

    def _skip_spaces(self) -> None:
        while self.data[self.pos:self.pos + 1] == b" ":
            self.pos += 1

    def _read_value(self) -> Any:
        char = self.data[self.pos:self.pos + 1]
        if char == b"(":
            self.pos += 1
            return self.read_values(b")")
        if char == b")":
            raise ProtocolError("Unbalanced ')'", fragment=self.data[self.pos:])
        if char == b'"':
            return self._read_quoted()
        if char == b"{":
            return self._read_literal()
        return self._read_atom()

    def _read_quoted(self) -> str:
        out = bytearray()
        pos = self.pos + 1
        while pos < len(self.data):
            byte = self.data[pos]
            if byte == 0x5C:  # backslash
                pos += 1
                if pos >= len(self.data):
                    break
                out.append(self.data[pos])
            elif byte == 0x22:  # closing quote
                self.pos = pos + 1
                return out.decode("utf-8", errors="replace")
            else:
                out.append(byte)
            pos += 1
        raise ProtocolError("Unterminated quoted string", fragment=self.data[self.pos:])

    def _read_literal(self) -> bytes:
        end = self.data.find(b"}", self.pos)
        size_text = self.data[self.pos + 1:end] if end != -1 else b""
        if end == -1 or not size_text.isdigit():
            raise ProtocolError(
                "Malformed literal length", fragment=self.data[self.pos:self.pos + 32]
            )
        start = end + 1
        if self.data[start:start + 2] != b"\r\n":
            raise ProtocolError(
                "Literal length not followed by CRLF", fragment=self.data[self.pos:start + 2]
            )
        start += 2
        size = int(size_text)
        if start + size > len(self.data):
            raise ProtocolError(
                f"Literal announced {size} bytes, got {len(self.data) - start}",
                fragment=self.data[self.pos:self.pos + 32],
            )
        self.pos = start + size
        return self.data[start:self.pos]

    def _read_atom(self) -> str | None:
        start = self.pos
        depth = 0
        while self.pos < len(self.data):
            byte = self.data[self.pos]
            if byte == 0x5B:  # [ opens a section spec, which may hold spaces
                depth += 1
            elif byte == 0x5D and depth:
                depth -= 1
            elif not depth and byte in b" ()":
                break
            self.pos += 1

        atom = self.data[start:self.pos]
        if not atom:
            raise ProtocolError("Expected an atom", fragment=self.data[start:start + 32])
        text = atom.decode("utf-8", errors="replace")
        return None if text.upper() == "NIL" else text


# =============================================================================
# Outgoing arguments
# =============================================================================

def encode_astring(value: str) -> tuple[bytes, bool]:
    """
    Encode a string argument (user name, password, mailbox name).

    Returns:
        (bytes to send, is_literal). Plain atoms go out as-is, other ASCII
        text is quoted with backslash escapes, and anything with line breaks
        or non-ASCII characters must be sent as a literal.
    """
    if value and value.isascii() and all(
        c.isprintable() and c not in _ATOM_SPECIALS for c in value
    ):
        return value.encode("ascii"), False

    if value.isascii() and not any(c in value for c in "\r\n\0"):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'.encode("ascii"), False

    return value.encode("utf-8"), True


def parse_sequence_set(sequence_set: str, exists: int) -> set[int]:
    """
    Expand a sequence set ("1", "2:4", "1,3:*") into message numbers.

    "*" stands for the highest message number (`exists`). Ranges are capped
    at `exists` so "1:*" on a large mailbox stays cheap.

    Raises:
        ValueError: If the string is not a valid sequence set.
    """
    if not _SEQUENCE_SET.match(sequence_set):
        raise ValueError(f"Invalid sequence set: {sequence_set!r}")

    numbers: set[int] = set()
    for part in sequence_set.split(","):
        first, _, last = part.partition(":")
        low = _sequence_number(first, exists)
        high = _sequence_number(last, exists) if last else low
        low, high = min(low, high), max(low, high)
        high = min(high, max(exists, low))
        numbers.update(range(low, high + 1))
    return numbers


def _sequence_number(text: str, exists: int) -> int:
    return exists if text == "*" else int(text)
