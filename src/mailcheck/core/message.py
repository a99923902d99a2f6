# =============================================================================
# Message Models
# =============================================================================
# Value types passed between the caller and the protocol sessions:
#   - Credentials: login name + secret, supplied by the caller per call
#   - OutgoingMessage: what we submit over SMTP
#   - FetchedMessage: what we get back over IMAP or POP3
#   - MessageFlags: IMAP system flags as a bitmask
#
# Outgoing values are frozen: once built they are handed to a session by value
# and nobody mutates them. A FetchedMessage belongs to the caller as soon as a
# session returns it.
# =============================================================================

from dataclasses import dataclass, field
from enum import IntFlag


@dataclass(frozen=True)
class Credentials:
    """
    Login credentials for one server.

    The secret is excluded from repr() so credentials can appear in log
    messages and tracebacks without leaking the password.
    """
    username: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class OutgoingMessage:
    """
    A plain-text message to submit over SMTP.

    Attributes:
        from_address: Envelope and header sender.
        to_address: Envelope and header recipient.
        subject: Subject line (may contain non-ASCII, it gets RFC 2047 encoded).
        body_text: Plain text body. Line endings are normalised on encode.
    """
    from_address: str
    to_address: str
    subject: str
    body_text: str

    @classmethod
    def probe(cls, address: str, unique_id: str | int) -> "OutgoingMessage":
        """
        Build the round-trip probe message sent to and from one address.

        The unique id is supplied by the caller (a timestamp, a counter, a
        uuid...) so the same probe can be recognised when fetched back.

        Example:
            >>> OutgoingMessage.probe("me@example.com", 1700000000000).subject
            'Test email subject: 1700000000000'
        """
        return cls(
            from_address=address,
            to_address=address,
            subject=f"Test email subject: {unique_id}",
            body_text=f"Test email text: {unique_id}",
        )


@dataclass
class FetchedMessage:
    """
    A message retrieved over IMAP or POP3 and decoded for comparison.

    Attributes:
        subject: Decoded Subject header, surrounding whitespace removed.
        body_text: Decoded plain text body, trailing whitespace removed.
        sequence_number: Server sequence number (IMAP) or message index (POP3).
        headers: All header fields as (name, raw value) pairs, in order.
    """
    subject: str
    body_text: str
    sequence_number: int = 0
    headers: list[tuple[str, str]] = field(default_factory=list)

    def header(self, name: str) -> str | None:
        """Returns the first header with the given name (case-insensitive)."""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    def matches(self, message: OutgoingMessage) -> bool:
        """True if subject and body equal what was sent."""
        return (
            self.subject == message.subject.strip()
            and self.body_text == message.body_text.rstrip()
        )


class MessageFlags(IntFlag):
    """
    IMAP system flags (RFC 3501), stored as a bitmask.

    Usage:
        flags = MessageFlags.from_imap(["\\Seen", "\\Deleted"])
        if flags & MessageFlags.DELETED:
            ...
        flags.to_imap()  # ['\\Seen', '\\Deleted']
    """
    NONE = 0
    SEEN = 1 << 0       # \Seen
    ANSWERED = 1 << 1   # \Answered
    FLAGGED = 1 << 2    # \Flagged
    DELETED = 1 << 3    # \Deleted
    DRAFT = 1 << 4      # \Draft

    @classmethod
    def from_imap(cls, atoms: list[str]) -> "MessageFlags":
        """Convert a list of IMAP flag atoms. Unknown keywords are ignored."""
        result = cls.NONE
        for atom in atoms:
            member = _FLAG_ATOMS.get(atom.upper())
            if member is not None:
                result |= member
        return result

    def to_imap(self) -> list[str]:
        """Convert back to IMAP flag atoms, in declaration order."""
        return [
            atom for atom, member in _ATOM_ORDER
            if member and self & member
        ]


_ATOM_ORDER = [
    ("\\Seen", MessageFlags.SEEN),
    ("\\Answered", MessageFlags.ANSWERED),
    ("\\Flagged", MessageFlags.FLAGGED),
    ("\\Deleted", MessageFlags.DELETED),
    ("\\Draft", MessageFlags.DRAFT),
]
_FLAG_ATOMS = {atom.upper(): member for atom, member in _ATOM_ORDER}
