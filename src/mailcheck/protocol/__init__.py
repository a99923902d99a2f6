# =============================================================================
# Protocol Module
# =============================================================================
# Building blocks shared by the SMTP, POP3 and IMAP sessions:
#   - Transport: an asyncio stream connection, optionally TLS-wrapped
#   - LineFramer: CRLF lines and byte-counted literals over a Transport
#   - Session: state checking and terminal-on-error handling
#   - The error taxonomy every session raises
# =============================================================================

from mailcheck.protocol.errors import (
    AuthError,
    MailError,
    MailTimeoutError,
    ProtocolError,
    TransportError,
)
from mailcheck.protocol.framer import DEFAULT_MAX_LINE_LENGTH, LineFramer
from mailcheck.protocol.session import ResponseStatus, Session
from mailcheck.protocol.transport import Opener, Transport

__all__ = [
    # Errors
    "MailError",
    "TransportError",
    "MailTimeoutError",
    "ProtocolError",
    "AuthError",
    # Plumbing
    "Transport",
    "Opener",
    "LineFramer",
    "DEFAULT_MAX_LINE_LENGTH",
    "Session",
    "ResponseStatus",
]
