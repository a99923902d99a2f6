# =============================================================================
# Protocol Errors
# =============================================================================
# One exception hierarchy shared by the SMTP, POP3 and IMAP sessions:
#
#   MailError
#   ├── TransportError        connection refused / lost, EOF mid-response
#   │   └── MailTimeoutError  no response within the deadline
#   └── ProtocolError         malformed, unexpected or out-of-sequence reply
#       └── AuthError         credentials rejected
#
# Every one of them is terminal for the session that raised it. Retrying is
# the caller's business, with a fresh session on a fresh connection.
# =============================================================================


class MailError(Exception):
    """
    Base exception for all mail protocol failures.

    Attributes:
        stage: Which step failed ("connect", "greeting", "auth", "MAIL FROM",
               "FETCH", ...). Filled in by the session if not given.
        code: Numeric SMTP reply code, when there is one.
        server_text: The server's reply text, when there is one.
        fragment: Raw bytes that could not be parsed, for diagnosis.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        code: int | None = None,
        server_text: str | None = None,
        fragment: bytes | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.code = code
        self.server_text = server_text
        self.fragment = fragment

    def __str__(self) -> str:
        text = super().__str__()
        if self.stage:
            text = f"[{self.stage}] {text}"
        if self.fragment is not None:
            text = f"{text} (raw: {self.fragment[:80]!r})"
        return text


class TransportError(MailError):
    """Raised when the connection is refused, lost or closes mid-response."""
    pass


class MailTimeoutError(TransportError):
    """Raised when the server does not answer within the configured timeout."""
    pass


class ProtocolError(MailError):
    """
    Raised for a malformed or unexpected server response, or for a command
    issued in a session state that does not allow it.
    """

    @property
    def is_transient(self) -> bool:
        """True for SMTP 4xx replies, which a caller may choose to retry."""
        return self.code is not None and 400 <= self.code < 500


class AuthError(ProtocolError):
    """Raised when the server rejects the supplied credentials."""
    pass
