# =============================================================================
# SMTP Module
# =============================================================================
# Message submission over SMTP (RFC 5321).
#
# Features:
#   - EHLO with HELO fallback, extension parsing
#   - STARTTLS upgrade
#   - AUTH PLAIN and AUTH LOGIN
#   - MAIL / RCPT / DATA with dot-stuffed payloads
# =============================================================================

from mailcheck.smtp.client import SMTPClient
from mailcheck.smtp.session import SMTPReply, SMTPSession, SMTPState

__all__ = [
    "SMTPClient",
    "SMTPSession",
    "SMTPState",
    "SMTPReply",
]
