# =============================================================================
# IMAP Module
# =============================================================================
# Message retrieval over IMAP4rev1 (RFC 3501).
#
# Features:
#   - Tagged commands matched to their completions
#   - Literal-aware response reading and parsing
#   - EXISTS / RECENT / EXPUNGE tracking, unsolicited response queue
#   - SELECT, FETCH, STORE, EXPUNGE, CLOSE, LOGOUT
# =============================================================================

from mailcheck.imap.client import IMAPClient
from mailcheck.imap.parser import IMAPResponse, parse_fetch_items, parse_response
from mailcheck.imap.session import IMAPSession, IMAPState

__all__ = [
    "IMAPClient",
    "IMAPSession",
    "IMAPState",
    "IMAPResponse",
    "parse_response",
    "parse_fetch_items",
]
