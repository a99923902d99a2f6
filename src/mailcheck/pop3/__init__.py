# =============================================================================
# POP3 Module
# =============================================================================
# Message retrieval over POP3 (RFC 1939).
#
# Deletions are only marks until QUIT moves the session into the UPDATE
# state; a session that ends any other way deletes nothing.
# =============================================================================

from mailcheck.pop3.client import POP3Client
from mailcheck.pop3.session import POP3Reply, POP3Session, POP3State

__all__ = [
    "POP3Client",
    "POP3Session",
    "POP3State",
    "POP3Reply",
]
