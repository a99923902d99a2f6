# =============================================================================
# mailcheck Core Module
# =============================================================================
# Core domain models. These are pure Python dataclasses with no external
# dependencies, so they can be imported anywhere (protocol sessions, config,
# tests) without circular imports.
#
#   - Account: connection details for the account under test
#   - Credentials: username + secret handed to a session
#   - OutgoingMessage: the probe we submit
#   - FetchedMessage: what we read back
#   - MessageFlags: IMAP system flags
# =============================================================================

from mailcheck.core.account import SECURITY_MODES, Account
from mailcheck.core.message import (
    Credentials,
    FetchedMessage,
    MessageFlags,
    OutgoingMessage,
)

__all__ = [
    "Account",
    "SECURITY_MODES",
    "Credentials",
    "OutgoingMessage",
    "FetchedMessage",
    "MessageFlags",
]
