# =============================================================================
# mailcheck: Mail Delivery Round-Trip Checker
# =============================================================================
#
# mailcheck sends a uniquely labelled message to a mailbox over SMTP, reads
# it back over IMAP or POP3, and tells you whether it arrived intact.
#
# Everything below the command line is a small, self-contained mail client
# core:
#   - Line framing with byte-counted literals and bounded line length
#   - SMTP submission with EHLO/HELO, STARTTLS, AUTH PLAIN and LOGIN
#   - POP3 retrieval with USER/PASS or APOP, dot-unstuffing, deferred delete
#   - IMAP retrieval with tagged commands, literals and untagged tracking
#   - A message codec for plain-text messages
#   - XDG config and keyring-stored passwords
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "mailcheck"

# Main entry point - this is what gets called by the 'mailcheck' command
from mailcheck.app import main

__all__ = ["main", "__version__", "__app_name__"]
