# =============================================================================
# Account Model
# =============================================================================
# Represents a mail account under test. This includes connection details for
# SMTP (submission) and for both retrieval protocols, IMAP and POP3.
#
# IMPORTANT: Passwords are NOT stored here. They are retrieved from the system
# keyring at runtime using the 'keyring' library (see mailcheck.config). This
# keeps credentials secure and out of config files.
# =============================================================================

from dataclasses import dataclass

# Accepted values for the *_security fields
SECURITY_MODES = ("ssl", "starttls", "plain")


@dataclass
class Account:
    """
    Represents a mail account with SMTP, IMAP and POP3 configuration.

    Attributes:
        name: A unique identifier for this account (e.g., "gmail", "work").
              Used as the key in config files and for keyring lookups.
        email: The email address associated with this account. The round
               trip sends the probe from and to this address.
        display_name: Name shown in the "From" header. Defaults to the email.
        username: Login name for all three servers. Defaults to the email.

        smtp_host: Hostname of the SMTP server (e.g., "smtp.gmail.com").
        smtp_port: 465 for SSL, 587 for STARTTLS (default), 25 for plain.
        smtp_security: "ssl", "starttls" or "plain".

        imap_host: Hostname of the IMAP server (e.g., "imap.gmail.com").
        imap_port: 993 for SSL (default), 143 for plain.
        imap_security: "ssl" or "plain".

        pop3_host: Hostname of the POP3 server (e.g., "pop.gmail.com").
        pop3_port: 995 for SSL (default), 110 for plain.
        pop3_security: "ssl" or "plain".

        enabled: Whether this account is checked at all.

    Example:
        >>> account = Account(
        ...     name="gmail",
        ...     email="someone@gmail.com",
        ...     smtp_host="smtp.gmail.com",
        ...     imap_host="imap.gmail.com",
        ...     pop3_host="pop.gmail.com",
        ... )
    """

    # Account identification
    name: str
    email: str
    display_name: str = ""
    username: str = ""

    # SMTP configuration (for sending the probe)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_security: str = "starttls"

    # IMAP configuration (for retrieving it)
    imap_host: str = ""
    imap_port: int = 993
    imap_security: str = "ssl"

    # POP3 configuration (alternative retrieval path)
    pop3_host: str = ""
    pop3_port: int = 995
    pop3_security: str = "ssl"

    enabled: bool = True

    def __post_init__(self) -> None:
        """Fill in display name and username from the email if not provided."""
        if not self.display_name:
            self.display_name = self.email
        if not self.username:
            self.username = self.email

    @property
    def keyring_service(self) -> str:
        """
        Returns the service name used for keyring password storage.

        The password can be managed via the keyring CLI:
            keyring set mailcheck:gmail someone@gmail.com
        """
        return f"mailcheck:{self.name}"

    def server(self, protocol: str) -> tuple[str, int, str]:
        """
        Returns (host, port, security) for "smtp", "imap" or "pop3".

        Raises:
            ValueError: If the protocol name is unknown.
        """
        if protocol not in ("smtp", "imap", "pop3"):
            raise ValueError(f"Unknown protocol: {protocol}")
        return (
            getattr(self, f"{protocol}_host"),
            getattr(self, f"{protocol}_port"),
            getattr(self, f"{protocol}_security"),
        )

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"

    def __repr__(self) -> str:
        return (
            f"Account(name={self.name!r}, email={self.email!r}, "
            f"smtp={self.smtp_host}:{self.smtp_port}, "
            f"imap={self.imap_host}:{self.imap_port}, "
            f"pop3={self.pop3_host}:{self.pop3_port})"
        )
