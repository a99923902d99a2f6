# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating mailcheck configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/mailcheck/  (default: ~/.config/mailcheck/)
#
# Files:
#   - config.toml: accounts under test and round-trip settings
#
# Passwords never go in config.toml. They live in the system keyring under
# the service "mailcheck:<account name>" and are looked up by
# get_credentials() just before connecting.
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import keyring
import tomli_w  # For writing TOML (tomllib is read-only)

from mailcheck.core import SECURITY_MODES, Account, Credentials
from mailcheck.protocol.framer import DEFAULT_MAX_LINE_LENGTH

# Application identifier used in XDG paths
APP_NAME = "mailcheck"

# Retrieval protocols the round trip can use
RETRIEVAL_PROTOCOLS = ("imap", "pop3")


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for mailcheck.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/mailcheck/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class CheckConfig:
    """
    Settings for a delivery round trip.

    Attributes:
        retrieve_via: "imap" or "pop3".
        mailbox: IMAP mailbox to look in (POP3 has only one maildrop).
        timeout_seconds: Deadline for connecting and for each server reply.
        max_line_length: Longest protocol line accepted from a server.
        delete_after_fetch: Remove the probe once it has been read back.
        local_hostname: Name we announce in EHLO.
    """
    retrieve_via: str = "imap"
    mailbox: str = "INBOX"
    timeout_seconds: float = 30.0
    max_line_length: int = DEFAULT_MAX_LINE_LENGTH
    delete_after_fetch: bool = True
    local_hostname: str = "localhost"


@dataclass
class Config:
    """
    Main configuration container.

    Attributes:
        default_account: Name of the account to check when none is given.
        accounts: Configured accounts, keyed by name.
        check: Round-trip settings.

    Usage:
        >>> config = Config.load()
        >>> account = config.get_account()
        >>> credentials = get_credentials(account)
    """
    default_account: str = ""
    accounts: dict[str, Account] = field(default_factory=dict)
    check: CheckConfig = field(default_factory=CheckConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from the config file.

        If the file doesn't exist, returns the default configuration.

        Args:
            path: Config file to read (default: the XDG location).

        Raises:
            ConfigError: If the file exists but is invalid.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file {config_path}: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> Path:
        """
        Save configuration to the config file, creating its directory.

        Returns:
            The path written.
        """
        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

        return config_path

    def get_account(self, name: str | None = None) -> Account:
        """
        Look up an account by name, or the default account.

        Falls back to the only configured account when no default is set.

        Raises:
            ConfigError: If no matching account is configured.
        """
        name = name or self.default_account
        if not name and len(self.accounts) == 1:
            name = next(iter(self.accounts))
        if not name:
            raise ConfigError("No account given and no default_account configured")
        try:
            return self.accounts[name]
        except KeyError:
            raise ConfigError(f"Unknown account: {name}") from None

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        Raises:
            ConfigError: If a value has the wrong type or is out of range.
        """
        config = cls()

        general = _table(data, "general")
        config.default_account = _value(general, "default_account", "", str, "general")

        check = _table(data, "check")
        config.check = CheckConfig(
            retrieve_via=_value(check, "retrieve_via", "imap", str, "check"),
            mailbox=_value(check, "mailbox", "INBOX", str, "check"),
            timeout_seconds=float(
                _value(check, "timeout_seconds", 30.0, (int, float), "check")
            ),
            max_line_length=_value(
                check, "max_line_length", DEFAULT_MAX_LINE_LENGTH, int, "check"
            ),
            delete_after_fetch=_value(check, "delete_after_fetch", True, bool, "check"),
            local_hostname=_value(check, "local_hostname", "localhost", str, "check"),
        )
        if config.check.retrieve_via not in RETRIEVAL_PROTOCOLS:
            raise ConfigError(
                f"check.retrieve_via must be one of {RETRIEVAL_PROTOCOLS}, "
                f"got {config.check.retrieve_via!r}"
            )
        if config.check.timeout_seconds <= 0:
            raise ConfigError("check.timeout_seconds must be positive")
        if config.check.max_line_length <= 0:
            raise ConfigError("check.max_line_length must be positive")

        # Accounts - each key under [accounts] is an account name
        for name, acct_data in _table(data, "accounts").items():
            where = f"accounts.{name}"
            if not isinstance(acct_data, dict):
                raise ConfigError(f"{where} must be a table")
            account = Account(
                name=name,
                email=_value(acct_data, "email", "", str, where),
                display_name=_value(acct_data, "display_name", "", str, where),
                username=_value(acct_data, "username", "", str, where),
                smtp_host=_value(acct_data, "smtp_host", "", str, where),
                smtp_port=_port(acct_data, "smtp_port", 587, where),
                smtp_security=_value(acct_data, "smtp_security", "starttls", str, where),
                imap_host=_value(acct_data, "imap_host", "", str, where),
                imap_port=_port(acct_data, "imap_port", 993, where),
                imap_security=_value(acct_data, "imap_security", "ssl", str, where),
                pop3_host=_value(acct_data, "pop3_host", "", str, where),
                pop3_port=_port(acct_data, "pop3_port", 995, where),
                pop3_security=_value(acct_data, "pop3_security", "ssl", str, where),
                enabled=_value(acct_data, "enabled", True, bool, where),
            )
            for protocol in ("smtp", "imap", "pop3"):
                _, _, security = account.server(protocol)
                if security not in SECURITY_MODES:
                    raise ConfigError(
                        f"{where}.{protocol}_security must be one of "
                        f"{SECURITY_MODES}, got {security!r}"
                    )
            config.accounts[name] = account

        return config

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        data: dict[str, Any] = {}

        data["general"] = {
            "default_account": self.default_account,
        }

        data["check"] = {
            "retrieve_via": self.check.retrieve_via,
            "mailbox": self.check.mailbox,
            "timeout_seconds": self.check.timeout_seconds,
            "max_line_length": self.check.max_line_length,
            "delete_after_fetch": self.check.delete_after_fetch,
            "local_hostname": self.check.local_hostname,
        }

        data["accounts"] = {}
        for name, account in self.accounts.items():
            data["accounts"][name] = {
                "email": account.email,
                "display_name": account.display_name,
                "username": account.username,
                "smtp_host": account.smtp_host,
                "smtp_port": account.smtp_port,
                "smtp_security": account.smtp_security,
                "imap_host": account.imap_host,
                "imap_port": account.imap_port,
                "imap_security": account.imap_security,
                "pop3_host": account.pop3_host,
                "pop3_port": account.pop3_port,
                "pop3_security": account.pop3_security,
                "enabled": account.enabled,
            }

        return data


# =============================================================================
# Credentials
# =============================================================================

def get_credentials(account: Account) -> Credentials:
    """
    Fetch the account's password from the system keyring.

    Raises:
        ConfigError: If no password is stored for the account.
    """
    password = keyring.get_password(account.keyring_service, account.username)

    if not password:
        raise ConfigError(
            f"No password found in keyring for {account.username}. "
            f"Set it with: keyring set {account.keyring_service} {account.username}"
        )

    return Credentials(username=account.username, secret=password)


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def _table(data: dict[str, Any], key: str) -> dict[str, Any]:
    """Return a sub-table, or an empty one if the section is absent."""
    table = data.get(key, {})
    if not isinstance(table, dict):
        raise ConfigError(f"[{key}] must be a table, got {table!r}")
    return table


def _value(
    table: dict[str, Any],
    key: str,
    default: Any,
    kind: type | tuple[type, ...],
    where: str,
) -> Any:
    """
    Read one setting and check its type.

    Raises:
        ConfigError: Naming the key, when the value has the wrong type.
    """
    value = table.get(key, default)
    kinds = kind if isinstance(kind, tuple) else (kind,)
    # bool is a subclass of int; a number setting must not accept true/false
    if not isinstance(value, kinds) or (isinstance(value, bool) and bool not in kinds):
        expected = " or ".join(k.__name__ for k in kinds)
        raise ConfigError(f"{where}.{key} must be {expected}, got {value!r}")
    return value


def _port(table: dict[str, Any], key: str, default: int, where: str) -> int:
    port = _value(table, key, default, int, where)
    if not 0 < port < 65536:
        raise ConfigError(f"{where}.{key} must be between 1 and 65535, got {port}")
    return port


def print_paths() -> None:
    """Print the config location for debugging."""
    print(f"Config:       {get_xdg_config_home()}")
    print(f"Config file:  {Config.config_file_path()}")
