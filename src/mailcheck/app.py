# =============================================================================
# mailcheck Command Line
# =============================================================================
# Runs one delivery round trip against a configured account and reports
# whether the probe came back intact.
#
#   mailcheck                       # default account, settings from config
#   mailcheck --account work --via pop3
#   mailcheck --keep --debug        # leave the probe in the mailbox
#
# Exit codes:
#   0  the probe was read back and matched
#   1  the probe was read back but did not match (or the mailbox was empty)
#   2  configuration problem
#   3  a protocol step failed
# =============================================================================

import argparse
import asyncio
import dataclasses
import logging
import sys
import time
from pathlib import Path

from mailcheck import __app_name__, __version__
from mailcheck.config import (
    RETRIEVAL_PROTOCOLS,
    Config,
    ConfigError,
    get_credentials,
    print_paths,
)
from mailcheck.core import Account
from mailcheck.protocol import MailError
from mailcheck.roundtrip import RoundTripResult, run_round_trip

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_MISMATCH = 1
EXIT_CONFIG = 2
EXIT_PROTOCOL = 3


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="mailcheck: send a probe over SMTP and read it back over IMAP or POP3",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--init",
        action="store_true",
        help="Write an example config file and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--account",
        help="Account to check (default: default_account from config)",
    )

    parser.add_argument(
        "--via",
        choices=RETRIEVAL_PROTOCOLS,
        help="Protocol used to read the probe back (default: from config)",
    )

    parser.add_argument(
        "--id",
        dest="unique_id",
        help="Label for the probe (default: current time in milliseconds)",
    )

    parser.add_argument(
        "--keep",
        action="store_true",
        help="Leave the probe in the mailbox instead of deleting it",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (logs the protocol conversation)",
    )

    return parser.parse_args(argv)


def write_example_config(path: Path | None = None) -> Path:
    """Write a config file with a single placeholder account."""
    config = Config(
        default_account="example",
        accounts={
            "example": Account(
                name="example",
                email="you@example.com",
                smtp_host="smtp.example.com",
                imap_host="imap.example.com",
                pop3_host="pop.example.com",
            )
        },
    )
    return config.save(path)


def report(result: RoundTripResult) -> None:
    """Print a one-paragraph summary of a round trip."""
    print(f"Sent:     {result.sent.subject}")
    if result.received is None:
        print(f"Received: nothing ({result.via} mailbox is empty)")
    else:
        print(f"Received: {result.received.subject} (via {result.via})")
    print("Result:   " + ("MATCH" if result.matched else "MISMATCH"))


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for mailcheck.

    This function:
        1. Parses command-line arguments
        2. Handles special commands (--paths, --init)
        3. Loads configuration and credentials
        4. Runs the round trip and reports the outcome

    Returns:
        Exit code (see module header).
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.paths:
        print_paths()
        return EXIT_OK

    if args.init:
        path = args.config or Config.config_file_path()
        if path.exists():
            print(f"Config file already exists: {path}")
            return EXIT_CONFIG
        print(f"Wrote example config to {write_example_config(path)}")
        return EXIT_OK

    try:
        config = Config.load(args.config)
        account = config.get_account(args.account)
        credentials = get_credentials(account)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    settings = config.check
    if args.via:
        settings = dataclasses.replace(settings, retrieve_via=args.via)
    if args.keep:
        settings = dataclasses.replace(settings, delete_after_fetch=False)

    unique_id = args.unique_id or str(int(time.time() * 1000))

    try:
        result = asyncio.run(
            run_round_trip(account, credentials, unique_id, settings=settings)
        )
    except MailError as e:
        logger.debug("Round trip failed", exc_info=True)
        print(f"Round trip failed: {e}", file=sys.stderr)
        return EXIT_PROTOCOL

    report(result)
    return EXIT_OK if result.matched else EXIT_MISMATCH


if __name__ == "__main__":
    sys.exit(main())
