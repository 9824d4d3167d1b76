#!/usr/bin/python3
"""
APIBAN nftables client

This module adds the banned IP addresses published by apiban.org to an nftables set.
It is meant to be run periodically (cron or a systemd timer); each run fetches what
was banned since the last run, and the set is flushed once a week.
"""

import argparse
import logging
import sys
import time
from typing import Callable, List, Optional

from apiban_config import ApibanConfig
from apiban_errors import EXIT_FAILURE, EXIT_OK, ApibanClientError
from apiban_feed import ApibanFeedClient, FeedClient
from apiban_sync import FULL_TOKEN, Bootstrap, SyncLoop
from nft_firewall import Firewall, NftFirewall


class ApibanClientConfig:
    """Configuration constants for the APIBAN nftables client."""

    # Logging
    LOG_FILE = '/var/log/apiban-nft-client.log'
    STDOUT_LOG_TARGETS = ('-', 'stdout')

    # Timeouts and limits
    REQUEST_TIMEOUT = 30
    NFT_TIMEOUT = 30
    MAX_FETCHES = 24
    HTTP_RETRIES = 2

    # Flush the set once a week
    FLUSH_INTERVAL = 604800

    # Backoff between failed fetches
    BACKOFF_BASE = 2
    BACKOFF_MAX = 30


BANNER = [
    "** Started APIBAN NFT CLIENT",
    "** Copyright (C) 2025 Fred Posner / The Palner Group, Inc.",
    "** This program comes with ABSOLUTELY NO WARRANTY;",
    "** This is free software, and you are welcome to redistribute it under certain conditions",
    "** See the LICENSE file distributed with this program for details.",
]


def setup_logging(log_target: str, verbose: bool = False) -> None:
    """
    Configure logging to a file, or to stdout for '-' and 'stdout'.

    Raises:
        OSError: If the log file cannot be opened
    """
    level = logging.DEBUG if verbose else logging.INFO

    if log_target in ApibanClientConfig.STDOUT_LOG_TARGETS:
        handler = logging.StreamHandler(sys.stdout)
    else:
        handler = logging.FileHandler(log_target, mode='a')

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[handler],
        force=True
    )


class ApibanNftClient:
    """Main class wiring config, firewall and feed together for one run."""

    def __init__(self, config_path: Optional[str] = None, full: bool = False, verify: bool = True,
                 firewall: Optional[Firewall] = None, feed: Optional[FeedClient] = None,
                 clock: Callable[[], float] = time.time, sleep: Callable[[float], None] = time.sleep):
        """
        Initialize the client.

        Args:
            config_path: Optional explicit configuration file
            full: If True, restart the feed from its beginning
            verify: If False, skip TLS verification when talking to apiban.org
            firewall: Firewall to use instead of nftables
            feed: Feed client to use instead of apiban.org
            clock: Source of the current Unix time
            sleep: Used to wait between failed fetches
        """
        self.config = ApibanClientConfig()
        self.config_path = config_path
        self.full = full
        self.clock = clock
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)
        self.firewall = firewall or NftFirewall(timeout=self.config.NFT_TIMEOUT)
        self.feed = feed or ApibanFeedClient(
            verify=verify,
            timeout=self.config.REQUEST_TIMEOUT,
            max_retries=self.config.HTTP_RETRIES
        )

    def run(self) -> int:
        """
        Main execution method.

        Returns:
            The process exit status
        """
        for line in BANNER:
            self.logger.info(line)

        now = int(self.clock())
        try:
            apiconfig = ApibanConfig.load(now, self.config_path)

            handle = Bootstrap(self.firewall).ensure_set(apiconfig.set_name)
            self.logger.info(f"{apiconfig.set_name} exists. Currently has {handle.element_count} elements.")

            sync = SyncLoop(
                apiconfig,
                self.firewall,
                self.feed,
                full=self.full,
                max_fetches=self.config.MAX_FETCHES,
                flush_interval=self.config.FLUSH_INTERVAL,
                backoff_base=self.config.BACKOFF_BASE,
                backoff_max=self.config.BACKOFF_MAX,
                sleep=self.sleep
            )
            result = sync.run(handle, now)
            self.logger.info(
                f"Run finished ({result.outcome}): {result.fetches} fetches, "
                f"{result.added} added, {result.failed} failed"
            )
            return EXIT_OK

        except ApibanClientError as e:
            self.logger.error(f"Fatal error: {e}")
            return e.exit_code
        finally:
            self.feed.close()


def str_to_bool(value: str) -> bool:
    """Parse a boolean command line value."""
    lowered = value.strip().lower()
    if lowered in ('true', '1', 'yes', 'on', 't'):
        return True
    if lowered in ('false', '0', 'no', 'off', 'f'):
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value: '{value}'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Add banned IP addresses from apiban.org to an nftables set',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                              # Fetch new bans since the last run
  %(prog)s FULL                         # Restart from the beginning of the list
  %(prog)s --config /etc/apiban/config.json
  %(prog)s --log -                      # Log to stdout
  %(prog)s --verify=false               # Skip TLS certificate verification
        """
    )
    parser.add_argument(
        '--config',
        type=str,
        help='Location of configuration file'
    )
    parser.add_argument(
        '--log',
        type=str,
        default=ApibanClientConfig.LOG_FILE,
        help=f'Location of log file or - for stdout (default: {ApibanClientConfig.LOG_FILE})'
    )
    parser.add_argument(
        '--verify',
        type=str_to_bool,
        default=True,
        help='Set to false to skip verify of TLS cert (default: true)'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose (debug) logging'
    )
    parser.add_argument(
        'mode',
        nargs='?',
        help=f'{FULL_TOKEN} resets the last known ID and fetches the whole list again'
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        setup_logging(args.log, args.verbose)
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    logger = logging.getLogger(__name__)
    if args.mode and args.mode != FULL_TOKEN:
        logger.warning(f"Ignoring unknown argument '{args.mode}'")

    try:
        client = ApibanNftClient(
            config_path=args.config,
            full=args.mode == FULL_TOKEN,
            verify=args.verify
        )
        return client.run()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
