"""
Synchronization of the APIBAN banned list into an nftables set.

`Bootstrap` makes sure the set exists and is bound to drop rules.
`SyncLoop` applies the flush policy, pages through the feed from the last
known ID and adds every address to the set.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from apiban_config import START_CURSOR, ApibanConfig
from apiban_errors import (BootstrapNoChain, BootstrapSetCreate, BootstrapVerifyFailed,
                           FetchTransient, FirewallError, FlushFailed)
from apiban_feed import FeedClient
from nft_firewall import Firewall, SetHandle

FULL_TOKEN = 'FULL'

OUTCOME_UP_TO_DATE = 'up_to_date'
OUTCOME_EMPTY_PAGE = 'empty_page'
OUTCOME_FETCH_LIMIT = 'fetch_limit'


class Bootstrap:
    """Creates the set and its drop rules when the set cannot be found."""

    def __init__(self, firewall: Firewall):
        self.firewall = firewall
        self.logger = logging.getLogger(__name__)

    def ensure_set(self, set_name: str) -> SetHandle:
        """
        Return a handle to `set_name`, creating the set first if it is missing.

        Raises:
            BootstrapNoChain: If no input chain exists
            BootstrapSetCreate: If the set cannot be created
            BootstrapVerifyFailed: If the set is still missing afterwards
        """
        try:
            return self.firewall.list_set(set_name)
        except FirewallError as e:
            self.logger.warning(f"Cannot verify nftables set {set_name}: {e}")
            self.logger.info("Trying to create set")

        self.create_set(set_name)

        try:
            handle = self.firewall.list_set(set_name)
        except FirewallError as e:
            self.logger.error(f"Still cannot verify nftables set {set_name}")
            raise BootstrapVerifyFailed(f"nftables set {set_name} missing after bootstrap: {e}") from e

        self.logger.info(f"{handle.name} verified")
        return handle

    def create_set(self, set_name: str) -> None:
        """Create the set in the first input chain's table and bind drop rules."""
        self.logger.info("Attempting to add set and rules")

        try:
            input_chains = self.firewall.get_ingress_chains()
        except FirewallError as e:
            raise BootstrapNoChain(f"Error finding an input chain: {e}") from e
        if not input_chains:
            raise BootstrapNoChain("No input chain found to hold the set")
        self.logger.info(f"Found input chains: {input_chains}")

        try:
            details = self.firewall.get_chain_details(input_chains[0])
        except FirewallError as e:
            raise BootstrapNoChain(f"Error getting input chain details: {e}") from e

        self.logger.info(f"Creating set {set_name} in {details.table} {details.chain}")
        try:
            self.firewall.add_set(details, set_name)
        except FirewallError as e:
            raise BootstrapSetCreate(f"Unable to create set {set_name}: {e}") from e

        self.logger.info(f"Creating input rule for {set_name} in {details.table} {details.chain}")
        try:
            self.firewall.add_ingress_rule(details, set_name)
        except FirewallError as e:
            self._warn_manual_rule('input', set_name, e)

        try:
            output_chains = self.firewall.get_egress_chains()
        except FirewallError as e:
            self.logger.warning(f"Error finding output chain: {e}")
            return
        if not output_chains:
            self.logger.info("No output chain found, skipping output rule")
            return
        self.logger.info(f"Found output chains: {output_chains}")

        try:
            details = self.firewall.get_chain_details(output_chains[0])
        except FirewallError as e:
            self.logger.warning(f"Error finding output chain details: {e}")
            return

        self.logger.info(f"Creating output rule for {set_name} in {details.table} {details.chain}")
        try:
            self.firewall.add_egress_rule(details, set_name)
        except FirewallError as e:
            self._warn_manual_rule('output', set_name, e)

    def _warn_manual_rule(self, direction: str, set_name: str, error: Exception) -> None:
        self.logger.warning(f"Unable to create {direction} rule: {error}")
        self.logger.warning(f"{direction.capitalize()} rule failed. Set created though... continuing.")
        self.logger.warning(f"*** PLEASE MANUALLY CREATE A RULE FOR THE {set_name} SET")


@dataclass
class SyncResult:
    """Summary of one sync run."""

    outcome: str
    fetches: int = 0
    added: int = 0
    failed: int = 0
    flushed: bool = False
    persisted: bool = False
    element_count: Optional[int] = None


class SyncLoop:
    """Pages through the APIBAN feed and adds every banned address to the set."""

    MAX_FETCHES = 24
    FLUSH_INTERVAL = 604800  # 7 days
    BACKOFF_BASE = 2
    BACKOFF_MAX = 30

    def __init__(self, config: ApibanConfig, firewall: Firewall, feed: FeedClient,
                 full: bool = False, max_fetches: Optional[int] = None,
                 flush_interval: Optional[int] = None, backoff_base: Optional[float] = None,
                 backoff_max: Optional[float] = None, sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.firewall = firewall
        self.feed = feed
        self.full = full
        self.max_fetches = self.MAX_FETCHES if max_fetches is None else max_fetches
        self.flush_interval = self.FLUSH_INTERVAL if flush_interval is None else flush_interval
        self.backoff_base = self.BACKOFF_BASE if backoff_base is None else backoff_base
        self.backoff_max = self.BACKOFF_MAX if backoff_max is None else backoff_max
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)

    def flush_if_due(self, handle: SetHandle, now: Union[int, float]) -> bool:
        """
        Flush the set once the last flush is at least a week old.

        Raises:
            FlushFailed: If the set could not be flushed
        """
        if int(now) - self.config.flush_time < self.flush_interval:
            return False

        try:
            self.firewall.flush_set(handle)
        except FirewallError as e:
            self.logger.error(f"Flushing nftables set failed: {e}")
            raise FlushFailed(f"Flushing nftables set {handle.name} failed: {e}") from e

        self.logger.info("Set flushed. Resetting LKID and FLUSH")
        self.config.cursor = START_CURSOR
        self.config.flush_epoch = str(int(now))
        return True

    def _backoff(self, failures: int) -> float:
        return min(self.backoff_base * 2 ** (failures - 1), self.backoff_max)

    def _apply_page(self, handle: SetHandle, addresses: List[str], result: SyncResult) -> None:
        for ip in addresses:
            try:
                self.firewall.add_element(handle, ip)
            except FirewallError as e:
                result.failed += 1
                self.logger.error(f"Error adding {ip}: {e}")
            else:
                result.added += 1
                self.logger.info(f"Added {ip} to {handle.name}")

    def _log_element_count(self, handle: SetHandle, result: SyncResult) -> None:
        current = self.firewall.list_set(handle.name)
        result.element_count = current.element_count
        self.logger.info(f"{handle.name} now has {current.element_count} elements.")

    def run(self, handle: SetHandle, now: Union[int, float]) -> SyncResult:
        """
        Run one synchronization pass against a verified set.

        The config is written back only when the feed reports no new bans.

        Raises:
            FlushFailed: If a due flush fails
            FetchPermanent: If the feed rejects the request
            ConfigPersistError: If the config cannot be saved
            FirewallError: If the set cannot be listed after the fetch limit
        """
        result = SyncResult(outcome=OUTCOME_FETCH_LIMIT)
        result.flushed = self.flush_if_due(handle, now)

        if self.full:
            self.logger.info("CLI of FULL received, resetting LKID")
            self.config.cursor = START_CURSOR

        transient_failures = 0
        while result.fetches < self.max_fetches:
            cursor = self.config.cursor
            self.logger.info(f"Checking banned list with ID: {cursor} and settype: {self.config.dataset}")
            result.fetches += 1

            try:
                page = self.feed.fetch(self.config.api_key, cursor, self.config.dataset)
            except FetchTransient as e:
                transient_failures += 1
                self.logger.warning(f"Failed to get banned list: {e}")
                if result.fetches < self.max_fetches:
                    delay = self._backoff(transient_failures)
                    self.logger.info(f"Retrying in {delay} seconds")
                    self.sleep(delay)
                continue
            transient_failures = 0

            if page.next_cursor == cursor:
                self.logger.info("Great news... no new bans to add. Exiting...")
                self.config.persist()
                result.persisted = True
                result.outcome = OUTCOME_UP_TO_DATE
                try:
                    self._log_element_count(handle, result)
                except FirewallError as e:
                    self.logger.warning(f"Cannot list nftables set {handle.name}: {e}")
                return result

            if not page.addresses:
                # TODO: decide whether an advanced ID with no addresses should be persisted
                self.logger.info("No IP addresses detected. Exiting.")
                result.outcome = OUTCOME_EMPTY_PAGE
                return result

            self._apply_page(handle, page.addresses, result)
            self.config.cursor = page.next_cursor

        self.logger.info(f"Reached the limit of {self.max_fetches} fetches for this run")
        try:
            self._log_element_count(handle, result)
        except FirewallError as e:
            self.logger.error(f"Cannot verify nftables set {handle.name}: {e}")
            raise
        return result
