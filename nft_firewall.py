"""
nftables access for the APIBAN client.

`Firewall` is the set of operations the sync loop relies on; `NftFirewall`
implements it by driving the `nft` binary and reading its JSON output.
"""

import ipaddress
import json
import logging
import subprocess  # nosec B404 - subprocess usage is intentional and controlled
from dataclasses import dataclass, field
from typing import List, Optional

from apiban_errors import ElementAddFailed, FirewallError, FlushFailed, RuleBindFailed


@dataclass
class ChainDetails:
    """Location of a base chain: address family, table and chain name."""

    family: str
    table: str
    chain: str

    @property
    def ref(self) -> str:
        return f"{self.family}/{self.table}/{self.chain}"


@dataclass
class SetHandle:
    """A live nftables set and the elements it held when it was listed."""

    name: str
    family: str
    table: str
    elements: List[str] = field(default_factory=list)

    @property
    def element_count(self) -> int:
        return len(self.elements)


class Firewall:
    """Operations on the host packet filter used by bootstrap and sync."""

    def list_set(self, name: str) -> SetHandle:
        raise NotImplementedError()

    def flush_set(self, handle: SetHandle) -> None:
        raise NotImplementedError()

    def add_element(self, handle: SetHandle, ip: str) -> None:
        raise NotImplementedError()

    def get_ingress_chains(self) -> List[str]:
        raise NotImplementedError()

    def get_egress_chains(self) -> List[str]:
        raise NotImplementedError()

    def get_chain_details(self, chain_ref: str) -> ChainDetails:
        raise NotImplementedError()

    def add_set(self, details: ChainDetails, name: str) -> None:
        raise NotImplementedError()

    def add_ingress_rule(self, details: ChainDetails, name: str) -> None:
        raise NotImplementedError()

    def add_egress_rule(self, details: ChainDetails, name: str) -> None:
        raise NotImplementedError()


class NftFirewall(Firewall):
    """Firewall backed by the nft command line tool."""

    NFT_BINARY = 'nft'
    NFT_TIMEOUT = 30

    INGRESS_HOOK = 'input'
    EGRESS_HOOK = 'output'

    def __init__(self, nft_binary: Optional[str] = None, timeout: Optional[int] = None):
        self.nft_binary = self.NFT_BINARY if nft_binary is None else nft_binary
        self.timeout = self.NFT_TIMEOUT if timeout is None else timeout
        self.logger = logging.getLogger(__name__)

    def _run(self, args: List[str], error_cls=FirewallError) -> str:
        """
        Run nft with the given arguments and return its standard output.

        Raises:
            FirewallError: (or error_cls) if nft is missing, times out or fails
        """
        command = [self.nft_binary] + args
        self.logger.debug(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(  # nosec B603 - controlled input, no shell
                command,
                check=True,
                timeout=self.timeout,
                capture_output=True,
                text=True
            )
            return result.stdout
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or '').strip()
            raise error_cls(f"nft {' '.join(args)} failed: {stderr}") from e
        except subprocess.TimeoutExpired as e:
            raise error_cls(f"Timeout while running nft {' '.join(args)}") from e
        except OSError as e:
            raise error_cls(f"Could not run {self.nft_binary}: {e}") from e

    def _run_json(self, args: List[str]) -> List[dict]:
        """Run `nft -j` and return the objects of its `nftables` array."""
        output = self._run(['-j'] + args)
        try:
            document = json.loads(output) if output.strip() else {}
        except json.JSONDecodeError as e:
            raise FirewallError(f"Invalid JSON from nft {' '.join(args)}: {e}") from e
        return document.get('nftables', []) if isinstance(document, dict) else []

    @staticmethod
    def _objects(items: List[dict], kind: str) -> List[dict]:
        return [item[kind] for item in items if isinstance(item, dict) and kind in item]

    @staticmethod
    def _element_to_str(element) -> str:
        """Render one element of a set listing (plain value, prefix or range)."""
        if isinstance(element, dict):
            if 'elem' in element:
                return NftFirewall._element_to_str(element['elem'].get('val'))
            if 'prefix' in element:
                prefix = element['prefix']
                return f"{prefix.get('addr')}/{prefix.get('len')}"
            if 'range' in element:
                low, high = element['range']
                return f"{low}-{high}"
        return str(element)

    def list_set(self, name: str) -> SetHandle:
        """Find the set called `name` in any table and list its elements."""
        for entry in self._objects(self._run_json(['list', 'sets']), 'set'):
            if entry.get('name') != name:
                continue

            family, table = entry['family'], entry['table']
            details = self._objects(self._run_json(['list', 'set', family, table, name]), 'set')
            elements = details[0].get('elem', []) if details else []
            handle = SetHandle(
                name=name,
                family=family,
                table=table,
                elements=[self._element_to_str(e) for e in elements]
            )
            self.logger.debug(f"Set {name} found in {family} {table} with {handle.element_count} elements")
            return handle

        raise FirewallError(f"nftables set {name} not found")

    def flush_set(self, handle: SetHandle) -> None:
        self.logger.info(f"Flushing {handle.family} nftables set {handle.table} {handle.name}")
        self._run(['flush', 'set', handle.family, handle.table, handle.name], error_cls=FlushFailed)

    def add_element(self, handle: SetHandle, ip: str) -> None:
        try:
            ipaddress.ip_network(ip, strict=False)
        except ValueError as e:
            raise ElementAddFailed(f"Invalid IP address {ip!r}") from e

        self._run(
            ['add', 'element', handle.family, handle.table, handle.name, f"{{ {ip} }}"],
            error_cls=ElementAddFailed
        )

    def _chains_with_hook(self, hook: str) -> List[str]:
        chains = self._objects(self._run_json(['list', 'chains']), 'chain')
        return [
            ChainDetails(c['family'], c['table'], c['name']).ref
            for c in chains
            if c.get('hook') == hook
        ]

    def get_ingress_chains(self) -> List[str]:
        return self._chains_with_hook(self.INGRESS_HOOK)

    def get_egress_chains(self) -> List[str]:
        return self._chains_with_hook(self.EGRESS_HOOK)

    def get_chain_details(self, chain_ref: str) -> ChainDetails:
        parts = chain_ref.split('/')
        if len(parts) != 3 or not all(parts):
            raise FirewallError(f"Invalid chain reference {chain_ref!r}")

        family, table, chain = parts
        chains = self._objects(self._run_json(['list', 'chain', family, table, chain]), 'chain')
        if not chains:
            raise FirewallError(f"Chain {chain_ref} not found")
        found = chains[0]
        return ChainDetails(found.get('family', family), found.get('table', table), found.get('name', chain))

    def add_set(self, details: ChainDetails, name: str) -> None:
        addr_type = 'ipv6_addr' if details.family == 'ip6' else 'ipv4_addr'
        self._run(['add', 'set', details.family, details.table, name, f"{{ type {addr_type} ; }}"])
        self.logger.info(f"Created nftables set {name} in {details.family} {details.table}")

    def _add_drop_rule(self, details: ChainDetails, name: str, direction: str) -> None:
        protocol = 'ip6' if details.family == 'ip6' else 'ip'
        self._run(
            ['insert', 'rule', details.family, details.table, details.chain,
             protocol, direction, f"@{name}", 'drop'],
            error_cls=RuleBindFailed
        )
        self.logger.info(f"Added {protocol} {direction} @{name} drop rule to {details.ref}")

    def add_ingress_rule(self, details: ChainDetails, name: str) -> None:
        self._add_drop_rule(details, name, 'saddr')

    def add_egress_rule(self, details: ChainDetails, name: str) -> None:
        self._add_drop_rule(details, name, 'daddr')
