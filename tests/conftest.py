"""Shared fixtures and in-memory fakes for the APIBAN client tests."""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from apiban_errors import ElementAddFailed, FirewallError  # noqa: E402
from apiban_feed import FeedClient, FeedPage  # noqa: E402
from nft_firewall import ChainDetails, Firewall, SetHandle  # noqa: E402

NOW = 1_700_000_000


class FakeFirewall(Firewall):
    """Firewall keeping sets in a dict and recording every call."""

    def __init__(self, sets=None, ingress=None, egress=None, failures=None):
        self.sets = {name: list(elements) for name, elements in (sets or {}).items()}
        self.ingress = list(ingress or [])
        self.egress = list(egress or [])
        # operation name -> exception to raise (or True for a plain FirewallError)
        self.failures = dict(failures or {})
        self.bad_elements = set()
        self.calls = []

    def _maybe_fail(self, op):
        failure = self.failures.get(op)
        if failure:
            raise failure if isinstance(failure, Exception) else FirewallError(f"{op} failed")

    def list_set(self, name):
        self.calls.append(('list_set', name))
        self._maybe_fail('list_set')
        if name not in self.sets:
            raise FirewallError(f"set {name} not found")
        return SetHandle(name=name, family='inet', table='filter', elements=list(self.sets[name]))

    def flush_set(self, handle):
        self.calls.append(('flush_set', handle.name))
        self._maybe_fail('flush_set')
        self.sets[handle.name] = []

    def add_element(self, handle, ip):
        self.calls.append(('add_element', ip))
        if ip in self.bad_elements:
            raise ElementAddFailed(f"cannot add {ip}")
        self.sets[handle.name].append(ip)

    def get_ingress_chains(self):
        self.calls.append(('get_ingress_chains',))
        self._maybe_fail('get_ingress_chains')
        return list(self.ingress)

    def get_egress_chains(self):
        self.calls.append(('get_egress_chains',))
        self._maybe_fail('get_egress_chains')
        return list(self.egress)

    def get_chain_details(self, chain_ref):
        self.calls.append(('get_chain_details', chain_ref))
        self._maybe_fail('get_chain_details')
        table, chain = chain_ref.split('/')
        return ChainDetails(family='inet', table=table, chain=chain)

    def add_set(self, details, name):
        self.calls.append(('add_set', details.table, name))
        self._maybe_fail('add_set')
        self.sets[name] = []

    def add_ingress_rule(self, details, name):
        self.calls.append(('add_ingress_rule', details.chain, name))
        self._maybe_fail('add_ingress_rule')

    def add_egress_rule(self, details, name):
        self.calls.append(('add_egress_rule', details.chain, name))
        self._maybe_fail('add_egress_rule')

    def ops(self, name):
        return [call for call in self.calls if call[0] == name]


class FakeFeed(FeedClient):
    """
    Feed replaying scripted responses.

    Each script item is a FeedPage, an exception to raise, or a callable taking
    the requested cursor. Once the script runs out the feed reports no new bans.
    """

    def __init__(self, script=None, generator=None):
        self.script = list(script or [])
        self.generator = generator
        self.requests = []
        self.closed = False

    def fetch(self, api_key, cursor, dataset):
        self.requests.append((api_key, cursor, dataset))
        if self.generator is not None:
            return self.generator(cursor)
        if not self.script:
            return FeedPage(next_cursor=cursor, addresses=[])
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(cursor)
        return item

    @property
    def cursors(self):
        return [cursor for _, cursor, _ in self.requests]

    def close(self):
        self.closed = True


@pytest.fixture
def write_config(tmp_path):
    """Write a config document to tmp_path and return its path as a string."""

    def _write(document=None, name='config.json', raw=None):
        path = tmp_path / name
        if raw is not None:
            path.write_text(raw)
        else:
            data = {
                'apikey': 'K',
                'lkid': '42',
                'version': 'old',
                'flush': str(NOW - 100),
                'dataset': 'sip',
                'setname': 'apiban',
            }
            data.update(document or {})
            path.write_text(json.dumps(data))
        return str(path)

    return _write


@pytest.fixture
def read_config():
    def _read(path):
        with open(path) as f:
            return json.load(f)
    return _read
