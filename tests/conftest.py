"""
Pytest configuration and fixtures.

Nothing here touches the network or the real packet filter: the enforcement
set, the nft binary and the HTTP session are all replaced by in-memory fakes.
"""
import json

import pytest
import requests

from blacklist_common import NftCommandError, validate_prefix
from blacklist_nft import EnforcementSetBackend, NftRunner, RuleEnforcer, SetReconciler


def prefix(text):
    return validate_prefix(text).prefix


class MemorySet(EnforcementSetBackend):
    """In-memory enforcement set with optional per-element failures."""

    def __init__(self, present=True, members=(), fail_on=()):
        self.present = present
        self.members = {prefix(m) for m in members}
        self.fail_on = {prefix(m) for m in fail_on}
        self.add_calls = 0

    def exists(self):
        return self.present

    def create(self):
        self.present = True

    def add_elements(self, prefixes):
        self.add_calls += 1
        if not self.present:
            raise NftCommandError("Error: No such file or directory")
        bad = [p for p in prefixes if p in self.fail_on]
        if bad:
            raise NftCommandError(f"Error: Could not process rule: {bad[0]}")
        self.members.update(prefixes)

    def delete_element(self, p):
        if p not in self.members:
            raise NftCommandError("Error: Could not process rule: No such file or directory")
        self.members.discard(p)

    def list_elements(self):
        if not self.present:
            raise NftCommandError("Error: No such file or directory")
        return set(self.members)


class FakeNft(NftRunner):
    """
    Emulates the handful of nft commands the manager issues against a single
    inet filter table.
    """

    def __init__(self, set_present=True, chains=('input', 'forward'), elements=(), dry_run=False):
        super().__init__(dry_run=dry_run)
        self.set_present = set_present
        self.elements = list(elements)
        self.chains = {chain: [] for chain in chains}
        self.calls = []
        self.reject = set()
        self.reject_rules = set()

    def run(self, args, mutating=False):
        self.calls.append(list(args))
        if mutating and self.dry_run:
            return ''
        as_json = args[0] == '-j'
        if as_json:
            args = args[1:]
        verb, kind = args[0], args[1]

        if (verb, kind) == ('list', 'set'):
            if not self.set_present:
                raise NftCommandError("Error: No such file or directory")
            return json.dumps(self._set_json()) if as_json else 'table inet filter { }'
        if (verb, kind) == ('add', 'table'):
            return ''
        if (verb, kind) == ('add', 'set'):
            self.set_present = True
            return ''
        if (verb, kind) == ('add', 'element'):
            items = [i.strip() for i in args[-1].strip('{} ').split(',')]
            if not self.set_present or any(i in self.reject for i in items):
                raise NftCommandError("Error: Could not process rule")
            self.elements.extend(i for i in items if i not in self.elements)
            return ''
        if (verb, kind) == ('delete', 'element'):
            item = args[-1].strip('{} ')
            if item not in self.elements:
                raise NftCommandError("Error: Could not process rule: No such file or directory")
            self.elements.remove(item)
            return ''
        if (verb, kind) == ('list', 'chain'):
            chain = args[4]
            if chain not in self.chains:
                raise NftCommandError("Error: No such file or directory")
            items = [{'metainfo': {'json_schema_version': 1}},
                     {'chain': {'family': 'inet', 'table': 'filter', 'name': chain}}]
            items.extend({'rule': r} for r in self.chains[chain])
            return json.dumps({'nftables': items})
        if (verb, kind) == ('add', 'rule'):
            chain = args[4]
            if chain not in self.chains or chain in self.reject_rules:
                raise NftCommandError("Error: No such file or directory")
            self.chains[chain].append({
                'family': 'inet', 'table': 'filter', 'chain': chain,
                'handle': len(self.chains[chain]) + 1,
                'comment': args[-1].strip('"'),
                'expr': [
                    {'match': {'op': '==',
                               'left': {'payload': {'protocol': 'ip', 'field': 'saddr'}},
                               'right': args[7]}},
                    {'counter': {'packets': 0, 'bytes': 0}},
                    {'drop': None},
                ],
            })
            return ''
        raise AssertionError(f"unexpected nft call: {args}")

    def _set_json(self):
        elems = []
        for element in self.elements:
            if '/' in element:
                addr, length = element.split('/')
                elems.append({'prefix': {'addr': addr, 'len': int(length)}})
            else:
                elems.append(element)
        nft_set = {'family': 'inet', 'name': 'blacklist_ips', 'table': 'filter',
                   'type': 'ipv4_addr', 'flags': ['interval']}
        if elems:
            nft_set['elem'] = elems
        return {'nftables': [{'metainfo': {'json_schema_version': 1}}, {'set': nft_set}]}


class FakeResponse:
    def __init__(self, text='', status_code=200):
        self.text = text
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


class FakeSession:
    """Maps URLs to bodies, HTTP status codes or exceptions."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.requested = []
        self.closed = False

    def get(self, url, timeout=None, **kwargs):
        self.requested.append((url, timeout))
        route = self.routes.get(url)
        if route is None:
            raise requests.ConnectionError(f"no route to {url}")
        if isinstance(route, Exception):
            raise route
        if isinstance(route, int):
            return FakeResponse('', status_code=route)
        return FakeResponse(route)

    def close(self):
        self.closed = True


@pytest.fixture
def memory_set():
    return MemorySet()


@pytest.fixture
def reconciler(memory_set):
    return SetReconciler(memory_set)


@pytest.fixture
def fake_nft():
    return FakeNft()


@pytest.fixture
def enforcer(fake_nft):
    return RuleEnforcer(fake_nft)

