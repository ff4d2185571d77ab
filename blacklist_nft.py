#!/usr/bin/python3
"""
IP Blacklist Manager - nftables enforcement

Owns everything that talks to the packet filter: bounded nft calls, the
enforcement set binding, the set reconciler, the per-chain drop rules and the
read-only status report.
"""

import ipaddress
import json
import logging
import subprocess  # nosec B404 - subprocess usage is intentional and controlled
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, NamedTuple, Optional, Set

from blacklist_common import (
    BlacklistConfig,
    NetworkPrefix,
    NftCommandError,
    SetNotFoundError,
    validate_prefix,
)


UPDATE_HINT = "Run the main blacklist update first: sudo update-blacklists"


class NftRunner:
    """Runs single, bounded nft commands."""

    def __init__(self, binary: str = BlacklistConfig.NFT_BINARY,
                 timeout: int = BlacklistConfig.NFT_TIMEOUT, dry_run: bool = False):
        self.binary = binary
        self.timeout = timeout
        self.dry_run = dry_run
        self.logger = logging.getLogger(__name__)

    def run(self, args: List[str], mutating: bool = False) -> str:
        """
        Run one nft command and return its stdout.

        Args:
            args: nft arguments, without the binary
            mutating: True if the command changes the ruleset (skipped in dry run)

        Raises:
            NftCommandError: On non-zero exit or timeout
        """
        command = [self.binary] + list(args)
        if mutating and self.dry_run:
            self.logger.info(f"DRY RUN: Would run: {' '.join(command)}")
            return ''

        self.logger.debug(f"Running command: {' '.join(command)}")
        try:
            result = subprocess.run(  # nosec B603 - controlled input, no shell
                command,
                check=False,
                timeout=self.timeout,
                capture_output=True,
                text=True
            )
        except subprocess.TimeoutExpired as e:
            raise NftCommandError(f"Timeout running: {' '.join(command)}") from e
        except OSError as e:
            raise NftCommandError(f"Could not run {self.binary}: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or '').strip()
            raise NftCommandError(f"nft {' '.join(args)} failed: {stderr}", stderr=stderr)
        return result.stdout

    def query_json(self, args: List[str]) -> dict:
        """Run a listing command with JSON output and decode it."""
        output = self.run(['-j'] + list(args))
        try:
            return json.loads(output) if output.strip() else {}
        except json.JSONDecodeError as e:
            raise NftCommandError(f"Invalid JSON from nft {' '.join(args)}: {e}") from e


class EnforcementSetBackend(ABC):
    """Capability interface to the shared enforcement set."""

    @abstractmethod
    def exists(self) -> bool:
        """Return True if the set is present in the packet filter."""

    @abstractmethod
    def create(self) -> None:
        """Create the set (and its table); tolerates 'already exists'."""

    @abstractmethod
    def add_elements(self, prefixes: List[NetworkPrefix]) -> None:
        """Add prefixes in one call; adding an existing member is a no-op."""

    @abstractmethod
    def delete_element(self, prefix: NetworkPrefix) -> None:
        """Remove one prefix."""

    @abstractmethod
    def list_elements(self) -> Set[NetworkPrefix]:
        """Return the current members."""


def _decode_element(value) -> List[NetworkPrefix]:
    """Turn one element of `nft -j list set` output into prefixes."""
    if isinstance(value, dict) and 'elem' in value:
        return _decode_element(value['elem'].get('val'))
    if isinstance(value, str):
        result = validate_prefix(value)
        return [result.prefix] if result.ok else []
    if isinstance(value, dict) and 'prefix' in value:
        prefix = value['prefix']
        result = validate_prefix(f"{prefix.get('addr')}/{prefix.get('len')}")
        return [result.prefix] if result.ok else []
    if isinstance(value, dict) and 'range' in value:
        try:
            first, last = (ipaddress.IPv4Address(v) for v in value['range'])
        except (ValueError, TypeError):
            return []
        return [NetworkPrefix(str(net.network_address), net.prefixlen if net.prefixlen < 32 else None)
                for net in ipaddress.summarize_address_range(first, last)]
    return []


class NftablesSet(EnforcementSetBackend):
    """The enforcement set as an nftables interval set."""

    def __init__(self, runner: NftRunner, config: Optional[BlacklistConfig] = None):
        self.runner = runner
        self.config = config or BlacklistConfig()
        self.logger = logging.getLogger(__name__)

    @property
    def _path(self) -> List[str]:
        return [self.config.NFT_FAMILY, self.config.NFT_TABLE, self.config.NFT_SET]

    def exists(self) -> bool:
        try:
            self.runner.run(['list', 'set'] + self._path)
            return True
        except NftCommandError as e:
            self.logger.debug(f"Set {self.config.NFT_SET} not listed: {e}")
            return False

    def create(self) -> None:
        self.runner.run(['add', 'table', self.config.NFT_FAMILY, self.config.NFT_TABLE], mutating=True)
        self.runner.run(
            ['add', 'set'] + self._path + ['{ type ipv4_addr; flags interval; auto-merge; }'],
            mutating=True
        )

    def add_elements(self, prefixes: List[NetworkPrefix]) -> None:
        if not prefixes:
            return
        elements = ', '.join(str(p) for p in prefixes)
        self.runner.run(['add', 'element'] + self._path + [f"{{ {elements} }}"], mutating=True)

    def delete_element(self, prefix: NetworkPrefix) -> None:
        self.runner.run(['delete', 'element'] + self._path + [f"{{ {prefix} }}"], mutating=True)

    def list_elements(self) -> Set[NetworkPrefix]:
        data = self.runner.query_json(['list', 'set'] + self._path)
        members: Set[NetworkPrefix] = set()
        for item in data.get('nftables', []):
            nft_set = item.get('set') if isinstance(item, dict) else None
            if not nft_set:
                continue
            for element in nft_set.get('elem', []):
                members.update(_decode_element(element))
        return members


class BatchResult(NamedTuple):
    applied: int
    failed: int


class SetReconciler:
    """
    Membership lifecycle of the enforcement set.

    Feed runs only ever add. Removal exists solely for the manual path, since
    the set carries no record of which path added a member.
    """

    def __init__(self, backend: EnforcementSetBackend,
                 chunk_size: int = BlacklistConfig.ADD_CHUNK_SIZE):
        self.backend = backend
        self.chunk_size = chunk_size
        self.logger = logging.getLogger(__name__)

    def ensure_set_exists(self) -> None:
        """Create the set with auto-merging intervals unless it is already there."""
        if self.backend.exists():
            self.logger.info("Blacklist set already exists")
            return
        self.logger.info("Blacklist set does not exist, creating it")
        self.backend.create()
        self.logger.info("Successfully created blacklist set")

    def require_set(self) -> None:
        """
        Raises:
            SetNotFoundError: If the set has not been created yet
        """
        if not self.backend.exists():
            raise SetNotFoundError("Blacklist set not found", hint=UPDATE_HINT)

    def add_many(self, prefixes: Iterable[NetworkPrefix]) -> BatchResult:
        """
        Add prefixes in chunks; a failing chunk is retried element by element
        so one bad entry only costs itself.
        """
        seen: Set[NetworkPrefix] = set()
        batch: List[NetworkPrefix] = []
        applied = failed = 0

        for prefix in prefixes:
            if prefix in seen:
                continue
            seen.add(prefix)
            batch.append(prefix)
            if len(batch) >= self.chunk_size:
                ok, bad = self._add_chunk(batch)
                applied, failed = applied + ok, failed + bad
                batch = []
        if batch:
            ok, bad = self._add_chunk(batch)
            applied, failed = applied + ok, failed + bad

        if failed:
            self.logger.warning(f"{failed} entries could not be added to the blacklist set")
        return BatchResult(applied, failed)

    def _add_chunk(self, chunk: List[NetworkPrefix]) -> BatchResult:
        try:
            self.backend.add_elements(chunk)
            return BatchResult(len(chunk), 0)
        except NftCommandError as e:
            if len(chunk) == 1:
                self.logger.warning(f"Failed to add {chunk[0]}: {e}")
                return BatchResult(0, 1)
            self.logger.debug(f"Chunk of {len(chunk)} rejected, retrying one by one: {e}")

        applied = failed = 0
        for prefix in chunk:
            try:
                self.backend.add_elements([prefix])
                applied += 1
            except NftCommandError as e:
                failed += 1
                self.logger.warning(f"Failed to add {prefix}: {e}")
        return BatchResult(applied, failed)

    def add(self, prefix: NetworkPrefix) -> bool:
        """Add one prefix; returns False (with a warning) if already a member."""
        if self.contains(prefix):
            self.logger.warning(f"IP/range {prefix} is already in the blacklist")
            return False
        self.backend.add_elements([prefix])
        return True

    def remove(self, prefix: NetworkPrefix) -> bool:
        """Remove one prefix; returns False (with a warning) if not a member."""
        if not self.contains(prefix):
            self.logger.warning(f"IP/range {prefix} is not in the blacklist")
            return False
        self.backend.delete_element(prefix)
        return True

    def contains(self, prefix: NetworkPrefix) -> bool:
        return prefix in self.snapshot()

    def snapshot(self) -> Set[NetworkPrefix]:
        return self.backend.list_elements()


def _rule_matches(rule: dict, set_name: str, label: str) -> bool:
    if rule.get('comment') != label:
        return False
    expressions = rule.get('expr', [])
    references_set = any(
        expr.get('match', {}).get('right') == f"@{set_name}" for expr in expressions
    )
    drops = any('drop' in expr for expr in expressions)
    return references_set and drops


class RuleEnforcer:
    """Keeps exactly one labelled drop rule per chain for the enforcement set."""

    def __init__(self, runner: NftRunner, config: Optional[BlacklistConfig] = None):
        self.runner = runner
        self.config = config or BlacklistConfig()
        self.logger = logging.getLogger(__name__)

    def _chain_rules(self, chain: str) -> List[dict]:
        data = self.runner.query_json(
            ['list', 'chain', self.config.NFT_FAMILY, self.config.NFT_TABLE, chain]
        )
        return [item['rule'] for item in data.get('nftables', [])
                if isinstance(item, dict) and 'rule' in item]

    def has_rule(self, chain: str) -> Optional[bool]:
        """True/False for rule presence, None if the chain itself is absent."""
        try:
            rules = self._chain_rules(chain)
        except NftCommandError as e:
            self.logger.debug(f"Chain {chain} not listed: {e}")
            return None
        return any(_rule_matches(r, self.config.NFT_SET, self.config.RULE_LABEL) for r in rules)

    def rule_command(self, chain: str) -> List[str]:
        return [
            'add', 'rule', self.config.NFT_FAMILY, self.config.NFT_TABLE, chain,
            'ip', 'saddr', f"@{self.config.NFT_SET}", 'counter', 'drop',
            'comment', f'"{self.config.RULE_LABEL}"',
        ]

    def ensure_rule(self, chain: str) -> bool:
        """
        Insert the drop rule on a chain unless it is already there.

        Returns:
            True if the rule is in place afterwards
        """
        description = self.config.CHAIN_DESCRIPTIONS.get(chain, chain)
        present = self.has_rule(chain)
        if present is None:
            self.logger.error(
                f"Chain {self.config.NFT_FAMILY} {self.config.NFT_TABLE} {chain} not found, "
                f"{description} rule not created (establish the firewall baseline first)"
            )
            return False
        if present:
            self.logger.info(f"{chain.upper()} chain blocking rule already exists")
            return True

        try:
            self.runner.run(self.rule_command(chain), mutating=True)
        except NftCommandError as e:
            self.logger.error(f"Failed to create {chain.upper()} chain blocking rule: {e}")
            return False
        self.logger.info(f"Created {chain.upper()} chain blocking rule ({description})")
        return True

    def ensure_rules(self, chains: Optional[Iterable[str]] = None) -> Dict[str, bool]:
        """Apply ensure_rule to each chain independently."""
        chains = self.config.NFT_CHAINS if chains is None else chains
        return {chain: self.ensure_rule(chain) for chain in chains}


class StatusReport(NamedTuple):
    set_present: bool
    total: int
    single_count: int
    range_count: int
    rules: Dict[str, Optional[bool]]
    sample: List[NetworkPrefix]


class StatusReporter:
    """Read-only view of the set and rules; absence is reported, not raised."""

    def __init__(self, reconciler: SetReconciler, enforcer: RuleEnforcer,
                 config: Optional[BlacklistConfig] = None):
        self.reconciler = reconciler
        self.enforcer = enforcer
        self.config = config or BlacklistConfig()
        self.logger = logging.getLogger(__name__)

    def collect(self, sample_size: int = 5) -> StatusReport:
        members: List[NetworkPrefix] = []
        set_present = self.reconciler.backend.exists()
        if set_present:
            try:
                members = sorted(self.reconciler.snapshot(), key=prefix_sort_key)
            except NftCommandError as e:
                self.logger.warning(f"Could not list blacklist set: {e}")

        rules = {chain: self.enforcer.has_rule(chain) for chain in self.config.NFT_CHAINS}
        ranges = sum(1 for m in members if m.is_range)
        return StatusReport(
            set_present=set_present,
            total=len(members),
            single_count=len(members) - ranges,
            range_count=ranges,
            rules=rules,
            sample=members[:sample_size],
        )

    def summary_lines(self, report: StatusReport) -> List[str]:
        lines = []
        if report.set_present:
            lines.append(f"Total blocked networks: {report.total}")
            lines.append(f"Breakdown: {report.single_count} single IPs, {report.range_count} networks/ranges")
        else:
            lines.append("Blacklist set: not configured")
        for chain, state in report.rules.items():
            description = self.config.CHAIN_DESCRIPTIONS.get(chain, chain).capitalize()
            lines.append(f"{description} ({chain.upper()}): {rule_state_label(state)}")
        return lines


def rule_state_label(state: Optional[bool]) -> str:
    if state is None:
        return 'Not configured'
    return 'Active' if state else 'Inactive'


def prefix_sort_key(prefix: NetworkPrefix):
    return (ipaddress.IPv4Address(prefix.address), prefix.length if prefix.length is not None else 32)
