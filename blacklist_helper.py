#!/usr/bin/python3
"""
IP Blacklist Management Helper

Operator commands for the nftables blacklist: add and remove entries, list
them, show system status and test whether an address is blocked. Entries added
here survive scheduled updates, which never remove anything.
"""

import argparse
import ipaddress
import logging
import subprocess  # nosec B404 - subprocess usage is intentional and controlled
from collections import deque
from pathlib import Path
from typing import List, Optional, Tuple

from blacklist_common import (
    BlacklistConfig,
    BlacklistError,
    NetworkPrefix,
    SetNotFoundError,
    check_requirements,
    setup_logging,
    validate_prefix,
)
from blacklist_nft import (
    NftRunner,
    NftablesSet,
    RuleEnforcer,
    SetReconciler,
    StatusReporter,
    rule_state_label,
    prefix_sort_key,
)


class InvalidPrefixError(BlacklistError):
    """Exception raised when operator input is not an IPv4 address or CIDR block."""
    pass


class BlacklistHelper:
    """Manual entry commands layered on the set reconciler."""

    def __init__(self, reconciler: SetReconciler, enforcer: RuleEnforcer,
                 config: Optional[BlacklistConfig] = None, log_file: Optional[str] = None):
        self.reconciler = reconciler
        self.enforcer = enforcer
        self.config = config or BlacklistConfig()
        self.reporter = StatusReporter(reconciler, enforcer, self.config)
        self.log_file = Path(log_file or self.config.LOG_FILE)
        self.logger = logging.getLogger(__name__)

    def _parse(self, value: str) -> NetworkPrefix:
        result = validate_prefix(value)
        if not result.ok:
            raise InvalidPrefixError(
                f"Invalid IP address or CIDR range: {value} ({result.reason}). "
                "Valid formats: 192.168.1.1 or 192.168.0.0/24"
            )
        return result.prefix

    def _report_total(self) -> None:
        self.logger.info(f"Total blacklisted entries: {len(self.reconciler.snapshot())}")

    def add(self, value: str) -> None:
        prefix = self._parse(value)
        self.reconciler.require_set()
        if self.reconciler.add(prefix):
            self.logger.info(f"Manually added IP/range: {prefix}")
            self._report_total()

    def remove(self, value: str) -> None:
        prefix = self._parse(value)
        self.reconciler.require_set()
        if self.reconciler.remove(prefix):
            self.logger.info(f"Manually removed IP/range: {prefix}")
            self._report_total()

    def list_entries(self, limit: int = BlacklistConfig.LIST_LIMIT) -> List[str]:
        self.reconciler.require_set()
        entries = sorted(self.reconciler.snapshot(), key=prefix_sort_key)
        lines = ["=== Current Blacklist Entries ==="]
        if not entries:
            lines.append("No entries found in blacklist")
            lines.append("Add entries with: sudo blacklist add <ip-or-range>")
            return lines

        lines.extend(str(e) for e in entries[:limit])
        if len(entries) > limit:
            lines.append(f"Showing first {limit} of {len(entries)} total entries")
        else:
            lines.append(f"Total entries: {len(entries)}")
        ranges = sum(1 for e in entries if e.is_range)
        lines.append(f"Breakdown: {len(entries) - ranges} single IPs, {ranges} networks/ranges")
        return lines

    def status(self) -> Tuple[List[str], bool]:
        """Status lines plus whether the set is configured."""
        report = self.reporter.collect()
        lines = ["=== IP Blacklist System Status ==="]
        if report.set_present:
            lines.append("Blacklist set: EXISTS")
            lines.append(f"Total entries: {report.total}")
            lines.append(f"Breakdown: {report.single_count} single IPs, {report.range_count} networks/ranges")
            if report.sample:
                lines.append("Sample blocked networks:")
                lines.extend(f"  {p}" for p in report.sample)
        else:
            lines.append("Blacklist set: NOT CONFIGURED")
            lines.append("Run: sudo update-blacklists")

        lines.append("Configuration:")
        lines.append(f"  Table: {self.config.NFT_FAMILY} {self.config.NFT_TABLE}")
        lines.append(f"  Set: {self.config.NFT_SET}")

        lines.append("Blocking Rules Status:")
        for chain, state in report.rules.items():
            description = self.config.CHAIN_DESCRIPTIONS.get(chain, chain)
            lines.append(f"  {chain.upper()} chain ({description}): {rule_state_label(state)}")
            if state is None:
                lines.append(f"     Fix: create chain {self.config.NFT_FAMILY} {self.config.NFT_TABLE} {chain} "
                             f"(establish the firewall baseline), then run: sudo update-blacklists")
            elif not state:
                lines.append(f"     Fix: sudo nft {' '.join(self.enforcer.rule_command(chain))}")

        recent = self._recent_activity()
        if recent:
            lines.append("Recent Activity:")
            lines.extend(f"  {line}" for line in recent)
        return lines, report.set_present

    def _recent_activity(self, count: int = 5) -> List[str]:
        try:
            with open(self.log_file, 'r') as f:
                return [line.rstrip('\n') for line in deque(f, maxlen=count)]
        except OSError as e:
            self.logger.debug(f"Could not read activity log {self.log_file}: {e}")
            return []

    def test(self, value: str, ping: bool = True) -> List[str]:
        prefix = self._parse(value)
        self.reconciler.require_set()
        members = self.reconciler.snapshot()
        lines = [f"Testing blocking for {prefix}..."]

        target = ipaddress.IPv4Network(str(prefix), strict=False)
        covering = sorted(
            (m for m in members if m != prefix and m.is_range
             and target.subnet_of(ipaddress.IPv4Network(str(m), strict=False))),
            key=prefix_sort_key
        )
        if prefix in members:
            lines.append(f"IP {prefix} is in blacklist")
        elif covering:
            lines.append(f"IP {prefix} is covered by: {', '.join(str(c) for c in covering)}")
        else:
            lines.append(f"IP {prefix} is not in blacklist")
            return lines

        if ping and not prefix.is_range:
            lines.append(self._probe(prefix.address))
        return lines

    def _probe(self, address: str) -> str:
        try:
            result = subprocess.run(  # nosec B603 B607 - fixed command, validated address
                ['ping', '-c', '1', '-W', '3', address],
                check=False,
                timeout=5,
                capture_output=True
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            return f"Reachability probe unavailable: {e}"
        if result.returncode == 0:
            return "IP responds to ping (may not be blocked or rules inactive)"
        return "IP does not respond (likely blocked successfully)"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='blacklist',
        description='Manage the nftables IP blacklist',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sudo %(prog)s add 192.168.1.100       # Block single IP
  sudo %(prog)s add 81.30.0.0/16        # Block ISP range
  sudo %(prog)s remove 192.168.1.100    # Remove IP block
  sudo %(prog)s list                    # Show blocked networks
  sudo %(prog)s status                  # Full system status
  sudo %(prog)s test 1.2.3.4            # Check whether an IP is blocked

Custom entries persist through automatic blacklist updates.
        """
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose (debug) logging')
    parser.add_argument('--log-file', type=str,
                        help=f'Activity log path (default: {BlacklistConfig.LOG_FILE})')

    commands = parser.add_subparsers(dest='command')
    add = commands.add_parser('add', help='Add IP address or CIDR range to blacklist')
    add.add_argument('target', metavar='ip|cidr')
    remove = commands.add_parser('remove', help='Remove IP address or CIDR range from blacklist')
    remove.add_argument('target', metavar='ip|cidr')
    listing = commands.add_parser('list', help='Show current blacklist entries')
    listing.add_argument('--limit', type=int, default=BlacklistConfig.LIST_LIMIT,
                         help='Number of entries to show (default: %(default)s)')
    commands.add_parser('status', help='Show comprehensive system status')
    test = commands.add_parser('test', help='Check whether an IP address is blocked')
    test.add_argument('target', metavar='ip')
    test.add_argument('--no-ping', action='store_true', help='Skip the reachability probe')
    commands.add_parser('help', help='Show this help message')
    return parser


def main(argv: Optional[List[str]] = None, helper: Optional[BlacklistHelper] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command in (None, 'help'):
        parser.print_help()
        return 0

    logger = setup_logging(args.verbose, args.log_file)

    try:
        if helper is None:
            check_requirements()
            runner = NftRunner()
            helper = BlacklistHelper(SetReconciler(NftablesSet(runner)), RuleEnforcer(runner),
                                     log_file=args.log_file)

        if args.command == 'add':
            helper.add(args.target)
        elif args.command == 'remove':
            helper.remove(args.target)
        elif args.command == 'list':
            print('\n'.join(helper.list_entries(args.limit)))
        elif args.command == 'status':
            lines, configured = helper.status()
            print('\n'.join(lines))
            return 0 if configured else 1
        elif args.command == 'test':
            print('\n'.join(helper.test(args.target, ping=not args.no_ping)))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except SetNotFoundError as e:
        logger.error(f"{e}. {e.hint}")
        return 1
    except BlacklistError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    exit(main())
