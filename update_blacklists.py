#!/usr/bin/python3
"""
IP Blacklist Updater

Downloads threat intelligence feeds and merges them into the nftables
blacklist set, then makes sure the INPUT and FORWARD chains drop traffic from
it. Runs are additive: entries already in the set, including manually added
ones, are never removed by an update.
"""

import argparse
import ipaddress
import itertools
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple
import requests

from blacklist_common import (
    BlacklistConfig,
    BlacklistError,
    FeedFetchError,
    NetworkPrefix,
    NftCommandError,
    ParseStats,
    check_requirements,
    parse_feed,
    setup_logging,
)
from blacklist_nft import (
    NftRunner,
    NftablesSet,
    RuleEnforcer,
    SetReconciler,
    StatusReporter,
)


class FeedSource(NamedTuple):
    """A remote blacklist feed."""

    name: str
    url: str
    comment_markers: Tuple[str, ...] = ('#',)
    max_entries: Optional[int] = None
    timeout: int = BlacklistConfig.REQUEST_TIMEOUT


DEFAULT_SOURCES = (
    FeedSource('spamhaus_drop', 'https://www.spamhaus.org/drop/drop.txt', (';',)),
    FeedSource('feodo', 'https://feodotracker.abuse.ch/downloads/ipblocklist_recommended.txt', ('#',)),
    FeedSource('emerging_threats', 'https://rules.emergingthreats.net/fwrules/emerging-Block-IPs.txt',
               ('#',), max_entries=200),
)


class FeedFetcher:
    """Retrieves raw feed bodies, one attempt per source per run."""

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or self._create_session()
        self.logger = logging.getLogger(__name__)

    def _create_session(self) -> requests.Session:
        """Create a configured requests session."""
        session = requests.Session()
        session.headers.update({'User-Agent': BlacklistConfig.USER_AGENT})
        return session

    def fetch(self, source: FeedSource) -> str:
        """
        Fetch the body of a feed source.

        Raises:
            FeedFetchError: On timeout, connection error or HTTP error status
        """
        try:
            self.logger.info(f"Fetching {source.name}: {source.url}")
            start_time = time.time()
            response = self.session.get(source.url, timeout=source.timeout)
            response.raise_for_status()
            elapsed = time.time() - start_time
            self.logger.info(
                f"Successfully fetched {source.name}, "
                f"response size: {len(response.text)} bytes, "
                f"elapsed: {elapsed:.2f}s"
            )
            return response.text
        except requests.RequestException as e:
            raise FeedFetchError(f"Error fetching {source.name} ({source.url}): {e}") from e

    def close(self) -> None:
        self.session.close()


class Whitelist:
    """Networks that feed data must never block."""

    def __init__(self, networks: Optional[List[ipaddress.IPv4Network]] = None):
        self.networks = networks or []

    @classmethod
    def load(cls, path: Path) -> 'Whitelist':
        logger = logging.getLogger(__name__)
        if not path.exists():
            logger.info(f"No whitelist file found at {path}")
            return cls()
        try:
            content = path.read_text()
        except OSError as e:
            logger.warning(f"Could not read whitelist file {path}: {e}")
            return cls()

        networks = [ipaddress.IPv4Network(str(p), strict=False) for p in parse_feed(content, ('#', ';'))]
        logger.info(f"Loaded {len(networks)} whitelisted networks from {path}")
        return cls(networks)

    def allows(self, prefix: NetworkPrefix) -> bool:
        """True if the prefix does not overlap any whitelisted network."""
        network = ipaddress.IPv4Network(str(prefix), strict=False)
        return not any(network.overlaps(w) for w in self.networks)


class SourceOutcome(NamedTuple):
    name: str
    status: str  # success | partial | failure
    parsed: int = 0
    added: int = 0
    failed: int = 0
    rejected: int = 0
    whitelisted: int = 0
    error: Optional[str] = None


class SyncRun:
    """Bookkeeping for one update run; lives only as long as the run."""

    def __init__(self):
        self.started_at = datetime.now(timezone.utc)
        self.outcomes: List[SourceOutcome] = []
        self.rules: Dict[str, bool] = {}

    def record(self, outcome: SourceOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def total_added(self) -> int:
        return sum(o.added for o in self.outcomes)

    @property
    def status(self) -> str:
        statuses = {o.status for o in self.outcomes}
        if not statuses or statuses == {'failure'}:
            return 'failure'
        if statuses == {'success'}:
            return 'success'
        return 'partial'


class BlacklistUpdater:
    """Main class for the scheduled feed synchronization."""

    def __init__(self, reconciler: SetReconciler, enforcer: RuleEnforcer,
                 fetcher: Optional[FeedFetcher] = None,
                 sources: Sequence[FeedSource] = DEFAULT_SOURCES,
                 whitelist: Optional[Whitelist] = None,
                 dry_run: bool = False):
        self.reconciler = reconciler
        self.enforcer = enforcer
        self.fetcher = fetcher or FeedFetcher()
        self.sources = list(sources)
        self.whitelist = whitelist or Whitelist()
        self.dry_run = dry_run
        self.reporter = StatusReporter(reconciler, enforcer)
        self.logger = logging.getLogger(__name__)

    def _select_prefixes(self, source: FeedSource, body: str,
                         stats: ParseStats, skipped: List[NetworkPrefix]) -> Iterable[NetworkPrefix]:
        prefixes = parse_feed(body, source.comment_markers, stats)
        if source.max_entries is not None:
            prefixes = itertools.islice(prefixes, source.max_entries)
        for prefix in prefixes:
            if self.whitelist.allows(prefix):
                yield prefix
            else:
                skipped.append(prefix)
                self.logger.debug(f"Filtered out whitelisted network: {prefix}")

    def sync_source(self, source: FeedSource) -> SourceOutcome:
        """Fetch, parse and merge one source; failures stay inside this source."""
        try:
            body = self.fetcher.fetch(source)
        except FeedFetchError as e:
            self.logger.warning(f"{e}, continuing without it")
            return SourceOutcome(source.name, 'failure', error=str(e))

        stats = ParseStats()
        whitelisted: List[NetworkPrefix] = []
        result = self.reconciler.add_many(self._select_prefixes(source, body, stats, whitelisted))

        status = 'success' if result.failed == 0 else ('partial' if result.applied else 'failure')
        outcome = SourceOutcome(
            name=source.name,
            status=status,
            parsed=stats.accepted,
            added=result.applied,
            failed=result.failed,
            rejected=stats.rejected,
            whitelisted=len(whitelisted),
        )
        self.logger.info(
            f"{source.name}: {outcome.added} entries loaded, {outcome.failed} failed, "
            f"{outcome.rejected} malformed lines dropped, {outcome.whitelisted} whitelisted"
        )
        return outcome

    def run(self) -> SyncRun:
        """Main execution method."""
        self.logger.info("=== Starting IP blacklist update ===")
        if self.dry_run:
            self.logger.info("=== DRY RUN MODE - No changes will be made ===")

        sync_run = SyncRun()
        try:
            self.reconciler.ensure_set_exists()

            for source in self.sources:
                sync_run.record(self.sync_source(source))

            self.logger.info("Creating blocking rules for host and container protection")
            sync_run.rules = self.enforcer.ensure_rules()
            active = sum(1 for ok in sync_run.rules.values() if ok)
            self.logger.info(f"Blocking rules status: {active} rules active")
        finally:
            self.fetcher.close()

        self._log_summary(sync_run)
        return sync_run

    def _log_summary(self, sync_run: SyncRun) -> None:
        self.logger.info("=== Blacklist Update Complete ===")
        elapsed = (datetime.now(timezone.utc) - sync_run.started_at).total_seconds()
        self.logger.info(f"Run started at {sync_run.started_at.isoformat(timespec='seconds')}, took {elapsed:.1f}s")
        for outcome in sync_run.outcomes:
            detail = f" ({outcome.error})" if outcome.error else ''
            self.logger.info(f"Source {outcome.name}: {outcome.status}, {outcome.added} added{detail}")
        try:
            report = self.reporter.collect()
            for line in self.reporter.summary_lines(report):
                self.logger.info(line)
        except NftCommandError as e:
            self.logger.warning(f"Could not collect status: {e}")
        self.logger.info(f"Run status: {sync_run.status}, {sync_run.total_added} entries applied")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Download threat intelligence feeds and merge them into the nftables blacklist',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                          # Update blacklist from all feeds
  %(prog)s --dry-run                # Show what would be done
  %(prog)s --source feodo           # Only update from one feed
  %(prog)s --whitelist /path/to/whitelist.txt  # Use custom whitelist file
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show what would be done without making changes'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose (debug) logging'
    )
    parser.add_argument(
        '--whitelist',
        type=str,
        help=f'Path to whitelist file (default: {BlacklistConfig.WHITELIST_PATH})'
    )
    parser.add_argument(
        '--source',
        action='append',
        choices=[s.name for s in DEFAULT_SOURCES],
        help='Only use the named feed (repeatable)'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        help=f'Activity log path (default: {BlacklistConfig.LOG_FILE})'
    )

    args = parser.parse_args(argv)
    logger = setup_logging(args.verbose, args.log_file)

    try:
        check_requirements()
        runner = NftRunner(dry_run=args.dry_run)
        sources = [s for s in DEFAULT_SOURCES if not args.source or s.name in args.source]
        whitelist_path = Path(args.whitelist) if args.whitelist else BlacklistConfig.WHITELIST_PATH

        updater = BlacklistUpdater(
            reconciler=SetReconciler(NftablesSet(runner)),
            enforcer=RuleEnforcer(runner),
            sources=sources,
            whitelist=Whitelist.load(whitelist_path),
            dry_run=args.dry_run,
        )
        sync_run = updater.run()
        return 1 if sync_run.status == 'failure' else 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except BlacklistError as e:
        logger.error(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    exit(main())
