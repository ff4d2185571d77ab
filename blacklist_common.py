#!/usr/bin/python3
"""
IP Blacklist Manager - shared building blocks

Configuration constants, the exception hierarchy, the IPv4 prefix parser and
process-level helpers (logging, privilege checks) used by both the scheduled
updater and the manual `blacklist` command.
"""

import logging
import os
import re
import shutil
from pathlib import Path
from typing import Iterable, Iterator, NamedTuple, Optional, Sequence


class BlacklistConfig:
    """Configuration constants for the blacklist manager."""

    # nftables objects
    NFT_BINARY = 'nft'
    NFT_FAMILY = 'inet'
    NFT_TABLE = 'filter'
    NFT_SET = 'blacklist_ips'
    NFT_CHAINS = ('input', 'forward')
    RULE_LABEL = 'ip-blacklist'

    # Human readable purpose of each chain, used in reports
    CHAIN_DESCRIPTIONS = {
        'input': 'host protection',
        'forward': 'container protection',
    }

    # File paths
    LOG_FILE = os.getenv('BLACKLIST_LOG_FILE', '/var/log/blacklist-manager.log')
    WHITELIST_PATH = Path(os.getenv('BLACKLIST_WHITELIST', '/etc/blacklist-manager/whitelist.txt'))

    # Timeouts and limits
    REQUEST_TIMEOUT = 30
    NFT_TIMEOUT = 30
    ADD_CHUNK_SIZE = 500
    LIST_LIMIT = 50

    USER_AGENT = 'IP-Blacklist-Manager/1.0'


class BlacklistError(Exception):
    """Base exception for blacklist manager errors."""
    pass


class FeedFetchError(BlacklistError):
    """Exception raised when a feed source cannot be retrieved."""
    pass


class NftCommandError(BlacklistError):
    """Exception raised when an nft call fails or times out."""

    def __init__(self, message: str, stderr: str = ''):
        super().__init__(message)
        self.stderr = stderr


class SetNotFoundError(BlacklistError):
    """Exception raised when the enforcement set is missing."""

    def __init__(self, message: str, hint: str = ''):
        super().__init__(message)
        self.hint = hint


class RequirementError(BlacklistError):
    """Exception raised when the process cannot run at all (privilege, tools)."""
    pass


class NetworkPrefix(NamedTuple):
    """An IPv4 address (length None) or CIDR block in canonical text form."""

    address: str
    length: Optional[int] = None

    def __str__(self) -> str:
        if self.length is None:
            return self.address
        return f"{self.address}/{self.length}"

    @property
    def is_range(self) -> bool:
        return self.length is not None


class ParseResult(NamedTuple):
    """Outcome of validating one token: a prefix or a rejection reason."""

    prefix: Optional[NetworkPrefix]
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.prefix is not None


class ParseStats:
    """Per-call counters filled in by parse_feed()."""

    def __init__(self):
        self.accepted = 0
        self.rejected = 0
        self.skipped = 0


# A candidate token may not be glued to other digits, dots or slashes, so
# "192.168.1.256" and "10.0.0.0/333" never yield a shorter partial match.
_TOKEN_RE = re.compile(
    r'(?<![\d.])(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})(?:/(\d{1,2}))?(?![\d./])',
    re.ASCII
)
_FULL_RE = re.compile(r'^(\d+)\.(\d+)\.(\d+)\.(\d+)(?:/(\d+))?$', re.ASCII)


def _build_prefix(groups: Sequence[Optional[str]]) -> ParseResult:
    octets = [int(group) for group in groups[:4]]
    for octet in octets:
        if octet > 255:
            return ParseResult(None, f"octet {octet} out of range")

    length = None
    if groups[4] is not None:
        length = int(groups[4])
        if length > 32:
            return ParseResult(None, f"prefix length /{length} out of range")
        if length == 32:
            # nftables lists a /32 element back as the bare address
            length = None

    return ParseResult(NetworkPrefix('.'.join(str(o) for o in octets), length))


def validate_prefix(token: str) -> ParseResult:
    """
    Validate a complete token as an IPv4 address or CIDR block.

    The whole string must be the address (no surrounding text). Used by the
    manual path so operator input goes through the same rules as feed data.
    """
    match = _FULL_RE.match(token.strip())
    if not match:
        return ParseResult(None, "not an IPv4 address or CIDR block")
    return _build_prefix(match.groups())


def parse_line(line: str, comment_markers: Iterable[str] = ('#', ';')) -> ParseResult:
    """
    Extract the first valid prefix from one line of feed text.

    Comment lines and blank lines produce a rejection with reason 'skipped'.
    Trailing annotation text after the prefix is ignored.
    """
    stripped = line.strip()
    if not stripped or any(stripped.startswith(m) for m in comment_markers):
        return ParseResult(None, 'skipped')

    reason = "no address found"
    for match in _TOKEN_RE.finditer(stripped):
        result = _build_prefix(match.groups())
        if result.ok:
            return result
        reason = result.reason
    return ParseResult(None, reason)


def parse_feed(text: str, comment_markers: Iterable[str] = ('#', ';'),
               stats: Optional[ParseStats] = None) -> Iterator[NetworkPrefix]:
    """Lazily yield every valid prefix in a feed body, dropping noise."""
    logger = logging.getLogger(__name__)
    markers = tuple(comment_markers)

    for line_num, line in enumerate(text.splitlines(), 1):
        result = parse_line(line, markers)
        if result.ok:
            if stats is not None:
                stats.accepted += 1
            yield result.prefix
        elif result.reason == 'skipped':
            if stats is not None:
                stats.skipped += 1
        else:
            if stats is not None:
                stats.rejected += 1
            logger.debug(f"Line {line_num}: {result.reason}, ignored: {line.strip()!r}")


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """Configure console logging plus the append-only activity log."""
    level = logging.DEBUG if verbose else logging.INFO
    log_file = log_file or BlacklistConfig.LOG_FILE

    handlers = [logging.StreamHandler()]
    file_error = None
    try:
        handlers.append(logging.FileHandler(log_file))
    except OSError as e:
        file_error = e

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    logger = logging.getLogger(__name__)
    if file_error is not None:
        logger.warning(f"Activity log {log_file} not writable ({file_error}), logging to console only")
    return logger


def check_requirements(nft_binary: str = BlacklistConfig.NFT_BINARY) -> None:
    """
    Refuse to run without root or without the nft tool.

    Raises:
        RequirementError: If either requirement is not met
    """
    if os.geteuid() != 0:
        raise RequirementError("Must run as root (try: sudo)")
    if shutil.which(nft_binary) is None:
        raise RequirementError(f"Missing required tool: {nft_binary}")
