#!/usr/bin/env python3
"""
Blocklist Download Thing v0.1

Downloads domain, IP and CIDR blocklists, normalizes them and merges them into
a single deterministic artifact for DNS resolvers, firewalls and ad-blockers.

Features:
- Concurrent downloads using requests with retry/backoff
- Hosts, plain, AdBlock Plus and CIDR source formats
- Incremental updates with ETags and Last-Modified
- Allowlist support (exact, wildcard, regex)
- Atomic output in hosts, plain, dnsmasq or unbound syntax
"""

import os
import re
import sys
import json
import time
import hashlib
import logging
import argparse
import tempfile
import functools
import ipaddress
import threading
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple
from dataclasses import dataclass, field, replace
from urllib.parse import urlparse
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError

import requests
from requests.adapters import HTTPAdapter
from tqdm import tqdm
from urllib3.exceptions import MaxRetryError, NewConnectionError
from urllib3.exceptions import TimeoutError as Urllib3TimeoutError
from urllib3.util.retry import Retry

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_CONFIG_FILE = "blocklists.json"
DEFAULT_CACHE_DIR = "blocklist_cache"
CACHE_INDEX_FILE = "index.json"
LOCAL_SOURCE = "local"
USER_AGENT = f"blocklistdownloadthing/{__version__}"
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

MIN_THREADS = 1
MAX_THREADS = 16
DEFAULT_THREADS = 4
DEFAULT_TIMEOUT = 30
DEFAULT_RUN_TIMEOUT = 300

MAX_RETRIES = 4
RETRY_BACKOFF = 0.5
RETRY_STATUS_CODES = list(range(500, 600))

DEFAULT_MAX_BYTES = 64 * 1024 * 1024
CHUNK_SIZE = 64 * 1024

MAX_DOMAIN_LENGTH = 253

# Pre-compiled regex patterns
DOMAIN_PATTERN = re.compile(
    r'^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9][a-z0-9-]{0,61}[a-z0-9]$'
)
ADBLOCK_PATTERN = re.compile(r'^\|\|([^\^$|/]+)\^(?:\$(.*))?$')
COMMENT_PATTERN = re.compile(r'(#|!).*$')
HASH_COMMENT_PATTERN = re.compile(r'#.*$')
UNSAFE_FILENAME_PATTERN = re.compile(r'[^A-Za-z0-9._-]+')

HOSTS_SENTINELS = frozenset(
    ipaddress.ip_address(address) for address in ('0.0.0.0', '127.0.0.1', '::', '::1')
)
HOSTS_IGNORED_NAMES = frozenset({
    'localhost', 'localhost.localdomain', 'local', 'broadcasthost',
    'ip6-localhost', 'ip6-loopback', 'ip6-localnet', 'ip6-mcastprefix',
    'ip6-allnodes', 'ip6-allrouters', 'ip6-allhosts',
})


class SourceFormat(Enum):
    """Syntax of a remote blocklist."""
    HOSTS = 'hosts'
    PLAIN = 'plain'
    ADBLOCK = 'adblock'
    CIDR = 'cidr'


class EntryKind(Enum):
    DOMAIN = 'domain'
    IPV4 = 'ipv4'
    IPV6 = 'ipv6'
    CIDR = 'cidr'


KIND_ORDER = {EntryKind.DOMAIN: 0, EntryKind.IPV4: 1, EntryKind.IPV6: 2, EntryKind.CIDR: 3}


class OutputFormat(Enum):
    """Syntax of the merged artifact."""
    HOSTS = 'hosts'
    PLAIN = 'plain'
    DNSMASQ = 'dnsmasq'
    UNBOUND = 'unbound'


OUTPUT_TEMPLATES = {
    OutputFormat.HOSTS: '0.0.0.0 {}',
    OutputFormat.PLAIN: '{}',
    OutputFormat.DNSMASQ: 'address=/{}/',
    OutputFormat.UNBOUND: 'local-zone: "{}" always_nxdomain',
}


class SourceStatus(Enum):
    FETCHED = 'fetched'
    UNMODIFIED = 'unmodified'
    STALE = 'stale'
    FAILED = 'failed'


class RunState(Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    PARSING = 'parsing'
    MERGING = 'merging'
    WRITING = 'writing'
    DONE = 'done'
    FAILED = 'failed'


# ============================================================================
# ERRORS
# ============================================================================

class BlocklistError(Exception):
    """Base exception for all blocklist failures."""
    kind = 'BlocklistError'


class ConfigError(BlocklistError):
    """Raised for invalid source configuration, before any download."""
    kind = 'ConfigError'


class FetchError(BlocklistError):
    """Raised when a single source cannot be retrieved."""
    kind = 'FetchError'


class FetchTimeoutError(FetchError):
    kind = 'Timeout'


class ClientError(FetchError):
    """4xx response. Never retried."""
    kind = 'ClientError'

    def __init__(self, url: str, status: int):
        super().__init__(f"{url} returned status {status}")
        self.status = status


class ServerError(FetchError):
    """5xx response left after all retries were spent."""
    kind = 'ServerError'

    def __init__(self, url: str, status: int):
        super().__init__(f"{url} returned status {status}")
        self.status = status


class NetworkError(FetchError):
    kind = 'NetworkError'


class TooLargeError(FetchError):
    kind = 'TooLarge'


class ParseError(BlocklistError):
    kind = 'ParseError'


class EmptyResultError(ParseError):
    kind = 'EmptyResult'


class WriteError(BlocklistError):
    kind = 'IOError'


class AllSourcesFailedError(BlocklistError):
    kind = 'AllSourcesFailed'


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass(frozen=True)
class Source:
    """Represents a single blocklist source."""
    identifier: str
    url: str
    format: SourceFormat = SourceFormat.HOSTS
    enabled: bool = True


@dataclass(frozen=True)
class RawPayload:
    """Downloaded bytes of one source, plus the validators that came with them."""
    source_identifier: str
    content: bytes
    fetched_at: datetime
    content_hash: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    not_modified: bool = False


@dataclass
class Entry:
    """A normalized blocklist record."""
    pattern: str
    kind: EntryKind
    origin_sources: Set[str] = field(default_factory=set)

    @property
    def key(self) -> Tuple[EntryKind, str]:
        return self.kind, self.pattern


@dataclass
class ParseResult:
    entries: List[Entry]
    rejected: int = 0
    skipped: int = 0


@dataclass
class SourceOutcome:
    """Per-source result, kept for reporting only."""
    identifier: str
    status: SourceStatus
    entry_count: int = 0
    rejected: int = 0
    error: Optional[BlocklistError] = None

    @property
    def success(self) -> bool:
        return self.status is not SourceStatus.FAILED


@dataclass
class RunSummary:
    """Accumulator threaded through a run and returned to the caller."""
    outcomes: Dict[str, SourceOutcome] = field(default_factory=dict)
    state: RunState = RunState.IDLE
    unique_entries: int = 0
    allowlisted: int = 0
    elapsed: float = 0.0
    error: Optional[BlocklistError] = None

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.DONE

    def count(self, status: SourceStatus) -> int:
        return sum(1 for outcome in self.outcomes.values() if outcome.status is status)

    def format(self) -> str:
        """Render a human-readable report of the run."""
        lines = ["=" * 60, " " * 25 + "SUMMARY", "=" * 60]
        for outcome in self.outcomes.values():
            detail = f"{outcome.entry_count:,} entries"
            if outcome.rejected:
                detail += f", {outcome.rejected:,} rejected"
            if outcome.error is not None:
                detail += f" [{outcome.error.kind}: {outcome.error}]"
            lines.append(f"  {outcome.identifier:<28} {outcome.status.value:<11} {detail}")
        lines.append("-" * 60)
        lines.append(f"Total lists:        {len(self.outcomes)}")
        lines.append(f"Fetched:            {self.count(SourceStatus.FETCHED)}")
        lines.append(f"Unmodified:         {self.count(SourceStatus.UNMODIFIED)}")
        if self.count(SourceStatus.STALE):
            lines.append(f"Stale (cached):     {self.count(SourceStatus.STALE)}")
        lines.append(f"Failed:             {self.count(SourceStatus.FAILED)}")
        lines.append(f"Unique entries:     {self.unique_entries:,}")
        if self.allowlisted:
            lines.append(f"Allowlisted:        {self.allowlisted:,}")
        lines.append(f"Runtime:            {self.elapsed:.2f} seconds")
        status = "SUCCESS" if self.succeeded else f"FAILED ({self.error})"
        lines.append(f"Status:             {status}")
        lines.append("=" * 60)
        return "\n".join(lines)


@dataclass
class Config:
    """Runtime settings for a download run."""
    config_file: str = DEFAULT_CONFIG_FILE
    output_file: Optional[str] = None
    output_format: OutputFormat = OutputFormat.HOSTS
    cache_dir: Optional[str] = DEFAULT_CACHE_DIR
    allowlist_file: Optional[str] = None
    threads: int = DEFAULT_THREADS
    timeout: float = DEFAULT_TIMEOUT
    run_timeout: float = DEFAULT_RUN_TIMEOUT
    max_retries: int = MAX_RETRIES
    backoff_factor: float = RETRY_BACKOFF
    max_bytes: int = DEFAULT_MAX_BYTES
    incremental: bool = True
    use_stale_cache: bool = False
    collapse_subdomains: bool = False
    allowlist_subdomains: bool = False
    adblock_modifiers: bool = False
    progress: bool = True
    quiet: bool = False
    verbose: bool = False
    log_file: Optional[str] = None

    def __post_init__(self):
        self.threads = max(MIN_THREADS, min(self.threads, MAX_THREADS))
        if self.timeout <= 0:
            self.timeout = DEFAULT_TIMEOUT
        if self.run_timeout <= 0:
            self.run_timeout = DEFAULT_RUN_TIMEOUT
        if self.max_retries < 0:
            self.max_retries = 0
        if self.backoff_factor < 0:
            self.backoff_factor = RETRY_BACKOFF
        if self.max_bytes <= 0:
            self.max_bytes = DEFAULT_MAX_BYTES


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

@functools.lru_cache(maxsize=10000)
def validate_domain(domain: str) -> bool:
    """Validate a normalized domain name."""
    if not domain or len(domain) > MAX_DOMAIN_LENGTH:
        return False
    # an all-numeric top label is an address, not a domain
    if domain.rsplit('.', 1)[-1].isdigit():
        return False
    return bool(DOMAIN_PATTERN.match(domain))


def normalize_domain(domain: str) -> str:
    """Normalize domain to lowercase without a trailing dot."""
    return domain.strip().lower().rstrip('.')


def domain_entry(token: str) -> Optional[Entry]:
    domain = normalize_domain(token)
    if not validate_domain(domain):
        return None
    return Entry(domain, EntryKind.DOMAIN)


def address_entry(token: str) -> Optional[Entry]:
    try:
        address = ipaddress.ip_address(token.strip())
    except ValueError:
        return None
    kind = EntryKind.IPV4 if address.version == 4 else EntryKind.IPV6
    return Entry(str(address), kind)


def network_entry(token: str) -> Optional[Entry]:
    """Parse CIDR notation; host bits are cleared."""
    try:
        network = ipaddress.ip_network(token.strip(), strict=False)
    except ValueError:
        return None
    return Entry(str(network), EntryKind.CIDR)


def classify(token: str) -> Optional[Entry]:
    """Turn a single token into an address, network or domain entry."""
    token = token.strip().lower()
    if not token or any(c.isspace() for c in token):
        return None
    if '/' in token:
        return network_entry(token)
    return address_entry(token) or domain_entry(token)


def listed_parent(domain: str, domains: Set[str]) -> Optional[str]:
    """Return the shortest parent of domain present in domains.

    O(k) in the number of labels: every parent is looked up in the set instead
    of scanning the set.
    """
    parts = domain.split('.')
    for i in range(len(parts) - 1, 0, -1):
        parent = '.'.join(parts[i:])
        if parent in domains:
            return parent
    return None


def atomic_write(path: str, data: bytes) -> None:
    """Write data to path via a temp file in the same directory and a rename.

    Readers see either the old file or the new one, never a partial write.
    """
    path = os.path.abspath(path)
    directory = os.path.dirname(path)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp")
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, _target_mode(path))
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _target_mode(path: str) -> int:
    try:
        return os.stat(path).st_mode & 0o777
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


# ============================================================================
# PARSER
# ============================================================================

# Line parsers return None for a malformed line, an empty list for a line that
# carries no rule, or the entries found on the line.

def _parse_hosts_line(line: str, adblock_modifiers: bool) -> Optional[List[Entry]]:
    line = HASH_COMMENT_PATTERN.sub('', line).strip()
    if not line:
        return []

    fields = line.split()
    hosts = [host for host in (fields[1:] or fields) if normalize_domain(host) not in HOSTS_IGNORED_NAMES]
    if not hosts:
        # loopback and multicast housekeeping lines
        return []

    if len(fields) > 1:
        try:
            address = ipaddress.ip_address(fields[0])
        except ValueError:
            return None
        if address not in HOSTS_SENTINELS:
            return None

    entries = []
    for host in hosts:
        entry = domain_entry(host)
        if entry is None:
            return None
        entries.append(entry)
    return entries


def _parse_plain_line(line: str, adblock_modifiers: bool) -> Optional[List[Entry]]:
    line = COMMENT_PATTERN.sub('', line).strip()
    if not line:
        return []
    entry = classify(line)
    return [entry] if entry else None


def _parse_adblock_line(line: str, adblock_modifiers: bool) -> Optional[List[Entry]]:
    if line.startswith('!') or (line.startswith('[') and line.endswith(']')):
        return []
    if line.startswith('@@'):
        return []

    match = ADBLOCK_PATTERN.match(line)
    if not match:
        # element hiding, regex and path rules have no DNS equivalent
        return []

    domain, modifiers = match.groups()
    if modifiers is not None and not adblock_modifiers:
        return []
    entry = domain_entry(domain)
    return [entry] if entry else None


def _parse_cidr_line(line: str, adblock_modifiers: bool) -> Optional[List[Entry]]:
    line = HASH_COMMENT_PATTERN.sub('', line).strip()
    if not line:
        return []
    if '/' in line:
        entry = network_entry(line)
    else:
        entry = address_entry(line)
    return [entry] if entry else None


LINE_PARSERS: Dict[SourceFormat, Callable[[str, bool], Optional[List[Entry]]]] = {
    SourceFormat.HOSTS: _parse_hosts_line,
    SourceFormat.PLAIN: _parse_plain_line,
    SourceFormat.ADBLOCK: _parse_adblock_line,
    SourceFormat.CIDR: _parse_cidr_line,
}


def parse(payload: RawPayload, source_format: SourceFormat,
          adblock_modifiers: bool = False) -> ParseResult:
    """Convert a raw payload into normalized entries.

    Malformed lines are counted in ``rejected``; a payload without a single
    valid entry raises EmptyResultError.
    """
    text = payload.content.decode('utf-8', errors='ignore').lstrip('\ufeff')
    parse_line = LINE_PARSERS[source_format]
    result = ParseResult(entries=[])

    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        parsed = parse_line(line, adblock_modifiers)
        if parsed is None:
            result.rejected += 1
            logger.debug(f"{payload.source_identifier}: rejected line {line!r}")
        elif not parsed:
            result.skipped += 1
        else:
            result.entries.extend(parsed)

    if not result.entries:
        raise EmptyResultError(
            f"{payload.source_identifier} yielded no valid {source_format.value} entries "
            f"({result.rejected} rejected)"
        )

    for entry in result.entries:
        entry.origin_sources.add(payload.source_identifier)
    return result


# ============================================================================
# SOURCE REGISTRY
# ============================================================================

class SourceRegistry:
    """Read-only collection of configured sources.

    Also carries the allowlist patterns and locally listed entries that come
    from the same configuration file.
    """

    def __init__(self, sources: Sequence[Source], allowlist: Sequence[str] = (),
                 local_entries: Sequence[Entry] = ()):
        seen: Set[str] = set()
        for source in sources:
            if source.identifier == LOCAL_SOURCE:
                raise ConfigError(f"Source name '{LOCAL_SOURCE}' is reserved")
            if source.identifier in seen:
                raise ConfigError(f"Duplicate source name: {source.identifier}")
            seen.add(source.identifier)

            result = urlparse(source.url)
            if result.scheme not in ('http', 'https') or not result.netloc:
                raise ConfigError(f"Invalid URL for {source.identifier}: {source.url}")

        if not any(source.enabled for source in sources):
            raise ConfigError("No enabled blocklists found in configuration")

        self._sources = tuple(sources)
        self.allowlist = tuple(allowlist)
        self.local_entries = tuple(local_entries)

    @classmethod
    def load(cls, path: str) -> 'SourceRegistry':
        """Load sources from a JSON configuration file."""
        logger.info(f"Loading configuration from {path}")
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except OSError as e:
            raise ConfigError(f"Can't read {path}: {e}") from e
        except ValueError as e:
            raise ConfigError(f"Can't parse {path}: {e}") from e
        registry = cls.from_dict(data)
        logger.info(f"Loaded {len(registry.enabled())} enabled of {len(registry)} blocklists")
        return registry

    @classmethod
    def from_dict(cls, data: Any) -> 'SourceRegistry':
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a JSON object")

        raw_sources = data.get('sources')
        if not isinstance(raw_sources, list):
            raise ConfigError("Configuration needs a 'sources' list")
        sources = [_source_from_dict(item, index) for index, item in enumerate(raw_sources, 1)]

        allowlist = data.get('allowlist', [])
        if not isinstance(allowlist, list) or not all(isinstance(p, str) for p in allowlist):
            raise ConfigError("'allowlist' must be a list of strings")

        local_entries = []
        for token in data.get('blocklist', []):
            entry = classify(token) if isinstance(token, str) else None
            if entry is None:
                raise ConfigError(f"Invalid blocklist entry: {token!r}")
            entry.origin_sources.add(LOCAL_SOURCE)
            local_entries.append(entry)

        return cls(sources, allowlist, local_entries)

    def sources(self) -> Tuple[Source, ...]:
        return self._sources

    def enabled(self) -> Tuple[Source, ...]:
        return tuple(source for source in self._sources if source.enabled)

    def __len__(self) -> int:
        return len(self._sources)


def _source_from_dict(item: Any, index: int) -> Source:
    if not isinstance(item, dict):
        raise ConfigError(f"Source #{index} must be an object")

    url = item.get('url')
    if not isinstance(url, str) or not url.strip():
        raise ConfigError(f"Source #{index} has no url")
    url = url.strip()

    name = item.get('name', url)
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"Source #{index} has an invalid name")

    try:
        source_format = SourceFormat(item.get('format', SourceFormat.HOSTS.value))
    except ValueError:
        valid = ', '.join(f.value for f in SourceFormat)
        raise ConfigError(f"Unknown format for {name}: {item.get('format')!r}, valid formats are: {valid}")

    enabled = item.get('enabled', True)
    if not isinstance(enabled, bool):
        raise ConfigError(f"'enabled' for {name} must be true or false")

    return Source(identifier=name.strip(), url=url, format=source_format, enabled=enabled)


# ============================================================================
# FETCH CACHE
# ============================================================================

class FetchCache:
    """Persists validators and the last payload of every source between runs."""

    def __init__(self, cache_dir: str):
        self.cache_dir = cache_dir
        self.index_file = os.path.join(cache_dir, CACHE_INDEX_FILE)
        self.index: Dict[str, Dict[str, Any]] = {}
        self.load()

    def load(self) -> None:
        if os.path.exists(self.index_file):
            try:
                with open(self.index_file, 'r', encoding='utf-8') as f:
                    self.index = json.load(f)
                logger.debug(f"Loaded cache metadata for {len(self.index)} lists")
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load cache index: {e}")
                self.index = {}

    def save(self) -> None:
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
            data = json.dumps(self.index, indent=2, sort_keys=True).encode('utf-8')
            atomic_write(self.index_file, data)
        except OSError as e:
            logger.error(f"Failed to save cache index: {e}")

    def payload_path(self, identifier: str) -> str:
        digest = hashlib.sha1(identifier.encode('utf-8')).hexdigest()[:8]
        safe = UNSAFE_FILENAME_PATTERN.sub('_', identifier)[:64]
        return os.path.join(self.cache_dir, f"{safe}-{digest}.raw")

    def lookup(self, source: Source) -> Optional[RawPayload]:
        """Return the cached payload of source, if it is present and intact."""
        info = self.index.get(source.identifier)
        if not info or info.get('url') != source.url:
            return None

        try:
            with open(self.payload_path(source.identifier), 'rb') as f:
                content = f.read()
        except OSError as e:
            logger.debug(f"No cached payload for {source.identifier}: {e}")
            return None

        content_hash = hashlib.sha256(content).hexdigest()
        if content_hash != info.get('content_hash'):
            logger.warning(f"Cached payload for {source.identifier} is corrupt, ignoring it")
            return None

        try:
            fetched_at = datetime.fromisoformat(info['last_download'])
        except (KeyError, TypeError, ValueError):
            fetched_at = datetime.fromtimestamp(0, timezone.utc)

        return RawPayload(
            source_identifier=source.identifier,
            content=content,
            fetched_at=fetched_at,
            content_hash=content_hash,
            etag=info.get('etag'),
            last_modified=info.get('last_modified'),
        )

    def store(self, source: Source, payload: RawPayload, entry_count: int) -> None:
        previous = self.index.get(source.identifier, {})
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
            path = self.payload_path(source.identifier)
            if previous.get('content_hash') != payload.content_hash or not os.path.exists(path):
                atomic_write(path, payload.content)
        except OSError as e:
            logger.warning(f"Failed writing {source.identifier} to cache: {e}")
            return

        self.index[source.identifier] = {
            'url': source.url,
            'etag': payload.etag,
            'last_modified': payload.last_modified,
            'content_hash': payload.content_hash,
            'entry_count': entry_count,
            'last_download': payload.fetched_at.isoformat(),
        }


# ============================================================================
# HTTP CLIENT
# ============================================================================

def _is_timeout(error: requests.exceptions.RequestException) -> bool:
    if isinstance(error, requests.exceptions.Timeout):
        return True
    # exhausted read retries surface as ConnectionError(MaxRetryError(ReadTimeoutError))
    reason = error.args[0] if error.args else None
    if isinstance(reason, MaxRetryError):
        reason = reason.reason
    return isinstance(reason, Urllib3TimeoutError) and not isinstance(reason, NewConnectionError)


class Fetcher:
    """HTTP client with retry, conditional request and size limit support."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, max_retries: int = MAX_RETRIES,
                 backoff_factor: float = RETRY_BACKOFF, max_bytes: int = DEFAULT_MAX_BYTES,
                 pool_size: int = DEFAULT_THREADS, cancel_event: Optional[threading.Event] = None):
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.max_bytes = max_bytes
        self.pool_size = pool_size
        self.cancel_event = cancel_event
        self.session = self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a session with retry logic."""
        session = requests.Session()
        session.headers['User-Agent'] = USER_AGENT
        retry = Retry(
            total=self.max_retries,
            connect=self.max_retries,
            read=self.max_retries,
            status=self.max_retries,
            backoff_factor=self.backoff_factor,
            status_forcelist=RETRY_STATUS_CODES,
            allowed_methods=["GET"],
            raise_on_status=False,
            respect_retry_after_header=False,
        )
        adapter = HTTPAdapter(max_retries=retry, pool_connections=self.pool_size,
                              pool_maxsize=self.pool_size)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def close(self) -> None:
        self.session.close()

    def fetch(self, source: Source, cached: Optional[RawPayload] = None) -> RawPayload:
        """Download source, reusing cached when the server reports no change."""
        headers = {}
        if cached is not None:
            if cached.etag:
                headers['If-None-Match'] = cached.etag
            if cached.last_modified:
                headers['If-Modified-Since'] = cached.last_modified

        try:
            with self.session.get(source.url, headers=headers, timeout=self.timeout,
                                  stream=True) as response:
                self._check_cancelled(source)
                status = response.status_code

                # 304 Not Modified
                if status == 304 and cached is not None:
                    logger.debug(f"{source.identifier}: not modified")
                    return replace(
                        cached,
                        not_modified=True,
                        etag=response.headers.get('ETag', cached.etag),
                        last_modified=response.headers.get('Last-Modified', cached.last_modified),
                    )
                if 400 <= status < 500:
                    raise ClientError(source.url, status)
                if status >= 500:
                    raise ServerError(source.url, status)
                if not 200 <= status < 300:
                    raise FetchError(f"{source.url} returned unexpected status {status}")

                content = self._read_body(source, response)
                etag = response.headers.get('ETag')
                last_modified = response.headers.get('Last-Modified')
        except requests.exceptions.RequestException as e:
            if _is_timeout(e):
                raise FetchTimeoutError(f"{source.url} timed out: {e}") from e
            raise NetworkError(f"Could not fetch {source.url}: {e}") from e

        return RawPayload(
            source_identifier=source.identifier,
            content=content,
            fetched_at=datetime.now(timezone.utc),
            content_hash=hashlib.sha256(content).hexdigest(),
            etag=etag,
            last_modified=last_modified,
        )

    def _read_body(self, source: Source, response: requests.Response) -> bytes:
        declared = response.headers.get('Content-Length', '')
        if declared.isdigit() and int(declared) > self.max_bytes:
            raise TooLargeError(f"{source.url} declares {declared} bytes, limit is {self.max_bytes}")

        chunks = []
        total = 0
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            self._check_cancelled(source)
            total += len(chunk)
            if total > self.max_bytes:
                raise TooLargeError(f"{source.url} exceeds the {self.max_bytes} byte limit")
            chunks.append(chunk)
        return b''.join(chunks)

    def _check_cancelled(self, source: Source) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise FetchTimeoutError(f"{source.identifier}: cancelled, run timeout expired")


# ============================================================================
# ALLOWLIST
# ============================================================================

class Allowlist:
    """Removes entries matching exact, wildcard or regex patterns.

    Exact patterns are matched with set lookups; wildcard and /regex/ patterns
    are folded into a single combined regex and only apply to domains.
    """

    def __init__(self, patterns: Iterable[str] = (), match_subdomains: bool = False):
        self.match_subdomains = match_subdomains
        self.exact: Set[str] = set()
        self.wildcard_patterns: List[Tuple[str, re.Pattern]] = []
        self.regex_patterns: List[Tuple[str, re.Pattern]] = []
        self.combined_pattern: Optional[re.Pattern] = None

        for pattern in patterns:
            self.add(pattern)
        self._compile()

    @classmethod
    def load(cls, path: str, patterns: Iterable[str] = (),
             match_subdomains: bool = False) -> 'Allowlist':
        """Build an allowlist from a file (one pattern per line) plus extra patterns."""
        all_patterns = list(patterns)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                for line in f:
                    if '#' in line:
                        line = line[:line.index('#')]
                    line = line.strip()
                    if line:
                        all_patterns.append(line)
        except OSError as e:
            raise ConfigError(f"Can't read allowlist {path}: {e}") from e
        allowlist = cls(all_patterns, match_subdomains)
        logger.info(f"Loaded {len(allowlist)} allowlist entries from {path}")
        return allowlist

    def add(self, pattern: str) -> None:
        pattern = pattern.strip()

        # Regex pattern
        if len(pattern) > 2 and pattern.startswith('/') and pattern.endswith('/'):
            try:
                self.regex_patterns.append((pattern, re.compile(pattern[1:-1])))
            except re.error as e:
                logger.warning(f"Invalid allowlist regex {pattern}: {e}")
            return

        # Wildcard pattern
        if '*' in pattern:
            regex = '^' + re.escape(pattern.lower()).replace(r'\*', '.*') + '$'
            self.wildcard_patterns.append((pattern, re.compile(regex)))
            return

        entry = classify(pattern)
        if entry is None:
            logger.warning(f"Invalid allowlist entry: {pattern}")
            return
        self.exact.add(entry.pattern)

    def _compile(self) -> None:
        sources = [compiled.pattern for _, compiled in self.wildcard_patterns + self.regex_patterns]
        if sources:
            self.combined_pattern = re.compile('|'.join(f'(?:{s})' for s in sources))

    def matches(self, entry: Entry) -> bool:
        if entry.pattern in self.exact:
            return True
        if entry.kind is not EntryKind.DOMAIN:
            return False
        if self.match_subdomains and listed_parent(entry.pattern, self.exact):
            return True
        return bool(self.combined_pattern and self.combined_pattern.search(entry.pattern))

    def __len__(self) -> int:
        return len(self.exact) + len(self.wildcard_patterns) + len(self.regex_patterns)


# ============================================================================
# MERGER
# ============================================================================

def _sort_key(entry: Entry) -> Tuple[int, str]:
    return KIND_ORDER[entry.kind], entry.pattern


class CanonicalList:
    """Unique entries ordered by kind, then pattern."""

    def __init__(self, entries: Iterable[Entry] = ()):
        self._entries = tuple(sorted(entries, key=_sort_key))
        if len({entry.key for entry in self._entries}) != len(self._entries):
            raise ValueError("CanonicalList entries must have unique (kind, pattern) keys")

    def __iter__(self) -> Iterator[Entry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index: int) -> Entry:
        return self._entries[index]

    def patterns(self, kind: Optional[EntryKind] = None) -> List[str]:
        return [entry.pattern for entry in self._entries if kind is None or entry.kind is kind]

    def provenance(self) -> Dict[str, List[str]]:
        return {entry.pattern: sorted(entry.origin_sources) for entry in self._entries}

    def without(self, predicate: Callable[[Entry], bool]) -> 'CanonicalList':
        return CanonicalList(entry for entry in self._entries if not predicate(entry))


def merge(results: Iterable[Tuple[Source, Sequence[Entry]]],
          collapse_subdomains: bool = False) -> CanonicalList:
    """Deduplicate entries from every source into a CanonicalList.

    The first occurrence of a (kind, pattern) key is kept and the identifiers
    of all later contributors are added to its origin_sources. Subdomains are
    kept next to their parents unless collapse_subdomains is set.
    """
    index: Dict[Tuple[EntryKind, str], Entry] = {}
    for source, entries in results:
        for entry in entries:
            existing = index.get(entry.key)
            if existing is None:
                index[entry.key] = Entry(entry.pattern, entry.kind,
                                         set(entry.origin_sources) | {source.identifier})
            else:
                existing.origin_sources.add(source.identifier)
                existing.origin_sources.update(entry.origin_sources)

    if collapse_subdomains:
        _collapse_subdomains(index)
    return CanonicalList(index.values())


def _collapse_subdomains(index: Dict[Tuple[EntryKind, str], Entry]) -> None:
    domains = {pattern for kind, pattern in index if kind is EntryKind.DOMAIN}
    removed = 0
    for key in sorted(index, key=lambda k: k[1]):
        kind, pattern = key
        if kind is not EntryKind.DOMAIN:
            continue
        parent = listed_parent(pattern, domains)
        if parent:
            index[(EntryKind.DOMAIN, parent)].origin_sources.update(index.pop(key).origin_sources)
            removed += 1
    if removed:
        logger.info(f"Collapsed {removed:,} subdomains into listed parents")


# ============================================================================
# WRITER
# ============================================================================

def render(canonical: CanonicalList, output_format: OutputFormat) -> str:
    """Serialize canonical in output_format, with a header but no timestamp."""
    template = OUTPUT_TEMPLATES[output_format]
    lines = []
    omitted = 0
    for entry in canonical:
        if output_format is not OutputFormat.PLAIN and entry.kind is not EntryKind.DOMAIN:
            omitted += 1
            continue
        lines.append(template.format(entry.pattern))

    if omitted:
        logger.warning(f"{output_format.value} output cannot express addresses or networks, "
                       f"omitted {omitted:,} entries")

    header = [
        f"# Merged blocklist ({output_format.value}) generated by blocklistdownloadthing",
        f"# Total entries: {len(lines)}",
        "",
    ]
    return "\n".join(header + lines) + "\n"


def write(canonical: CanonicalList, destination: Optional[str], output_format: OutputFormat) -> None:
    """Commit canonical to destination atomically, or to stdout if destination is None."""
    text = render(canonical, output_format)

    if destination is None:
        try:
            sys.stdout.write(text)
            sys.stdout.flush()
        except OSError as e:
            raise WriteError(f"Could not write to stdout: {e}") from e
        return

    try:
        atomic_write(destination, text.encode('utf-8'))
    except OSError as e:
        raise WriteError(f"Could not write to {destination}: {e}") from e
    logger.info(f"Wrote {len(canonical):,} entries to {destination}")


# ============================================================================
# BLOCKLIST DOWNLOADER
# ============================================================================

class BlocklistDownloader:
    """Main orchestrator: fetch, parse, merge and write one run."""

    def __init__(self, config: Config, registry: SourceRegistry,
                 fetcher: Optional[Fetcher] = None):
        self.config = config
        self.registry = registry
        self.state = RunState.IDLE
        self.cancel_event = threading.Event()

        self.fetcher = fetcher or Fetcher(
            timeout=config.timeout,
            max_retries=config.max_retries,
            backoff_factor=config.backoff_factor,
            max_bytes=config.max_bytes,
            pool_size=config.threads,
            cancel_event=self.cancel_event,
        )
        self.cache = FetchCache(config.cache_dir) if config.cache_dir else None

        if config.allowlist_file:
            self.allowlist = Allowlist.load(config.allowlist_file, registry.allowlist,
                                            config.allowlist_subdomains)
        else:
            self.allowlist = Allowlist(registry.allowlist, config.allowlist_subdomains)

    def close(self) -> None:
        self.fetcher.close()

    def _transition(self, summary: RunSummary, state: RunState) -> None:
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state
        summary.state = state

    def run(self) -> RunSummary:
        """Run the pipeline once and return its summary.

        Per-source failures are recorded in the summary. The run itself fails
        only when every source failed or the output could not be written; in
        both cases the previous output file is left as it was.
        """
        start_time = time.time()
        summary = RunSummary()
        sources = self.registry.enabled()

        try:
            self._transition(summary, RunState.FETCHING)
            payloads, errors = self.fetch_all(sources, summary)

            self._transition(summary, RunState.PARSING)
            parsed = self.parse_all(sources, payloads, errors, summary)
            if not parsed:
                raise AllSourcesFailedError(f"All {len(sources)} blocklists failed")

            self._transition(summary, RunState.MERGING)
            canonical = self.merge_all(parsed, summary)

            self._transition(summary, RunState.WRITING)
            write(canonical, self.config.output_file, self.config.output_format)
            self._transition(summary, RunState.DONE)

        except (AllSourcesFailedError, WriteError) as e:
            logger.error(str(e))
            summary.error = e
            self._transition(summary, RunState.FAILED)

        finally:
            if self.cache is not None:
                self.cache.save()
            summary.elapsed = time.time() - start_time

        return summary

    def fetch_all(self, sources: Sequence[Source],
                  summary: RunSummary) -> Tuple[Dict[str, RawPayload], Dict[str, FetchError]]:
        """Download all sources using a thread pool bounded by config.threads."""
        cached: Dict[str, RawPayload] = {}
        if self.cache is not None and (self.config.incremental or self.config.use_stale_cache):
            for source in sources:
                payload = self.cache.lookup(source)
                if payload is not None:
                    cached[source.identifier] = payload

        payloads: Dict[str, RawPayload] = {}
        errors: Dict[str, FetchError] = {}
        self.cancel_event.clear()

        logger.info(f"Downloading {len(sources)} blocklists with {self.config.threads} threads...")

        executor = ThreadPoolExecutor(max_workers=self.config.threads)
        pending: Dict[Future, Source] = {}
        for source in sources:
            conditional = cached.get(source.identifier) if self.config.incremental else None
            pending[executor.submit(self.fetcher.fetch, source, conditional)] = source

        progress = tqdm(total=len(pending), desc="Downloading",
                        disable=self.config.quiet or not self.config.progress)
        timed_out = False
        try:
            for future in as_completed(list(pending), timeout=self.config.run_timeout):
                self._collect(future, pending.pop(future), cached, payloads, errors)
                progress.update(1)
        except FuturesTimeoutError:
            logger.warning(f"Run timeout of {self.config.run_timeout}s expired, "
                           f"cancelling {len(pending)} unfinished downloads")
            self.cancel_event.set()
            timed_out = True
        finally:
            progress.close()
            # running downloads are abandoned, not awaited, once the run timeout fires
            executor.shutdown(wait=not timed_out, cancel_futures=True)

        if timed_out:
            self.fetcher.close()

        for future, source in pending.items():
            if future.done() and not future.cancelled():
                self._collect(future, source, cached, payloads, errors)
            else:
                self._record_failure(
                    source, FetchTimeoutError(f"{source.identifier}: run timeout expired"),
                    cached, payloads, errors)

        return payloads, errors

    def _collect(self, future: Future, source: Source, cached: Dict[str, RawPayload],
                 payloads: Dict[str, RawPayload], errors: Dict[str, FetchError]) -> None:
        try:
            payload = future.result()
        except FetchError as e:
            self._record_failure(source, e, cached, payloads, errors)
            return
        except Exception as e:
            logger.exception(f"Unexpected error downloading {source.identifier}")
            self._record_failure(source, FetchError(f"{source.url}: {e}"), cached, payloads, errors)
            return

        payloads[source.identifier] = payload
        if payload.not_modified:
            logger.info(f"  {source.identifier}: No changes (not modified)")

    def _record_failure(self, source: Source, error: FetchError, cached: Dict[str, RawPayload],
                        payloads: Dict[str, RawPayload], errors: Dict[str, FetchError]) -> None:
        logger.error(f"Error downloading {source.identifier}: {error}")
        errors[source.identifier] = error
        stale = cached.get(source.identifier)
        if self.config.use_stale_cache and stale is not None:
            logger.info(f"  {source.identifier}: Using cached version from {stale.fetched_at.isoformat()}")
            payloads[source.identifier] = stale

    def parse_all(self, sources: Sequence[Source], payloads: Dict[str, RawPayload],
                  errors: Dict[str, FetchError], summary: RunSummary) -> List[Tuple[Source, List[Entry]]]:
        """Parse every downloaded payload in configuration order."""
        parsed = []
        for source in sources:
            payload = payloads.get(source.identifier)
            error = errors.get(source.identifier)
            if payload is None:
                summary.outcomes[source.identifier] = SourceOutcome(
                    source.identifier, SourceStatus.FAILED, error=error)
                continue

            try:
                result = parse(payload, source.format, self.config.adblock_modifiers)
            except ParseError as e:
                logger.error(f"Error parsing {source.identifier}: {e}")
                summary.outcomes[source.identifier] = SourceOutcome(
                    source.identifier, SourceStatus.FAILED, error=e)
                continue

            if error is not None:
                status = SourceStatus.STALE
            elif payload.not_modified:
                status = SourceStatus.UNMODIFIED
            else:
                status = SourceStatus.FETCHED

            if status is not SourceStatus.STALE and self.cache is not None:
                self.cache.store(source, payload, len(result.entries))

            if result.rejected:
                logger.warning(f"  {source.identifier}: rejected {result.rejected:,} malformed lines")
            logger.info(f"  {source.identifier}: {len(result.entries):,} entries ({status.value})")

            summary.outcomes[source.identifier] = SourceOutcome(
                source.identifier, status, len(result.entries), result.rejected, error)
            parsed.append((source, result.entries))

        return parsed

    def merge_all(self, parsed: List[Tuple[Source, List[Entry]]],
                  summary: RunSummary) -> CanonicalList:
        """Merge parsed sources and local entries, then apply the allowlist."""
        results = list(parsed)
        if self.registry.local_entries:
            local = Source(LOCAL_SOURCE, f"file://{os.path.abspath(self.config.config_file)}",
                           SourceFormat.PLAIN)
            results.append((local, list(self.registry.local_entries)))

        canonical = merge(results, collapse_subdomains=self.config.collapse_subdomains)

        if len(self.allowlist):
            filtered = canonical.without(self.allowlist.matches)
            summary.allowlisted = len(canonical) - len(filtered)
            if summary.allowlisted:
                logger.info(f"Filtered {summary.allowlisted:,} allowlisted entries")
            canonical = filtered

        summary.unique_entries = len(canonical)
        return canonical


# ============================================================================
# CLI
# ============================================================================

def parse_arguments(argv: Optional[Sequence[str]] = None) -> Config:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description=f"Blocklist Download Thing v{__version__}",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_FILE,
                        help="JSON configuration with sources, allowlist and local blocklist")
    parser.add_argument("-o", "--out", default=None,
                        help="Output file. If not given the blocklist is printed to stdout")
    parser.add_argument("-f", "--format", default=OutputFormat.HOSTS.value,
                        choices=[f.value for f in OutputFormat],
                        help="Format of the merged blocklist")
    parser.add_argument("--cache-dir", default=DEFAULT_CACHE_DIR,
                        help="Directory for cached blocklists and validators")
    parser.add_argument("--no-cache", action="store_true",
                        help="Do not read or write the cache")
    parser.add_argument("-w", "--allowlist", default=None,
                        help="Allowlist file (exact, *wildcard* or /regex/ per line)")
    parser.add_argument("-t", "--threads", type=int, default=DEFAULT_THREADS,
                        help=f"Download threads ({MIN_THREADS}-{MAX_THREADS})")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                        help="HTTP timeout in seconds")
    parser.add_argument("--run-timeout", type=float, default=DEFAULT_RUN_TIMEOUT,
                        help="Timeout for all downloads together, in seconds")
    parser.add_argument("--retries", type=int, default=MAX_RETRIES,
                        help="Retries for timeouts, connection errors and 5xx responses")
    parser.add_argument("--backoff", type=float, default=RETRY_BACKOFF,
                        help="Exponential backoff factor in seconds")
    parser.add_argument("--max-bytes", type=int, default=DEFAULT_MAX_BYTES,
                        help="Largest accepted blocklist download")
    parser.add_argument("--no-incremental", action="store_true",
                        help="Disable conditional requests (ETag / Last-Modified)")
    parser.add_argument("--use-stale-cache", action="store_true",
                        help="Use the cached copy of a blocklist when its download fails")
    parser.add_argument("--collapse-subdomains", action="store_true",
                        help="Drop domains whose parent domain is also listed")
    parser.add_argument("--allowlist-subdomains", action="store_true",
                        help="Allowlisted domains also allow their subdomains")
    parser.add_argument("--adblock-modifiers", action="store_true",
                        help="Accept AdBlock rules carrying $modifiers")
    parser.add_argument("--no-progress", action="store_true",
                        help="Disable the progress bar")
    parser.add_argument("--log-file", default=None,
                        help="Also write log output to this file")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Verbose logging")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Quiet mode")
    parser.add_argument("--version", action="version", version=f"blocklistdownloadthing {__version__}")

    args = parser.parse_args(argv)

    return Config(
        config_file=args.config,
        output_file=args.out,
        output_format=OutputFormat(args.format),
        cache_dir=None if args.no_cache else args.cache_dir,
        allowlist_file=args.allowlist,
        threads=args.threads,
        timeout=args.timeout,
        run_timeout=args.run_timeout,
        max_retries=args.retries,
        backoff_factor=args.backoff,
        max_bytes=args.max_bytes,
        incremental=not args.no_incremental,
        use_stale_cache=args.use_stale_cache,
        collapse_subdomains=args.collapse_subdomains,
        allowlist_subdomains=args.allowlist_subdomains,
        adblock_modifiers=args.adblock_modifiers,
        progress=not args.no_progress,
        quiet=args.quiet,
        verbose=args.verbose,
        log_file=args.log_file,
    )


def setup_logging(config: Config) -> None:
    """Configure root logging for a command line run."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))

    if config.verbose:
        level = logging.DEBUG
    elif config.quiet:
        level = logging.ERROR
    else:
        level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main function."""
    config = parse_arguments(argv)
    setup_logging(config)

    # stdout may carry the blocklist itself, so banners go to stderr
    if not config.quiet:
        print("\n" + "=" * 60, file=sys.stderr)
        print(" " * 14 + f"BLOCKLIST DOWNLOAD THING v{__version__}", file=sys.stderr)
        print("=" * 60 + "\n", file=sys.stderr)

    downloader = None
    try:
        registry = SourceRegistry.load(config.config_file)
        downloader = BlocklistDownloader(config, registry)
        summary = downloader.run()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
        return 1
    except Exception as e:
        if config.verbose:
            logger.exception(f"An error occurred: {e}")
        else:
            logger.error(f"An error occurred: {e}")
        return 1
    finally:
        if downloader is not None:
            downloader.close()

    if not config.quiet:
        print("\n" + summary.format() + "\n", file=sys.stderr)

    return 0 if summary.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
