import os
import re
import sys
import shutil
import struct
import logging
import argparse
import tempfile
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import boto3
import requests
from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError
from s3transfer.exceptions import RetriesExceededError
from azure.core.exceptions import (AzureError, ClientAuthenticationError, HttpResponseError,
                                   ResourceNotFoundError)
from azure.storage.blob import BlobServiceClient

__version__ = '1.0.0'

LOGGING_LEVEL_STRING = os.environ.get('LOGGING_LEVEL', "INFO")
match LOGGING_LEVEL_STRING:
    case "DEBUG":
        LOGGING_LEVEL = logging.DEBUG
    case "WARNING":
        LOGGING_LEVEL = logging.WARNING
    case _:
        LOGGING_LEVEL = logging.INFO

logger = logging.getLogger()
if len(logging.getLogger().handlers) > 0:
    logging.getLogger().setLevel(LOGGING_LEVEL)
else:
    logging.basicConfig(level=LOGGING_LEVEL)

DEFAULT_API_URL = 'https://api.onomondo.com'
DOCUMENTATION_URL = 'https://github.com/onomondo/onomondo-traffic-fetcher'

# Output names only carry filters when there are at most this many of them
MAX_FILTERS_IN_NAME = 3

KEY_PATTERN = re.compile(
    r'^(?P<year>\d{4})/(?P<month>\d{2})/(?P<day>\d{2})/(?P<hour>\d{2})/(?P<minute>\d{2})(?:[._-].*)?$'
)

# pcap global header: magic, v2.4, thiszone, sigfigs, snaplen, LINKTYPE_RAW
EMPTY_PCAP_HEADER = struct.pack('<IHHiIII', 0xa1b2c3d4, 2, 4, 0, 0, 262144, 101)


class TrafficFetcherError(Exception):
    """Base class for every error that ends a run"""


class ConfigurationError(TrafficFetcherError):
    pass


class MalformedKey(TrafficFetcherError, ValueError):
    pass


class BackendError(TrafficFetcherError):
    pass


class BackendUnavailable(BackendError):
    pass


class BackendAuthError(BackendError):
    pass


class ObjectNotFound(BackendError):
    pass


class ResolutionFailed(TrafficFetcherError):
    pass


class MissingCredential(TrafficFetcherError):
    pass


class MissingDependency(TrafficFetcherError):
    pass


class EngineFailure(TrafficFetcherError):
    pass


class FilterEngineFailure(EngineFailure):
    pass


class MergeEngineFailure(EngineFailure):
    pass


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime

    def is_empty(self) -> bool:
        return self.start >= self.end


@dataclass(frozen=True)
class StorageObjectRef:
    key: str
    size: int
    timestamp: datetime


@dataclass(frozen=True)
class S3Config:
    bucket: str
    region: str
    access_key_id: str
    secret_access_key: str
    endpoint_url: Optional[str] = None


@dataclass(frozen=True)
class AzureConfig:
    container: str
    connection_string: Optional[str] = None
    account_url: Optional[str] = None
    sas_token: Optional[str] = None


@dataclass(frozen=True)
class FetcherConfig:
    """Immutable settings for one run, built once from the command line and environment"""
    time_range: TimeRange
    storage: Any
    ips: tuple = ()
    iccids: tuple = ()
    simids: tuple = ()
    token: Optional[str] = None
    api_url: str = DEFAULT_API_URL
    organization_id: Optional[str] = None
    output_dir: str = '.'
    output_name: Optional[str] = None
    keep_scratch: bool = False
    scratch_base: Optional[str] = None
    dry_run: bool = False
    mergecap_binary: str = 'mergecap'
    tshark_binary: str = 'tshark'

    @property
    def has_filters(self) -> bool:
        return bool(self.ips or self.iccids or self.simids)


# ---------------------------------------------------------------------------
# Object naming scheme
# ---------------------------------------------------------------------------

def day_prefix(instant: datetime) -> str:
    """Key prefix shared by every object of the instant's UTC calendar day"""
    return instant.astimezone(timezone.utc).strftime('%Y/%m/%d/')


def parse_embedded_timestamp(key: str) -> datetime:
    """
    Extract the minute-resolution UTC timestamp encoded in an object key.

    Keys look like ``2020/12/20/05/10.pcap``. Anything after the minute field
    is a suffix token (``.pcap``, ``-part1.pcap``, ...) and is ignored, so the
    same rule applies to every storage backend.
    """
    match = KEY_PATTERN.match(key)
    if match is None:
        raise MalformedKey(f"Object key does not encode a timestamp: {key}")

    try:
        return datetime(int(match['year']), int(match['month']), int(match['day']),
                        int(match['hour']), int(match['minute']), tzinfo=timezone.utc)
    except ValueError as e:
        raise MalformedKey(f"Object key encodes an invalid timestamp: {key} ({e})")


def start_of_next_day(instant: datetime) -> datetime:
    day = instant.astimezone(timezone.utc).date() + timedelta(days=1)
    return datetime.combine(day, datetime.min.time()).replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Storage backends
# ---------------------------------------------------------------------------

class StorageBackend(ABC):
    """Capability interface shared by every object store provider"""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def list_day_objects(self, prefix: str) -> List[Dict[str, Any]]:
        """Return every object under ``prefix`` as ``{'key', 'size', 'last_modified'}`` dicts"""

    @abstractmethod
    def fetch_object(self, key: str, destination_path: str) -> None:
        """Stream one object to a local file"""

    @abstractmethod
    def describe(self, key: str) -> str:
        pass


class S3Backend(StorageBackend):
    AUTH_ERROR_CODES = {'AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch',
                        'ExpiredToken', 'InvalidToken', 'AuthorizationHeaderMalformed'}
    NOT_FOUND_CODES = {'NoSuchKey', '404', 'NotFound'}

    def __init__(self, config: S3Config, client: Any = None) -> None:
        self.bucket = config.bucket
        self.client = client or boto3.client(
            's3',
            region_name=config.region,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            endpoint_url=config.endpoint_url,
        )

    @property
    def name(self) -> str:
        return 's3'

    def describe(self, key: str) -> str:
        return f's3://{self.bucket}/{key}'

    def _translate(self, error: Exception, what: str) -> BackendError:
        if isinstance(error, ClientError):
            code = str(error.response.get('Error', {}).get('Code', ''))
            if code in self.AUTH_ERROR_CODES:
                return BackendAuthError(f"S3 rejected the credentials while {what}: {code}")
            if code in self.NOT_FOUND_CODES:
                return ObjectNotFound(f"S3 object not found while {what}")
            return BackendUnavailable(f"S3 error while {what}: {code or error}")
        return BackendUnavailable(f"S3 unavailable while {what}: {error}")

    def list_day_objects(self, prefix: str) -> List[Dict[str, Any]]:
        objects = []
        try:
            paginator = self.client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'key': obj['Key'],
                        'size': obj['Size'],
                        'last_modified': obj.get('LastModified'),
                    })
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, f"listing {self.describe(prefix)}") from e
        return objects

    def fetch_object(self, key: str, destination_path: str) -> None:
        try:
            with open(destination_path, 'wb') as f:
                self.client.download_fileobj(self.bucket, key, f)
        # s3transfer gives up on a broken body stream with its own exception types
        except (ClientError, BotoCoreError, Boto3Error, RetriesExceededError) as e:
            raise self._translate(e, f"downloading {self.describe(key)}") from e


class AzureBlobBackend(StorageBackend):

    def __init__(self, config: AzureConfig, container_client: Any = None) -> None:
        self.container = config.container
        if container_client is None:
            if config.connection_string:
                service = BlobServiceClient.from_connection_string(config.connection_string)
            else:
                service = BlobServiceClient(account_url=config.account_url, credential=config.sas_token)
            container_client = service.get_container_client(config.container)
        self.container_client = container_client

    @property
    def name(self) -> str:
        return 'azure'

    def describe(self, key: str) -> str:
        return f'azure://{self.container}/{key}'

    def _translate(self, error: Exception, what: str) -> BackendError:
        if isinstance(error, ClientAuthenticationError):
            return BackendAuthError(f"Azure rejected the credentials while {what}: {error}")
        if isinstance(error, ResourceNotFoundError):
            return ObjectNotFound(f"Azure blob not found while {what}")
        if isinstance(error, HttpResponseError) and error.status_code in (401, 403):
            return BackendAuthError(f"Azure rejected the credentials while {what}: {error}")
        return BackendUnavailable(f"Azure unavailable while {what}: {error}")

    def list_day_objects(self, prefix: str) -> List[Dict[str, Any]]:
        objects = []
        try:
            for blob in self.container_client.list_blobs(name_starts_with=prefix):
                objects.append({
                    'key': blob.name,
                    'size': blob.size,
                    'last_modified': blob.last_modified,
                })
        except ResourceNotFoundError as e:
            raise BackendUnavailable(f"Azure container {self.container} not found: {e}") from e
        except AzureError as e:
            raise self._translate(e, f"listing {self.describe(prefix)}") from e
        return objects

    def fetch_object(self, key: str, destination_path: str) -> None:
        try:
            blob_client = self.container_client.get_blob_client(key)
            with open(destination_path, 'wb') as f:
                blob_client.download_blob().readinto(f)
        except AzureError as e:
            raise self._translate(e, f"downloading {self.describe(key)}") from e


def create_backend(config: FetcherConfig) -> StorageBackend:
    if isinstance(config.storage, S3Config):
        return S3Backend(config.storage)
    if isinstance(config.storage, AzureConfig):
        return AzureBlobBackend(config.storage)
    raise ConfigurationError("No storage backend configured")


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def list_in_range(backend: StorageBackend, time_range: TimeRange) -> List[StorageObjectRef]:
    """
    List every object whose embedded timestamp lies strictly inside the range.

    One listing call is made per UTC calendar day touched by the range. An empty
    or inverted range makes no calls at all.
    """
    if time_range.is_empty():
        return []

    refs = []
    cursor = time_range.start

    while cursor < time_range.end:
        prefix = day_prefix(cursor)
        logger.debug(f"Listing {backend.describe(prefix)}")
        for obj in backend.list_day_objects(prefix):
            try:
                timestamp = parse_embedded_timestamp(obj['key'])
            except MalformedKey as e:
                logger.warning(f"⚠️  Skipping object: {e}")
                continue
            if time_range.start < timestamp < time_range.end:
                refs.append(StorageObjectRef(key=obj['key'], size=int(obj['size']), timestamp=timestamp))
        cursor = start_of_next_day(cursor)

    return refs


# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------

def format_size(num_bytes: float) -> str:
    """Format a byte count in human-readable form"""
    if num_bytes < 1024:
        return f"{int(num_bytes)} B"
    for unit in ('KB', 'MB', 'GB'):
        num_bytes /= 1024
        if num_bytes < 1024 or unit == 'GB':
            break
    return f"{num_bytes:.2f} {unit}"


@dataclass
class DownloadProgress:
    """Cumulative download progress, reported after every finished object"""
    files_total: int
    bytes_total: int
    files_done: int = 0
    bytes_done: int = 0
    key: Optional[str] = None

    def advance(self, ref: StorageObjectRef) -> None:
        self.files_done += 1
        self.bytes_done += ref.size
        self.key = ref.key

    def snapshot(self) -> 'DownloadProgress':
        return DownloadProgress(self.files_total, self.bytes_total, self.files_done, self.bytes_done, self.key)

    def __str__(self) -> str:
        return (f"{self.files_done}/{self.files_total} "
                f"({format_size(self.bytes_done)}/{format_size(self.bytes_total)})")


def local_name_for_key(key: str) -> str:
    return key.replace('/', '-')


def download_all(backend: StorageBackend, refs: Sequence[StorageObjectRef], destination: str,
                 on_progress: Optional[Callable[[DownloadProgress], None]] = None) -> List[str]:
    """Fetch objects one by one in listing order. The first failure aborts the whole download."""
    progress = DownloadProgress(files_total=len(refs), bytes_total=sum(ref.size for ref in refs))
    local_files = []

    for ref in refs:
        local_path = os.path.join(destination, local_name_for_key(ref.key))
        backend.fetch_object(ref.key, local_path)
        local_files.append(local_path)

        progress.advance(ref)
        logger.info(f"Downloading pcap files [{progress}] ({backend.describe(ref.key)})")
        if on_progress is not None:
            on_progress(progress.snapshot())

    return local_files


# ---------------------------------------------------------------------------
# Merge / filter engines
# ---------------------------------------------------------------------------

class ExternalTool:
    failure_class = EngineFailure

    def __init__(self, binary: str) -> None:
        self.binary = binary

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def _run(self, args: List[str]) -> None:
        cmd = [self.binary] + args
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise self.failure_class(f"Could not start {self.binary}: {e}")
        if result.returncode != 0:
            stderr = (result.stderr or '').strip()
            raise self.failure_class(f"{self.binary} exited with status {result.returncode}: {stderr}")


class MergeEngine(ExternalTool):
    """Chronological merge of capture files with Wireshark's mergecap"""
    failure_class = MergeEngineFailure

    def __init__(self, binary: str = 'mergecap') -> None:
        super().__init__(binary)

    def merge(self, inputs: Sequence[str], output: str) -> str:
        self._run(['-w', output] + list(inputs))
        return output

    def write_empty(self, output: str) -> str:
        with open(output, 'wb') as f:
            f.write(EMPTY_PCAP_HEADER)
        return output


class FilterEngine(ExternalTool):
    """Packet extraction by address with tshark display filters"""
    failure_class = FilterEngineFailure

    def __init__(self, binary: str = 'tshark') -> None:
        super().__init__(binary)

    def filter(self, input_path: str, output: str, addresses: Sequence[str]) -> str:
        self._run(['-r', input_path, '-w', output, '-Y', build_display_filter(addresses)])
        return output


def build_display_filter(addresses: Sequence[str]) -> str:
    return ' or '.join(f'ip.addr == {address}' for address in addresses)


def check_dependencies(config: FetcherConfig, merge_engine: MergeEngine, filter_engine: FilterEngine) -> None:
    """Fail before any network activity if the pipeline could not complete"""
    if not merge_engine.available():
        raise MissingDependency(
            f"'{merge_engine.binary}' not found in PATH. Please install the Wireshark CLI tools.")
    if config.has_filters and not filter_engine.available():
        raise MissingDependency(
            f"'{filter_engine.binary}' not found in PATH. It is required when filtering by ip, iccid or simid.")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def _sanitize(value: str) -> str:
    return re.sub(r'[^A-Za-z0-9.]', '-', value)


def build_output_name(time_range: TimeRange, filters: Sequence[str] = ()) -> str:
    start = time_range.start.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%SZ')
    end = time_range.end.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%SZ')
    name = f"traffic_{start}_{end}"
    if 0 < len(filters) <= MAX_FILTERS_IN_NAME:
        name += '_' + '-'.join(_sanitize(f) for f in filters)
    return name + '.pcap'


class ScratchArea:
    """Run-scoped temporary directory, removed on exit unless ``keep`` is set"""

    def __init__(self, base_dir: Optional[str] = None, keep: bool = False) -> None:
        self.base_dir = base_dir
        self.keep = keep
        self.path = None

    def __enter__(self) -> 'ScratchArea':
        self.path = tempfile.mkdtemp(prefix='traffic-fetcher-', dir=self.base_dir)
        os.makedirs(os.path.join(self.path, 'traffic'))
        logger.debug(f"Created scratch area {self.path}")
        return self

    @property
    def download_dir(self) -> str:
        return os.path.join(self.path, 'traffic')

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        if self.path is None or not os.path.exists(self.path):
            return
        if self.keep:
            logger.info(f"Keeping scratch area for inspection: {self.path}")
            return
        try:
            shutil.rmtree(self.path)
            logger.debug(f"🧹 Removed scratch area {self.path}")
        except OSError as e:
            logger.warning(f"⚠️  Failed to remove scratch area {self.path}: {e}")


def produce(local_files: Sequence[str], address_filter: Sequence[str], output_path: str, scratch_dir: str,
            merge_engine: MergeEngine, filter_engine: FilterEngine) -> str:
    """
    Turn downloaded capture files into the final deliverable.

    Each file is filtered on its own when addresses are given, then everything
    is merged in one go and the result is moved to ``output_path``. Only the
    final move writes outside ``scratch_dir``.
    """
    inputs = list(local_files)

    if address_filter:
        logger.info(f"Filtering {len(inputs)} pcap files on {len(address_filter)} addresses, using {filter_engine.binary}")
        filtered = []
        for index, path in enumerate(inputs, 1):
            filtered_path = os.path.join(scratch_dir, f"filtered-{index}-{os.path.basename(path)}")
            filter_engine.filter(path, filtered_path, address_filter)
            filtered.append(filtered_path)
        inputs = filtered
        logger.info("✅ Done filtering relevant packets")

    merged_path = os.path.join(scratch_dir, 'merged.pcap')
    if inputs:
        logger.info(f"Merging {len(inputs)} pcap files, using {merge_engine.binary}")
        merge_engine.merge(inputs, merged_path)
    else:
        logger.info("No pcap files matched, writing an empty capture")
        merge_engine.write_empty(merged_path)
    logger.info("✅ Done merging pcap files")

    output_dir = os.path.dirname(os.path.abspath(output_path))
    os.makedirs(output_dir, exist_ok=True)
    shutil.move(merged_path, output_path)
    return output_path


# ---------------------------------------------------------------------------
# Address resolution
# ---------------------------------------------------------------------------

class IdentifierLookup:
    """Client for the sim lookup API that maps simids and iccids to ip addresses"""

    def __init__(self, api_url: str, token: str, organization_id: Optional[str] = None) -> None:
        self.endpoint = api_url.rstrip('/')
        self.session = requests.Session()
        self.session.headers.update({'accept': 'application/json', 'authorization': token})
        if organization_id:
            self.session.headers['organization_id'] = organization_id

    def get_sim(self, identifier: str) -> Dict[str, Any]:
        try:
            r = self.session.get(f'{self.endpoint}/sims/{identifier}')
            if 400 <= r.status_code < 600:
                r.reason = r.text
            r.raise_for_status()
            return r.json()
        except requests.RequestException as e:
            raise ResolutionFailed(f"Could not look up {identifier}: {e}") from e
        except ValueError as e:
            raise ResolutionFailed(f"Lookup of {identifier} returned invalid JSON: {e}") from e


def resolve(identifier: str, lookup: IdentifierLookup) -> str:
    sim = lookup.get_sim(identifier)
    ip = sim.get('ipv4') if isinstance(sim, dict) else None
    if not ip:
        raise ResolutionFailed(f"Lookup of {identifier} returned no ipv4 address")
    return ip


def resolve_addresses(ips: Sequence[str], iccids: Sequence[str], simids: Sequence[str], token: Optional[str],
                      lookup_factory: Callable[[], IdentifierLookup]) -> List[str]:
    """Return supplied ips plus the ips of every identifier, deduplicated, first occurrence kept"""
    if (iccids or simids) and not token:
        raise MissingCredential("If you specify either --simid or --iccid, then you also need to specify --token")

    addresses = list(ips)
    if simids or iccids:
        lookup = lookup_factory()
        for kind, identifiers in (("simid", simids), ("iccid", iccids)):
            for index, identifier in enumerate(identifiers, 1):
                logger.info(f"Getting ip addresses from {kind}'s [{index}/{len(identifiers)}] ({identifier})")
                addresses.append(resolve(identifier, lookup))
            if identifiers:
                logger.info(f"✅ Done getting ip addresses from {kind}'s")

    return list(dict.fromkeys(addresses))


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def parse_datetime(value: Optional[str], name: str) -> datetime:
    if not value:
        raise ConfigurationError(f"--{name} is required, e.g. --{name}=2020-12-20T18:00:00Z")
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ConfigurationError(
            f"Invalid --{name} date: {value}. Needs to be in a format like --{name}=2020-12-20T18:00:00Z")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _build_storage_config(args: argparse.Namespace) -> Any:
    s3_values = {
        '--s3-bucket': args.s3_bucket,
        '--s3-region': args.s3_region,
        '--aws-access-key-id': args.aws_access_key_id,
        '--aws-secret-access-key': args.aws_secret_access_key,
    }
    azure_values = {
        '--azure-container': args.azure_container,
        '--azure-connection-string': args.azure_connection_string,
        '--azure-account-url': args.azure_account_url,
        '--azure-sas-token': args.azure_sas_token,
    }
    using_s3 = any(s3_values.values())
    using_azure = any(azure_values.values())

    if using_s3 and using_azure:
        raise ConfigurationError("Specify credentials for either S3 or Azure Blob Storage, not both")

    if using_s3:
        missing = [name for name, value in s3_values.items() if not value]
        if missing:
            raise ConfigurationError(
                f"If you use S3, you need to specify all these parameters: {', '.join(s3_values)} "
                f"(missing: {', '.join(missing)})")
        return S3Config(bucket=args.s3_bucket, region=args.s3_region,
                        access_key_id=args.aws_access_key_id, secret_access_key=args.aws_secret_access_key,
                        endpoint_url=args.s3_endpoint_url)

    if using_azure:
        if not args.azure_container:
            raise ConfigurationError("If you use Azure Blob Storage, you need to specify --azure-container")
        if args.azure_connection_string and (args.azure_account_url or args.azure_sas_token):
            raise ConfigurationError(
                "Specify either --azure-connection-string or --azure-account-url with --azure-sas-token, not both")
        if not args.azure_connection_string and not (args.azure_account_url and args.azure_sas_token):
            raise ConfigurationError(
                "If you use Azure Blob Storage, you need to specify --azure-connection-string, "
                "or both --azure-account-url and --azure-sas-token")
        return AzureConfig(container=args.azure_container, connection_string=args.azure_connection_string,
                           account_url=args.azure_account_url, sas_token=args.azure_sas_token)

    raise ConfigurationError(
        f"Some parameters are missing: credentials for S3 or Azure Blob Storage are required. See {DOCUMENTATION_URL}")


def build_config(args: argparse.Namespace) -> FetcherConfig:
    """Validate parsed arguments and freeze them into a FetcherConfig. Performs no I/O."""
    start = parse_datetime(args.from_time, 'from')
    end = parse_datetime(args.to_time, 'to')
    if start >= end:
        raise ConfigurationError(f"--from ({start.isoformat()}) must be before --to ({end.isoformat()})")

    ips = tuple(args.ip or ())
    iccids = tuple(args.iccid or ())
    simids = tuple(args.simid or ())
    if (iccids or simids) and not args.token:
        raise MissingCredential("If you specify either --simid or --iccid, then you also need to specify --token")

    return FetcherConfig(
        time_range=TimeRange(start, end),
        storage=_build_storage_config(args),
        ips=ips,
        iccids=iccids,
        simids=simids,
        token=args.token,
        api_url=args.api_url or DEFAULT_API_URL,
        organization_id=args.organization_id,
        output_dir=args.output_dir or '.',
        output_name=args.output,
        keep_scratch=args.keep_tmp,
        scratch_base=args.tmp_dir,
        dry_run=args.dry_run,
        mergecap_binary=args.mergecap,
        tshark_binary=args.tshark,
    )


def parse_command_line_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments, falling back to FETCHER_* environment variables"""
    env = os.environ.get
    parser = argparse.ArgumentParser(
        prog='traffic-fetcher',
        description="Fetch your organization's traffic based on ip, iccid, or simid",
        epilog=f'''
Examples:
  %(prog)s --from 2020-12-20T05:00:00Z --to 2020-12-20T07:30:00Z \\
      --s3-bucket traffic --s3-region eu-central-1 \\
      --aws-access-key-id AKIA... --aws-secret-access-key ...
  %(prog)s --from ... --to ... --iccid 8991101200003204514 --token ... --azure-container traffic \\
      --azure-connection-string "..."
  %(prog)s --from ... --to ... --ip 100.64.0.1 --dry-run ...   # List matching files only

See {DOCUMENTATION_URL} for more information.
        ''',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    range_group = parser.add_argument_group('time range')
    range_group.add_argument('--from', dest='from_time', metavar='TIMESTAMP', default=env('FETCHER_FROM'),
                             help='Start of the time range (exclusive), e.g. 2020-12-20T18:00:00Z')
    range_group.add_argument('--to', dest='to_time', metavar='TIMESTAMP', default=env('FETCHER_TO'),
                             help='End of the time range (exclusive)')

    filter_group = parser.add_argument_group('filter options')
    filter_group.add_argument('--ip', action='append', metavar='ADDRESS', help='Keep traffic to/from this ip (repeatable)')
    filter_group.add_argument('--iccid', action='append', metavar='ICCID', help='Keep traffic of this iccid (repeatable)')
    filter_group.add_argument('--simid', action='append', metavar='SIMID', help='Keep traffic of this simid (repeatable)')

    api_group = parser.add_argument_group('api options')
    api_group.add_argument('--token', default=env('FETCHER_TOKEN'), help='API token, required with --iccid/--simid')
    api_group.add_argument('--api', dest='api_url', default=env('FETCHER_API_URL', DEFAULT_API_URL),
                           help='Base url of the sim lookup API (default: %(default)s)')
    api_group.add_argument('--organizationid', dest='organization_id', default=env('FETCHER_ORGANIZATION_ID'),
                           help='Organization to scope the sim lookups to')

    s3_group = parser.add_argument_group('s3 options')
    s3_group.add_argument('--s3-bucket', default=env('FETCHER_S3_BUCKET'))
    s3_group.add_argument('--s3-region', default=env('FETCHER_S3_REGION'))
    s3_group.add_argument('--s3-endpoint-url', default=env('FETCHER_S3_ENDPOINT_URL'),
                          help='Endpoint of an S3-compatible store')
    s3_group.add_argument('--aws-access-key-id', default=env('FETCHER_AWS_ACCESS_KEY_ID'))
    s3_group.add_argument('--aws-secret-access-key', default=env('FETCHER_AWS_SECRET_ACCESS_KEY'))

    azure_group = parser.add_argument_group('azure options')
    azure_group.add_argument('--azure-container', default=env('FETCHER_AZURE_CONTAINER'))
    azure_group.add_argument('--azure-connection-string', default=env('FETCHER_AZURE_CONNECTION_STRING'))
    azure_group.add_argument('--azure-account-url', default=env('FETCHER_AZURE_ACCOUNT_URL'))
    azure_group.add_argument('--azure-sas-token', default=env('FETCHER_AZURE_SAS_TOKEN'))

    output_group = parser.add_argument_group('output options')
    output_group.add_argument('--output-dir', default='.', help='Directory for the final pcap (default: %(default)s)')
    output_group.add_argument('--output', help='File name of the final pcap (default: derived from range and filters)')
    output_group.add_argument('--tmp-dir', help='Where to create the scratch area (default: system temp dir)')
    output_group.add_argument('--keep-tmp', action='store_true', help='Keep the scratch area after the run')
    output_group.add_argument('--dry-run', action='store_true',
                              help='Only list the matching pcap files, do not download them')

    tool_group = parser.add_argument_group('tool options')
    tool_group.add_argument('--mergecap', default='mergecap', help='mergecap binary to merge with (default: %(default)s)')
    tool_group.add_argument('--tshark', default='tshark', help='tshark binary to filter with (default: %(default)s)')

    logging_group = parser.add_argument_group('logging options')
    logging_group.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')
    logging_group.add_argument('--quiet', '-q', action='store_true', help='Reduce output to essential messages only')

    args = parser.parse_args(argv)

    if args.verbose and args.quiet:
        parser.error("Cannot use both --verbose and --quiet")

    return args


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

def run(config: FetcherConfig, backend_factory: Callable[[FetcherConfig], StorageBackend] = create_backend,
        lookup_factory: Optional[Callable[[], IdentifierLookup]] = None,
        merge_engine: Optional[MergeEngine] = None, filter_engine: Optional[FilterEngine] = None,
        on_progress: Optional[Callable[[DownloadProgress], None]] = None) -> Optional[str]:
    """Fetch, filter and merge the traffic described by ``config``. Returns the final file path."""
    merge_engine = merge_engine or MergeEngine(config.mergecap_binary)
    filter_engine = filter_engine or FilterEngine(config.tshark_binary)
    if lookup_factory is None:
        def lookup_factory():
            return IdentifierLookup(config.api_url, config.token, config.organization_id)

    if not config.dry_run:
        check_dependencies(config, merge_engine, filter_engine)

    addresses = resolve_addresses(config.ips, config.iccids, config.simids, config.token, lookup_factory)

    backend = backend_factory(config)
    logger.info(f"Getting list of pcap files from {backend.name}")
    refs = list_in_range(backend, config.time_range)
    total_size = sum(ref.size for ref in refs)
    logger.info(f"✅ Done getting list of pcap files: {len(refs)} files, {format_size(total_size)}")

    if config.dry_run:
        for ref in refs:
            logger.info(f"  {backend.describe(ref.key)} ({format_size(ref.size)})")
        logger.info("🔍 DRY RUN: Nothing downloaded")
        return None

    name_filters = list(dict.fromkeys(list(config.iccids) + list(config.simids) + list(config.ips)))
    output_name = config.output_name or build_output_name(config.time_range, name_filters)
    output_path = os.path.join(config.output_dir, output_name)

    with ScratchArea(config.scratch_base, keep=config.keep_scratch) as scratch:
        local_files = download_all(backend, refs, scratch.download_dir, on_progress)
        logger.info(f"✅ Done downloading pcap files from {backend.name}")
        return produce(local_files, addresses, output_path, scratch.path, merge_engine, filter_engine)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_command_line_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger().setLevel(logging.WARNING)

    try:
        config = build_config(args)
        output_path = run(config)
    except TrafficFetcherError as e:
        logger.error(str(e))
        sys.exit(1)
    except OSError as e:
        logger.error(f"File system error: {e}")
        sys.exit(1)

    if output_path:
        print(f"\nComplete. File is stored at {output_path}")


if __name__ == "__main__":
    main()
