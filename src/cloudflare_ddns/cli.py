#!/usr/bin/env python3
"""cloudflare-ddns - Dynamic DNS for Cloudflare

Periodically discovers the host's public IP address and reconciles it with a
single Cloudflare DNS record, updating the record only when its content has
drifted. Resolved zone/record identifiers are kept in a process-local cache so
steady-state ticks skip the lookup calls, and an optional HTTP endpoint
reports the last cached record state without querying Cloudflare.

Configuration file (optional, YAML):

    DDNS_CONFIG_PATH       Path to YAML config file (default: /config/ddns.yaml)
                           Example config file:
                             token: "cf-api-token"
                             domain: "example.com"
                             record_name: "home.example.com"
                             record_type: "A"
                             ipapi: "https://api.ipify.org"
                             cache: "ddns.home"
                             cache_zones: ["ddns"]
                             cache_write_key: "zone"

    Keys missing from the file fall back to the environment variables below.

Environment variables:

    Record settings:
        CF_API_TOKEN           Cloudflare API token (bearer credential)
        DDNS_DOMAIN            Zone name, e.g. "example.com"
        DDNS_RECORD_NAME       Record name as stored by Cloudflare
        DDNS_RECORD_TYPE       Record type (default: A)
        DDNS_IPAPI             URL returning the public IP as plain text
        CF_API_URL             Cloudflare API base URL
                               (default: https://api.cloudflare.com/client/v4)
        HTTP_TIMEOUT_SECONDS   Timeout for every HTTP call (default: 10)

    Cache:
        DDNS_CACHE             Optional cache key "<namespace>.<key>". The key is
                               the last dotted segment, so "example.com.<zone id>"
                               addresses key "<zone id>" in region "example.com".
        DDNS_CACHE_ZONES       Comma-separated list of cache regions registered
                               at startup. The DDNS_CACHE namespace must be one.
        DDNS_CACHE_WRITE_KEY   Where a refreshed entry is written:
                                 zone   - region <zone name>, key <zone id> (default)
                                 lookup - the DDNS_CACHE namespace and key

    Runtime:
        SYNC_MODE              "once" or "watch" (polling loop) (default: watch)
        POLL_INTERVAL_SECONDS  Tick interval in watch mode (default: 300)
        STATUS_LISTEN          "host:port" for the status endpoint (disabled if unset)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Dict, Generic, Iterable, List, Mapping, Optional, Tuple, TypeVar, Union

import requests
import yaml

# =============================================================================
# File Watching Utilities
# =============================================================================


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of config file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except (OSError, IOError):
        return 0.0


# =============================================================================
# Configuration
# =============================================================================

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"
CREATED_RECORD_COMMENT = "Generated by cloudflare-ddns"

# Runtime configuration
CONFIG_PATH = os.getenv("DDNS_CONFIG_PATH", "/config/ddns.yaml")
SYNC_MODE = os.getenv("SYNC_MODE", "watch")
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "300"))
STATUS_LISTEN = os.getenv("STATUS_LISTEN", "").strip()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Enums
# =============================================================================


class RecordType(Enum):
    """DNS record types Cloudflare can hold for a managed name."""

    A = "A"
    AAAA = "AAAA"
    CNAME = "CNAME"
    MX = "MX"
    NS = "NS"
    SRV = "SRV"
    TXT = "TXT"

    @classmethod
    def parse(cls, value: Union[str, "RecordType"]) -> "RecordType":
        if isinstance(value, RecordType):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unsupported record type: '{value}'") from None


class ErrorKind(Enum):
    """Failure kinds reported by the provider client, engine and reporter."""

    NOT_FOUND = "not_found"
    UPDATE_FAILED = "update_failed"
    CREATE_FAILED = "create_failed"
    DELETE_FAILED = "delete_failed"
    CONFIG_ERROR = "config_error"
    CACHE_MISS = "cache_miss"
    NO_CACHE_CONFIGURED = "no_cache_configured"


class CacheWriteKey(Enum):
    """Key a refreshed cache entry is written under.

    ZONE:   (zone.name, zone.id), independent of the configured lookup key.
    LOOKUP: the configured (namespace, key) the engine reads from.
    """

    ZONE = "zone"
    LOOKUP = "lookup"


# =============================================================================
# Result Type
# =============================================================================

T = TypeVar("T")


class DDNSError(Exception):
    """Raised when an ``Err`` result is unwrapped."""

    def __init__(self, kind: ErrorKind, reason: str):
        super().__init__(f"{kind.value}: {reason}")
        self.kind = kind
        self.reason = reason


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: bool = field(default=True, init=False)

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    reason: str
    ok: bool = field(default=False, init=False)

    def unwrap(self) -> Any:
        raise DDNSError(self.kind, self.reason)


Result = Union[Ok[T], Err]


def decode_envelope(
    payload: Any, failure_kind: ErrorKind, *, require_result: bool = True
) -> Result[Any]:
    """Decode a Cloudflare ``{success, result}`` response envelope.

    The envelope is accepted only when ``success`` is literally ``True`` and,
    if ``require_result`` is set, ``result`` is present and not null. Anything
    else is reported as ``Err(failure_kind, ...)`` with the provider's error
    messages when it sent any.
    """
    if not isinstance(payload, dict):
        return Err(failure_kind, f"response body is not a JSON object ({type(payload).__name__})")

    success = payload.get("success")
    if not isinstance(success, bool):
        return Err(failure_kind, "response envelope has no boolean 'success' flag")

    if not success:
        return Err(failure_kind, _format_provider_errors(payload.get("errors")))

    if require_result and payload.get("result") is None:
        return Err(failure_kind, "response envelope has no 'result'")

    return Ok(payload.get("result"))


def _format_provider_errors(errors: Any) -> str:
    messages: List[str] = []
    if isinstance(errors, list):
        for error in errors:
            if isinstance(error, dict) and error.get("message"):
                code = error.get("code")
                prefix = f"[{code}] " if code is not None else ""
                messages.append(f"{prefix}{error['message']}")
    return "; ".join(messages) if messages else "provider reported failure"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Zone:
    """A Cloudflare zone (top-level domain container)."""

    id: str
    name: str
    status: str = "active"
    paused: bool = False
    type: str = "full"
    plan: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    FIELDS = ("id", "name", "status", "paused", "type", "plan")

    @classmethod
    def from_api(cls, data: Any) -> "Zone":
        if not isinstance(data, dict):
            raise ValueError(f"zone must be an object, got {type(data).__name__}")
        zone_id = data.get("id")
        name = data.get("name")
        if not isinstance(zone_id, str) or not zone_id:
            raise ValueError("zone has no 'id'")
        if not isinstance(name, str) or not name:
            raise ValueError("zone has no 'name'")
        plan = data.get("plan")
        return cls(
            id=zone_id,
            name=name,
            status=str(data.get("status") or "active"),
            paused=bool(data.get("paused", False)),
            type=str(data.get("type") or "full"),
            plan=plan if isinstance(plan, dict) else {},
            extra={k: v for k, v in data.items() if k not in cls.FIELDS},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "name": self.name,
                "status": self.status,
                "paused": self.paused,
                "type": self.type,
                "plan": self.plan,
            }
        )
        return data


@dataclass(frozen=True)
class DomainRecord:
    """A single DNS record as returned by Cloudflare.

    Fields the client does not model are kept in ``extra`` so a full record
    replace sends back everything the provider returned.
    """

    id: str
    zone_id: str
    zone_name: str
    name: str
    type: RecordType
    content: str
    ttl: int = 1
    proxied: bool = False
    proxiable: bool = False
    locked: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)
    comment: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    created_on: str = ""
    modified_on: str = ""
    extra: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    FIELDS = (
        "id",
        "zone_id",
        "zone_name",
        "name",
        "type",
        "content",
        "ttl",
        "proxied",
        "proxiable",
        "locked",
        "meta",
        "comment",
        "tags",
        "created_on",
        "modified_on",
    )

    @classmethod
    def from_api(cls, data: Any) -> "DomainRecord":
        if not isinstance(data, dict):
            raise ValueError(f"record must be an object, got {type(data).__name__}")
        for key in ("id", "name", "content"):
            if not isinstance(data.get(key), str):
                raise ValueError(f"record has no '{key}'")
        meta = data.get("meta")
        tags = data.get("tags")
        ttl = data.get("ttl", 1)
        return cls(
            id=data["id"],
            zone_id=str(data.get("zone_id") or ""),
            zone_name=str(data.get("zone_name") or ""),
            name=data["name"],
            type=RecordType.parse(data.get("type") or ""),
            content=data["content"],
            ttl=ttl if isinstance(ttl, int) else 1,
            proxied=bool(data.get("proxied", False)),
            proxiable=bool(data.get("proxiable", False)),
            locked=bool(data.get("locked", False)),
            meta=meta if isinstance(meta, dict) else {},
            comment=data.get("comment"),
            tags=list(tags) if isinstance(tags, list) else [],
            created_on=str(data.get("created_on") or ""),
            modified_on=str(data.get("modified_on") or ""),
            extra={k: v for k, v in data.items() if k not in cls.FIELDS},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "zone_id": self.zone_id,
                "zone_name": self.zone_name,
                "name": self.name,
                "type": self.type.value,
                "content": self.content,
                "ttl": self.ttl,
                "proxied": self.proxied,
                "proxiable": self.proxiable,
                "locked": self.locked,
                "meta": self.meta,
                "comment": self.comment,
                "tags": self.tags,
                "created_on": self.created_on,
                "modified_on": self.modified_on,
            }
        )
        return data


@dataclass(frozen=True)
class CacheEntry:
    """The resolved zone/record pair stored in the cache."""

    zone: Zone
    record: DomainRecord

    def to_json(self) -> str:
        return json.dumps({"zone": self.zone.to_dict(), "record": self.record.to_dict()})

    @classmethod
    def from_json(cls, text: str) -> "CacheEntry":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("cache entry must be a JSON object")
        return cls(zone=Zone.from_api(data.get("zone")), record=DomainRecord.from_api(data.get("record")))


@dataclass(frozen=True)
class CacheKeySpec:
    """Where resolved state is cached: region ``namespace``, key ``key``."""

    namespace: str
    key: str

    @classmethod
    def parse(cls, value: str) -> Optional["CacheKeySpec"]:
        """Parse ``"<namespace>.<key>"``; empty input means no cache.

        The key is the final dotted segment, everything before it is the
        namespace.
        """
        value = (value or "").strip()
        if not value:
            return None
        namespace, sep, key = value.rpartition(".")
        if not sep or not namespace or not key:
            raise ValueError(f"Cache key must look like '<namespace>.<key>', got '{value}'")
        return cls(namespace=namespace, key=key)

    def __str__(self) -> str:
        return f"{self.namespace}.{self.key}"


@dataclass(frozen=True)
class Settings:
    """Record and transport settings for one managed DNS record."""

    token: str = ""
    domain: str = ""
    record_name: str = ""
    record_type: str = "A"
    ipapi: str = ""
    cache: str = ""
    cache_zones: Tuple[str, ...] = ()
    cache_write_key: str = CacheWriteKey.ZONE.value
    api_url: str = CLOUDFLARE_API_URL
    timeout: float = 10.0

    REQUIRED = (
        ("token", "CF_API_TOKEN"),
        ("domain", "DDNS_DOMAIN"),
        ("record_name", "DDNS_RECORD_NAME"),
        ("record_type", "DDNS_RECORD_TYPE"),
        ("ipapi", "DDNS_IPAPI"),
    )

    @property
    def cache_spec(self) -> Optional[CacheKeySpec]:
        return CacheKeySpec.parse(self.cache)

    def missing_required(self) -> List[str]:
        return [env for attr, env in self.REQUIRED if not getattr(self, attr)]


@dataclass(frozen=True)
class TickOutcome:
    """What a single reconcile tick observed and changed."""

    zone: Zone
    record: DomainRecord
    current_ip: str
    previous_content: str
    updated: bool
    resolved_from_cache: bool
    cache_written: bool = False
    cache_key: Optional[CacheKeySpec] = None


# =============================================================================
# Provider Client
# =============================================================================


class CloudflareClient:
    """Typed wrapper over the Cloudflare DNS record API.

    Every operation returns ``Ok`` or ``Err``. Transport failures
    (``requests.exceptions.RequestException``) are not caught here.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = CLOUDFLARE_API_URL,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            }
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def test_connection(self) -> bool:
        try:
            response = self._request("GET", "user/tokens/verify")
            response.raise_for_status()
            logger.info(f"{self.name} token verified")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def find_zone(self, name: str) -> Result[Zone]:
        response = self._request("GET", "zones", params={"name": name})
        envelope = self._decode(response, ErrorKind.NOT_FOUND)
        if not envelope.ok:
            return Err(ErrorKind.NOT_FOUND, f"Failed to find zone '{name}': {envelope.reason}")

        zones = envelope.value
        if not isinstance(zones, list) or not zones:
            return Err(ErrorKind.NOT_FOUND, f"Failed to find zone '{name}'")

        try:
            zone = Zone.from_api(zones[0])
        except ValueError as e:
            return Err(ErrorKind.NOT_FOUND, f"Malformed zone returned for '{name}': {e}")

        logger.debug(f"Resolved zone {zone.name} -> {zone.id}")
        return Ok(zone)

    def find_record(
        self, zone: Zone, name: str, record_type: Union[str, RecordType]
    ) -> Result[DomainRecord]:
        try:
            wanted = RecordType.parse(record_type)
        except ValueError as e:
            return Err(ErrorKind.NOT_FOUND, str(e))

        response = self._request("GET", f"zones/{zone.id}/dns_records", params={"name": name})
        envelope = self._decode(response, ErrorKind.NOT_FOUND)
        if not envelope.ok:
            return Err(ErrorKind.NOT_FOUND, f"Failed to find dns record '{name}': {envelope.reason}")

        records = envelope.value
        if not isinstance(records, list) or not records:
            return Err(ErrorKind.NOT_FOUND, f"Failed to find dns record '{name}'")

        # Name matches are filtered client-side; first entry of the wanted type wins.
        for item in records:
            if isinstance(item, dict) and item.get("type") == wanted.value:
                try:
                    record = DomainRecord.from_api(item)
                except ValueError as e:
                    return Err(ErrorKind.NOT_FOUND, f"Malformed dns record '{name}': {e}")
                logger.debug(f"Resolved record {record.name} ({wanted.value}) -> {record.id}")
                return Ok(record)

        return Err(
            ErrorKind.NOT_FOUND,
            f"Failed to find dns record '{name}' of type {wanted.value}",
        )

    def update_record(self, record: DomainRecord, value: str) -> Result[DomainRecord]:
        desired = replace(record, content=value)
        response = self._request(
            "PUT",
            f"zones/{record.zone_id}/dns_records/{record.id}",
            json=desired.to_dict(),
        )
        envelope = self._decode(response, ErrorKind.UPDATE_FAILED)
        if not envelope.ok:
            return Err(
                ErrorKind.UPDATE_FAILED,
                f"Failed to update dns record '{record.name}': {envelope.reason}",
            )

        try:
            updated = DomainRecord.from_api(envelope.value)
        except ValueError as e:
            return Err(ErrorKind.UPDATE_FAILED, f"Unexpected update result for '{record.name}': {e}")

        logger.info(
            f"Updated DNS record {updated.name} ({updated.type.value}): "
            f"{record.content} -> {updated.content}"
        )
        return Ok(updated)

    def create_record(
        self,
        zone: Zone,
        name: str,
        record_type: Union[str, RecordType],
        value: str,
        ttl: int = 1,
    ) -> Result[DomainRecord]:
        try:
            rr_type = RecordType.parse(record_type)
        except ValueError as e:
            return Err(ErrorKind.CREATE_FAILED, str(e))
        if rr_type not in (RecordType.A, RecordType.AAAA):
            return Err(ErrorKind.CREATE_FAILED, f"Only A and AAAA records can be created, got {rr_type.value}")

        data = {
            "type": rr_type.value,
            "name": name,
            "content": value,
            "ttl": ttl,
            "proxied": False,
            "comment": CREATED_RECORD_COMMENT,
        }
        response = self._request("POST", f"zones/{zone.id}/dns_records", json=data)
        envelope = self._decode(response, ErrorKind.CREATE_FAILED)
        if not envelope.ok:
            return Err(ErrorKind.CREATE_FAILED, f"Failed to create dns record '{name}': {envelope.reason}")

        try:
            created = DomainRecord.from_api(envelope.value)
        except ValueError as e:
            return Err(ErrorKind.CREATE_FAILED, f"Unexpected create result for '{name}': {e}")

        logger.info(f"Created DNS record {created.name} ({created.type.value}) -> {created.content}")
        return Ok(created)

    def delete_record(self, record: DomainRecord) -> Result[None]:
        response = self._request("DELETE", f"zones/{record.zone_id}/dns_records/{record.id}")
        envelope = self._decode(response, ErrorKind.DELETE_FAILED, require_result=False)
        if not envelope.ok:
            return Err(
                ErrorKind.DELETE_FAILED,
                f"Failed to delete dns record '{record.name}': {envelope.reason}",
            )

        logger.info(f"Deleted DNS record {record.name} ({record.type.value})")
        return Ok(None)

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> requests.Response:
        url = f"{self._base_url}/{endpoint}"
        logger.debug(f"{method} {url}")
        return self._session.request(method, url, timeout=self._timeout, **kwargs)

    def _decode(
        self, response: requests.Response, failure_kind: ErrorKind, *, require_result: bool = True
    ) -> Result[Any]:
        try:
            payload = response.json()
        except ValueError as e:
            return Err(failure_kind, f"invalid JSON response (HTTP {response.status_code}): {e}")
        return decode_envelope(payload, failure_kind, require_result=require_result)


# =============================================================================
# Record Cache
# =============================================================================


class CacheRegion:
    """A named string-to-string mapping; single-key reads and writes are atomic."""

    def __init__(self, name: str):
        self.name = name
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def get(self, key: str) -> str:
        with self._lock:
            return self._data[key]

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


class SharedCache:
    """Process-wide cache made of pre-registered regions.

    Created once at startup and handed to both the reconcile engine and the
    status reporter. Entries never expire; they live until overwritten or the
    process exits.
    """

    def __init__(self, regions: Iterable[str] = ()):
        self._regions: Dict[str, CacheRegion] = {}
        for name in regions:
            self.register(name)

    def register(self, name: str) -> CacheRegion:
        region = self._regions.get(name)
        if region is None:
            region = CacheRegion(name)
            self._regions[name] = region
            logger.debug(f"Registered cache region '{name}'")
        return region

    def has_region(self, namespace: str) -> bool:
        return namespace in self._regions

    def region(self, namespace: str) -> Optional[CacheRegion]:
        return self._regions.get(namespace)

    def has(self, namespace: str, key: str) -> bool:
        region = self._regions.get(namespace)
        return region is not None and region.has(key)

    def get(self, namespace: str, key: str) -> CacheEntry:
        """Return the entry under (namespace, key); raises KeyError if absent."""
        return CacheEntry.from_json(self._regions[namespace].get(key))

    def set(self, namespace: str, key: str, entry: CacheEntry) -> None:
        self._regions[namespace].set(key, entry.to_json())


# =============================================================================
# Reconcile Engine
# =============================================================================


class ReconcileEngine:
    """Runs one reconciliation tick per call to ``run_tick``.

    A tick resolves the zone and record (cache first when a cache key is
    configured), fetches the current public IP, updates the record only if its
    content differs, and refreshes the cache entry when needed.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        client: CloudflareClient,
        cache: SharedCache,
        ip_session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.client = client
        self.cache = cache
        self._ip_session = ip_session or requests.Session()

    def fetch_current_ip(self) -> str:
        response = self._ip_session.get(self.settings.ipapi, timeout=self.settings.timeout)
        response.raise_for_status()
        return response.text.strip()

    def run_tick(self) -> Result[TickOutcome]:
        missing = self.settings.missing_required()
        if missing:
            return Err(ErrorKind.CONFIG_ERROR, f"Missing required parameters: {', '.join(missing)}")

        try:
            spec = self.settings.cache_spec
        except ValueError as e:
            return Err(ErrorKind.CONFIG_ERROR, str(e))

        if spec is not None and not self.cache.has_region(spec.namespace):
            return Err(ErrorKind.CONFIG_ERROR, f"cacheZone not found: '{spec.namespace}'")

        resolved = self._resolve_identity(spec)
        if not resolved.ok:
            return resolved
        zone, record, from_cache = resolved.value

        current_ip = self.fetch_current_ip()
        previous_content = record.content

        updated = False
        if record.content != current_ip:
            logger.info(f"IP changed for {record.name}: {record.content} -> {current_ip}")
            result = self.client.update_record(record, current_ip)
            if not result.ok:
                return result
            record = result.value
            updated = True
        else:
            logger.info(f"Record {record.name} ({record.type.value}) up to date: {current_ip}")

        outcome = TickOutcome(
            zone=zone,
            record=record,
            current_ip=current_ip,
            previous_content=previous_content,
            updated=updated,
            resolved_from_cache=from_cache,
        )
        if spec is None:
            return Ok(outcome)

        write_key = self._cache_write_key(spec, zone)
        if not self.cache.has_region(write_key.namespace):
            logger.warning(
                f"Cache region '{write_key.namespace}' is not registered; "
                f"not caching {record.name}"
            )
            return Ok(outcome)

        if not self.cache.has(write_key.namespace, write_key.key) or previous_content != current_ip:
            self.cache.set(write_key.namespace, write_key.key, CacheEntry(zone=zone, record=record))
            logger.debug(f"Cached {record.name} under '{write_key}'")
            outcome = replace(outcome, cache_written=True, cache_key=write_key)

        return Ok(outcome)

    def run_tick_safely(self) -> Optional[TickOutcome]:
        """Run a tick, logging instead of raising on any failure."""
        try:
            result = self.run_tick()
        except Exception as e:
            logger.error(f"Tick exited unexpectedly: {e}", exc_info=True)
            return None

        if not result.ok:
            logger.error(f"Tick failed ({result.kind.value}): {result.reason}")
            return None
        return result.value

    def _resolve_identity(
        self, spec: Optional[CacheKeySpec]
    ) -> Result[Tuple[Zone, DomainRecord, bool]]:
        if spec is not None and self.cache.has(spec.namespace, spec.key):
            entry = self.cache.get(spec.namespace, spec.key)
            logger.debug(f"Using cached zone/record from '{spec}'")
            return Ok((entry.zone, entry.record, True))

        zone_result = self.client.find_zone(self.settings.domain)
        if not zone_result.ok:
            return zone_result
        zone = zone_result.value

        record_result = self.client.find_record(
            zone, self.settings.record_name, self.settings.record_type
        )
        if not record_result.ok:
            return record_result
        return Ok((zone, record_result.value, False))

    def _cache_write_key(self, spec: CacheKeySpec, zone: Zone) -> CacheKeySpec:
        if self.settings.cache_write_key == CacheWriteKey.LOOKUP.value:
            return spec
        return CacheKeySpec(namespace=zone.name, key=zone.id)


# =============================================================================
# Status Reporter
# =============================================================================


def render_status(entry: CacheEntry) -> str:
    record, zone = entry.record, entry.zone
    return (
        "Here are the details of your domain record\n"
        f"Domain: {record.name}.{zone.name} ({record.type.value})\n"
        f"Last updated: {record.modified_on}\n"
        f"Content: {record.content}"
    )


class StatusReporter:
    """Read-only view of the cached record state. Never calls Cloudflare."""

    NO_CACHE_MESSAGE = "No cache found"
    CACHE_MISS_MESSAGE = "Failed to find cache"

    def __init__(self, *, cache: SharedCache, cache_spec: str):
        self.cache = cache
        self.cache_spec = cache_spec

    def report(self) -> Result[str]:
        if not (self.cache_spec or "").strip():
            return Err(ErrorKind.NO_CACHE_CONFIGURED, self.NO_CACHE_MESSAGE)

        try:
            spec = CacheKeySpec.parse(self.cache_spec)
        except ValueError:
            return Err(ErrorKind.CACHE_MISS, self.CACHE_MISS_MESSAGE)

        if spec is None or not self.cache.has(spec.namespace, spec.key):
            return Err(ErrorKind.CACHE_MISS, self.CACHE_MISS_MESSAGE)

        return Ok(render_status(self.cache.get(spec.namespace, spec.key)))

    def http_response(self) -> Tuple[int, str]:
        result = self.report()
        if result.ok:
            return 200, result.value
        return 500, result.reason


# =============================================================================
# Status HTTP Server
# =============================================================================


class StatusRequestHandler(BaseHTTPRequestHandler):
    """Serves ``GET /`` and ``GET /status`` from the server's reporter."""

    server: "StatusServer"

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        if path not in ("/", "/status"):
            self._send(404, "Not found")
            return
        status, body = self.server.reporter.http_response()
        self._send(status, body)

    def _send(self, status: int, body: str) -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug(f"Status request from {self.address_string()}: {format % args}")


class StatusServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: Tuple[str, int], reporter: StatusReporter):
        super().__init__(address, StatusRequestHandler)
        self.reporter = reporter


def parse_listen(value: str) -> Tuple[str, int]:
    """Parse ``"host:port"`` (host optional) into an address tuple."""
    host, sep, port = value.strip().rpartition(":")
    if not sep:
        host, port = "", value.strip()
    try:
        return host or "0.0.0.0", int(port)
    except ValueError:
        raise ValueError(f"Invalid listen address: '{value}'") from None


def start_status_server(listen: str, reporter: StatusReporter) -> StatusServer:
    server = StatusServer(parse_listen(listen), reporter)
    thread = threading.Thread(target=server.serve_forever, name="status-server", daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    logger.info(f"Status endpoint listening on http://{host}:{port}/status")
    return server


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        items = [str(v).strip() for v in value]
    else:
        items = [v.strip() for v in str(value).split(",")]
    return tuple(item for item in items if item)


def load_settings(config_path: str, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the YAML config file, falling back to the environment."""
    environ = os.environ if environ is None else environ

    data: Dict[str, Any] = {}
    if config_path and Path(config_path).is_file():
        with open(config_path, "r") as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")
        data = loaded or {}
        logger.debug(f"Loaded settings from {config_path}")

    def pick(key: str, env: str, default: str = "") -> str:
        value = data.get(key)
        if value is None or str(value).strip() == "":
            value = environ.get(env, default)
        return str(value).strip()

    zones = data.get("cache_zones")
    if zones is None or zones == "":
        zones = environ.get("DDNS_CACHE_ZONES", "")

    timeout = pick("timeout", "HTTP_TIMEOUT_SECONDS", "10")
    try:
        timeout_seconds = float(timeout)
    except ValueError:
        raise ValueError(f"Invalid timeout: '{timeout}'") from None

    return Settings(
        token=pick("token", "CF_API_TOKEN"),
        domain=pick("domain", "DDNS_DOMAIN"),
        record_name=pick("record_name", "DDNS_RECORD_NAME"),
        record_type=pick("record_type", "DDNS_RECORD_TYPE", "A").upper(),
        ipapi=pick("ipapi", "DDNS_IPAPI"),
        cache=pick("cache", "DDNS_CACHE"),
        cache_zones=_parse_list(zones),
        cache_write_key=pick("cache_write_key", "DDNS_CACHE_WRITE_KEY", "zone").lower(),
        api_url=pick("api_url", "CF_API_URL", CLOUDFLARE_API_URL),
        timeout=timeout_seconds,
    )


def validate_settings(settings: Settings) -> List[str]:
    """Return a list of configuration errors (empty when valid)."""
    errors = [f"{env} is required" for env in settings.missing_required()]

    if settings.record_type:
        try:
            RecordType.parse(settings.record_type)
        except ValueError as e:
            errors.append(str(e))

    try:
        spec = settings.cache_spec
    except ValueError as e:
        errors.append(str(e))
        spec = None

    if spec is not None and spec.namespace not in settings.cache_zones:
        errors.append(
            f"Cache namespace '{spec.namespace}' is not a registered cache zone "
            f"(registered: {', '.join(settings.cache_zones) or 'none'})"
        )

    if settings.cache_write_key not in {k.value for k in CacheWriteKey}:
        errors.append(
            f"Invalid DDNS_CACHE_WRITE_KEY: '{settings.cache_write_key}'. Use 'zone' or 'lookup'"
        )

    if settings.timeout <= 0:
        errors.append("HTTP_TIMEOUT_SECONDS must be positive")

    return errors


def create_client(settings: Settings) -> CloudflareClient:
    return CloudflareClient(settings.token, base_url=settings.api_url, timeout=settings.timeout)


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    logger.info(f"cloudflare-ddns: mode={SYNC_MODE}")

    try:
        settings = load_settings(CONFIG_PATH)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)

    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    cache = SharedCache(settings.cache_zones)
    client = create_client(settings)

    logger.info(f"Record: {settings.record_name} ({settings.record_type}) in {settings.domain}")
    logger.info(f"IP source: {settings.ipapi}")
    if settings.cache:
        logger.info(f"Cache: {settings.cache} (write key: {settings.cache_write_key})")

    if not client.test_connection():
        logger.error(f"Cannot connect to {client.name}. Exiting.")
        sys.exit(1)

    engine = ReconcileEngine(settings=settings, client=client, cache=cache)

    server: Optional[StatusServer] = None
    if STATUS_LISTEN:
        server = start_status_server(
            STATUS_LISTEN, StatusReporter(cache=cache, cache_spec=settings.cache)
        )

    try:
        if SYNC_MODE == "once":
            if engine.run_tick_safely() is None:
                sys.exit(1)
            return

        if SYNC_MODE != "watch":
            logger.error(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
            sys.exit(1)

        logger.info(f"Poll interval: {POLL_INTERVAL_SECONDS}s")
        last_config_mtime = get_config_file_mtime(CONFIG_PATH)

        while True:
            engine.run_tick_safely()

            current_mtime = get_config_file_mtime(CONFIG_PATH)
            if current_mtime != last_config_mtime:
                last_config_mtime = current_mtime
                logger.info(f"Config change detected in: {Path(CONFIG_PATH).name}")

                try:
                    new_settings = load_settings(CONFIG_PATH)
                    new_errors = validate_settings(new_settings)
                    if new_errors:
                        raise ValueError("; ".join(new_errors))

                    for name in new_settings.cache_zones:
                        cache.register(name)
                    engine = ReconcileEngine(
                        settings=new_settings, client=create_client(new_settings), cache=cache
                    )
                    if server is not None:
                        server.reporter = StatusReporter(cache=cache, cache_spec=new_settings.cache)

                    logger.info("Triggering immediate tick after config reload")
                    engine.run_tick_safely()
                except Exception as e:
                    logger.error(f"Failed to reload configuration: {e}", exc_info=True)
                    logger.warning("Continuing with previous configuration")

            time.sleep(max(5, POLL_INTERVAL_SECONDS))

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if server is not None:
            server.shutdown()


if __name__ == "__main__":
    main()
