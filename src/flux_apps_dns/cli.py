#!/usr/bin/env python3
"""flux-apps-dns - Direct DNS routing for Flux game apps

Keeps DNS A records in sync with the currently active instance of G mode
(single-active-instance) game apps on the Flux network. App placement is
decided elsewhere; this service only reads the network's app specifications
and the master IP that FDM reports for each app, and pushes changes to an
mTLS DNS gateway.

Environment variables:

    Flux API:
        FLUX_API_URL                 Flux API base URL (default: https://api.runonflux.io)
        FLUX_API_TIMEOUT_SECONDS     Request timeout (default: 30)

    Zones:
        DNS_CONFIG_PATH              Path to YAML config file with zones and game types
                                     (default: /config/dns-zones.yaml)
                                     Example config file:
                                       zones:
                                         - name: "app2.runonflux.io"
                                           ttl: 300
                                           fdm:
                                             base_url_pattern: "http://fdm-fn-2-{index}.runonflux.io:16130"
                                             timeout_seconds: 10
                                       game_types:
                                         - minecraft
                                         - valheim

        Single-zone mode (used if the config file is missing or has no zones):
            DNS_ZONE                 Zone name (default: app2.runonflux.io)
            DNS_TTL                  Record TTL (default: 300)
            FDM_BASE_URL_PATTERN     FDM URL with an {index} placeholder
                                     (default: http://fdm-fn-2-{index}.runonflux.io:16130)
            FDM_TIMEOUT_SECONDS      FDM request timeout (default: 10)

    Game types:
        GAME_TYPES                   Comma-separated app name prefixes, matched
                                     case-insensitively. Overrides the config file.

    DNS Gateway (mTLS):
        DNS_GATEWAY_ENABLED          Enable DNS updates (default: false)
        DNS_GATEWAY_ENDPOINT         Gateway base URL (e.g. https://dns-gateway.internal:8443)
        DNS_GATEWAY_CERT_PATH        Client certificate
        DNS_GATEWAY_KEY_PATH         Client private key
        DNS_GATEWAY_CA_PATH          CA bundle used to verify the gateway
        DNS_GATEWAY_TIMEOUT_SECONDS  Request timeout (default: 30)

    Runtime:
        SYNC_MODE                      "once" or "watch" (default: watch)
        POLL_INTERVAL_SECONDS          Poll interval in watch mode (default: 60)
        DELETION_GRACE_PERIOD_SECONDS  How long an app must be missing before its
                                       records are deleted (default: 3600)
        DELETION_MAX_ATTEMPTS          Delete attempts per zone before cached state is
                                       dropped anyway (default: 1)
        SERVER_HOST / SERVER_PORT      HTTP status server bind (default: 0.0.0.0:16140)
        LOG_LEVEL                      DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import requests
import uvicorn
import yaml

from flux_apps_dns.server import create_app

# =============================================================================
# Configuration
# =============================================================================

DEFAULT_GAME_TYPES = [
    "minecraft",
    "palworld",
    "enshrouded",
    "rustserver",  # not "rust", which also matches rustdesk/rustpad
    "ark",
    "valheim",
    "terraria",
    "satisfactory",
    "conan",
    "sevendays",
    "teamspeak",
]

# Flux API configuration
FLUX_API_URL = os.getenv("FLUX_API_URL", "https://api.runonflux.io")
FLUX_API_TIMEOUT_SECONDS = float(os.getenv("FLUX_API_TIMEOUT_SECONDS", "30"))

# Zone configuration
DNS_CONFIG_PATH = os.getenv("DNS_CONFIG_PATH", "/config/dns-zones.yaml")
DNS_ZONE = os.getenv("DNS_ZONE", "app2.runonflux.io")
DNS_TTL = int(os.getenv("DNS_TTL", "300"))
FDM_BASE_URL_PATTERN = os.getenv(
    "FDM_BASE_URL_PATTERN", "http://fdm-fn-2-{index}.runonflux.io:16130"
)
FDM_TIMEOUT_SECONDS = float(os.getenv("FDM_TIMEOUT_SECONDS", "10"))
GAME_TYPES = os.getenv("GAME_TYPES", "")

# DNS gateway configuration
DNS_GATEWAY_ENABLED = os.getenv("DNS_GATEWAY_ENABLED", "false")
DNS_GATEWAY_ENDPOINT = os.getenv("DNS_GATEWAY_ENDPOINT", "")
DNS_GATEWAY_CERT_PATH = os.getenv("DNS_GATEWAY_CERT_PATH", "")
DNS_GATEWAY_KEY_PATH = os.getenv("DNS_GATEWAY_KEY_PATH", "")
DNS_GATEWAY_CA_PATH = os.getenv("DNS_GATEWAY_CA_PATH", "")
DNS_GATEWAY_TIMEOUT_SECONDS = float(os.getenv("DNS_GATEWAY_TIMEOUT_SECONDS", "30"))

# Runtime configuration
SYNC_MODE = os.getenv("SYNC_MODE", "watch")
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "60"))
DELETION_GRACE_PERIOD_SECONDS = int(os.getenv("DELETION_GRACE_PERIOD_SECONDS", "3600"))
DELETION_MAX_ATTEMPTS = int(os.getenv("DELETION_MAX_ATTEMPTS", "1"))
SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("SERVER_PORT", "16140"))
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
# Exceptions
# =============================================================================


class DNSGatewayError(Exception):
    """A DNS gateway call failed.

    ``body`` holds the gateway's response body (if any) for diagnostics.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class DNSGatewayNotReadyError(DNSGatewayError):
    """The gateway client is disabled or was never initialized."""

    def __init__(self) -> None:
        super().__init__("DNS Gateway client not initialized or disabled")


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class FdmConfig:
    """Where to find the FDM shards for a zone."""

    base_url_pattern: str
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class ZoneConfig:
    """A DNS zone managed by this service."""

    name: str
    ttl: int
    fdm: FdmConfig


@dataclass(frozen=True)
class ComposeComponent:
    name: str
    container_data: str = ""


@dataclass(frozen=True)
class AppSpec:
    """Application specification as published by the Flux network."""

    name: str
    version: Optional[int] = None
    container_data: str = ""
    compose: Tuple[ComposeComponent, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AppSpec":
        version = raw.get("version")
        try:
            version = int(version) if version is not None else None
        except (TypeError, ValueError):
            version = None

        components: List[ComposeComponent] = []
        compose = raw.get("compose")
        if isinstance(compose, list):
            for component in compose:
                if not isinstance(component, dict):
                    continue
                components.append(
                    ComposeComponent(
                        name=str(component.get("name") or ""),
                        container_data=str(component.get("containerData") or ""),
                    )
                )

        return cls(
            name=str(raw["name"]),
            version=version,
            container_data=str(raw.get("containerData") or ""),
            compose=tuple(components),
        )


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_game_types(value: str) -> List[str]:
    """Parse comma-separated game type prefixes, dropping blanks and duplicates."""
    game_types: List[str] = []
    for raw_item in (value or "").split(","):
        item = raw_item.strip().lower()
        if item and item not in game_types:
            game_types.append(item)
    return game_types


def _normalize_ip(ip: str) -> str:
    """Strip a port suffix and IPv6 brackets from an address.

    "1.2.3.4:16127" -> "1.2.3.4", "[2001:db8::1]:80" -> "2001:db8::1".
    A bare IPv6 literal is returned unchanged.
    """
    ip = str(ip).strip()
    if ip.startswith("["):
        end = ip.find("]")
        if end != -1:
            return ip[1:end]
        return ip.strip("[]")
    if ip.count(":") == 1:
        ip = ip.split(":", 1)[0]
    return ip.replace("[", "").replace("]", "")


def clean_ips(ips: Iterable[str]) -> List[str]:
    """Normalize a list of addresses for submission to the DNS gateway."""
    return [_normalize_ip(ip) for ip in ips]


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load the YAML config file, returning {} if it is missing or unreadable."""
    path = Path(config_path)
    if not config_path or not path.is_file():
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config file {config_path} is not a mapping, ignoring it")
        return {}
    return data


def load_zones(config_path: str = "") -> List[ZoneConfig]:
    """Load zones from the YAML config file, falling back to single-zone env settings."""
    config_data = load_config_file(config_path)
    zones: List[ZoneConfig] = []

    for item in config_data.get("zones") or []:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        fdm = item.get("fdm") if isinstance(item.get("fdm"), dict) else {}
        pattern = str(fdm.get("base_url_pattern") or "").strip()
        if not name or not pattern:
            logger.warning(f"Skipping zone entry without name or fdm.base_url_pattern: {item}")
            continue
        try:
            ttl = int(item.get("ttl") or DNS_TTL)
            timeout = float(fdm.get("timeout_seconds") or FDM_TIMEOUT_SECONDS)
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping zone '{name}' with invalid ttl/timeout: {e}")
            continue
        zones.append(
            ZoneConfig(
                name=name,
                ttl=ttl,
                fdm=FdmConfig(base_url_pattern=pattern, timeout_seconds=timeout),
            )
        )

    if zones:
        logger.info(f"Loaded {len(zones)} zone(s) from {config_path}")
        return zones

    # Single-zone fallback
    if not DNS_ZONE.strip() or not FDM_BASE_URL_PATTERN.strip():
        return []
    return [
        ZoneConfig(
            name=DNS_ZONE.strip(),
            ttl=DNS_TTL,
            fdm=FdmConfig(
                base_url_pattern=FDM_BASE_URL_PATTERN.strip(),
                timeout_seconds=FDM_TIMEOUT_SECONDS,
            ),
        )
    ]


def load_game_types(config_path: str = "", env_value: str = "") -> List[str]:
    """Game types from the env var, else the config file, else the built-in list."""
    if env_value.strip():
        return _parse_game_types(env_value)

    raw = load_config_file(config_path).get("game_types")
    if isinstance(raw, list):
        game_types = _parse_game_types(",".join(str(item) for item in raw))
        if game_types:
            return game_types

    return list(DEFAULT_GAME_TYPES)


# =============================================================================
# Game-App Classifier
# =============================================================================

G_MODE_MARKER = "g:"


def is_g_mode_app(app: AppSpec) -> bool:
    """True if the app runs in G (single-active-instance) mode.

    Apps up to version 3 carry one containerData string; composed apps
    qualify if any component is marked.
    """
    if app.version is not None and app.version <= 3:
        return G_MODE_MARKER in app.container_data
    if app.compose:
        return any(G_MODE_MARKER in c.container_data for c in app.compose)
    if app.version is None:
        return G_MODE_MARKER in app.container_data
    return False


def is_game_app(app_name: str, game_types: Iterable[str]) -> bool:
    lower_name = app_name.lower()
    return any(lower_name.startswith(game_type.lower()) for game_type in game_types)


def filter_game_apps(apps: Iterable[AppSpec], game_types: Iterable[str]) -> List[AppSpec]:
    """Keep only G mode apps whose name starts with one of the game types."""
    game_types = list(game_types)
    return [app for app in apps if is_g_mode_app(app) and is_game_app(app.name, game_types)]


# =============================================================================
# Flux API Clients
# =============================================================================


def get_fdm_index(app_name: str) -> int:
    """Map an app name to its FDM shard (1-4) by first letter.

    a-g -> 1, h-n -> 2, o-u -> 3, v-z -> 4, anything else -> 1.
    """
    first = app_name[:1].lower()
    if "h" <= first <= "n":
        return 2
    if "o" <= first <= "u":
        return 3
    if "v" <= first <= "z":
        return 4
    return 1


class FluxApiClient:
    """Reads application specifications from the Flux API."""

    def __init__(self, base_url: str, timeout_seconds: float = 30.0):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()

    def get_app_specifications(self) -> List[AppSpec]:
        """Fetch all app specs. Any failure yields an empty list."""
        url = f"{self._base_url}/apps/globalappsspecifications"
        try:
            response = self._session.get(url, timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Failed to fetch app specifications: {e}")
            return []

        if not isinstance(payload, dict) or payload.get("status") != "success":
            status = payload.get("status") if isinstance(payload, dict) else None
            logger.warning(f"Unexpected response from getAppSpecifications: {status}")
            return []

        specs: List[AppSpec] = []
        for raw in payload.get("data") or []:
            if not isinstance(raw, dict) or not raw.get("name"):
                logger.warning(f"Skipping malformed app specification: {raw!r:.200}")
                continue
            specs.append(AppSpec.from_dict(raw))
        return specs


class FdmResolver:
    """Looks up an app's master IP on the FDM shard responsible for it."""

    def __init__(self, fdm: FdmConfig):
        self._pattern = fdm.base_url_pattern
        self._timeout = fdm.timeout_seconds
        self._session = requests.Session()

    def get_fdm_base_url(self, app_name: str) -> str:
        return self._pattern.replace("{index}", str(get_fdm_index(app_name))).rstrip("/")

    def get_master_ip(self, app_name: str) -> Optional[str]:
        """Return the IP currently set in HAProxy for the app, or None."""
        url = f"{self.get_fdm_base_url(app_name)}/appips/{app_name}"
        try:
            response = self._session.get(url, timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
            ip = self._first_ip(payload)
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 503:
                logger.debug(f"FDM service starting up for app {app_name}, will retry later")
            elif status == 404:
                logger.debug(f"App {app_name} not found in FDM")
            else:
                logger.error(f"Failed to get master IP from FDM for {app_name}: {e}")
            return None
        except (requests.exceptions.RequestException, ValueError, TypeError) as e:
            logger.error(f"Failed to get master IP from FDM for {app_name}: {e}")
            return None

        if ip is None:
            logger.warning(f"No IPs returned from FDM for app {app_name}")
            return None
        logger.debug(f"FDM returned IP {ip} for app {app_name}")
        return ip

    @staticmethod
    def _first_ip(payload: Any) -> Optional[str]:
        """First IP of a successful /appips reply; TypeError if it is malformed."""
        if not isinstance(payload, dict) or payload.get("status") != "success":
            return None
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise TypeError(f"unexpected data in FDM reply: {data!r:.100}")
        ips = data.get("ips")
        if not ips:
            return None
        if not isinstance(ips, list) or not isinstance(ips[0], str):
            raise TypeError(f"unexpected ips in FDM reply: {ips!r:.100}")
        return _normalize_ip(ips[0])


# =============================================================================
# DNS Gateway Client
# =============================================================================


class DNSGatewayClient:
    """A record management through the DNS gateway, authenticated with mTLS."""

    def __init__(
        self,
        endpoint: str,
        cert_path: str,
        key_path: str,
        ca_path: str,
        timeout_seconds: float = 30.0,
        enabled: bool = False,
    ):
        self._endpoint = endpoint.rstrip("/")
        self._cert_path = cert_path
        self._key_path = key_path
        self._ca_path = ca_path
        self._timeout = timeout_seconds
        self._enabled = enabled
        self._session: Optional[requests.Session] = None

    def initialize(self) -> bool:
        """Load the client credentials and build the session. Returns readiness."""
        if not self._enabled:
            logger.warning("DNS Gateway is disabled in configuration")
            return False

        if not self._endpoint:
            logger.error("DNS Gateway endpoint not configured")
            return False

        for label, path in (
            ("certificate", self._cert_path),
            ("key", self._key_path),
            ("CA bundle", self._ca_path),
        ):
            try:
                Path(path).read_bytes()
            except (OSError, ValueError) as e:
                logger.error(f"Failed to initialize DNS Gateway client: cannot read {label} '{path}': {e}")
                return False

        session = requests.Session()
        session.cert = (self._cert_path, self._key_path)
        session.verify = self._ca_path
        self._session = session
        logger.info("DNS Gateway client initialized successfully")
        return True

    def is_ready(self) -> bool:
        return self._session is not None and self._enabled

    def _records_url(self, zone: str, app_name: str = "") -> str:
        if app_name:
            return f"{self._endpoint}/api/v1/zones/{zone}/records/{app_name}/A"
        return f"{self._endpoint}/api/v1/zones/{zone}/records"

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        if self._session is None or not self._enabled:
            raise DNSGatewayNotReadyError()
        try:
            return self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise DNSGatewayError(f"{method} {url} failed: {e}") from e

    @staticmethod
    def _error_from(response: requests.Response, action: str) -> DNSGatewayError:
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        logger.error(f"DNS Gateway response: {json.dumps(body) if not isinstance(body, str) else body}")
        return DNSGatewayError(
            f"{action} failed with status {response.status_code}",
            status_code=response.status_code,
            body=body,
        )

    def create_records(self, app_name: str, ips: List[str], zone: str, ttl: int) -> Any:
        """Replace the app's A records in the zone with the given IPs."""
        if not ips:
            raise ValueError("No server IPs provided for DNS records")
        cleaned = clean_ips(ips)
        response = self._request(
            "POST",
            self._records_url(zone),
            json={"name": app_name, "record_type": "A", "content": cleaned, "ttl": ttl},
        )
        if not response.ok:
            logger.error(f"Failed to create DNS records for {app_name} in {zone}")
            raise self._error_from(response, f"Create {app_name}.{zone}")
        logger.info(f"Created DNS records for {app_name}.{zone} -> [{', '.join(cleaned)}]")
        try:
            return response.json()
        except ValueError:
            return None

    def delete_records(self, app_name: str, zone: str) -> None:
        """Delete the app's A records. A missing record counts as deleted."""
        response = self._request("DELETE", self._records_url(zone, app_name))
        if response.status_code == 404:
            logger.info(f"DNS records for {app_name}.{zone} not found (already deleted)")
            return
        if not response.ok:
            logger.error(f"Failed to delete DNS records for {app_name} in {zone}")
            raise self._error_from(response, f"Delete {app_name}.{zone}")
        logger.info(f"Deleted DNS records for {app_name}.{zone}")

    def get_records(self, app_name: str, zone: str) -> Optional[List[str]]:
        """Return the app's current A record IPs, or None if there is no record."""
        response = self._request("GET", self._records_url(zone, app_name))
        if response.status_code == 404:
            return None
        if not response.ok:
            logger.error(f"Failed to get DNS records for {app_name} in {zone}")
            raise self._error_from(response, f"Get {app_name}.{zone}")
        try:
            data = response.json()
        except ValueError as e:
            raise DNSGatewayError(f"Invalid JSON from DNS Gateway for {app_name}.{zone}") from e
        content = data.get("content") if isinstance(data, dict) else None
        if isinstance(content, str):
            return [content]
        return [str(ip) for ip in content or []]


# =============================================================================
# State Management
# =============================================================================


class DNSStateCache:
    """Last IPs successfully written per app and zone.

    Only used to skip redundant writes; it is never loaded from DNS, so the
    first iteration after startup always writes. Guarded by a lock because
    the HTTP front door reads it while an iteration writes.
    """

    def __init__(self) -> None:
        self._state: Dict[str, Dict[str, List[str]]] = {}
        self._lock = threading.Lock()

    def __contains__(self, app_name: object) -> bool:
        with self._lock:
            return isinstance(app_name, str) and bool(self._state.get(app_name))

    def __len__(self) -> int:
        with self._lock:
            return len(self._state)

    def has_changed(self, app_name: str, zone: str, ips: Iterable[str]) -> bool:
        with self._lock:
            cached = self._state.get(app_name, {}).get(zone)
        if cached is None:
            return True
        return set(cached) != set(ips)

    def record(self, app_name: str, zone: str, ips: Iterable[str]) -> None:
        ips = list(ips)
        with self._lock:
            self._state.setdefault(app_name, {})[zone] = ips

    def zones_for(self, app_name: str) -> List[str]:
        with self._lock:
            return list(self._state.get(app_name, {}))

    def drop_zone(self, app_name: str, zone: str) -> None:
        with self._lock:
            zones = self._state.get(app_name)
            if zones is None:
                return
            zones.pop(zone, None)
            if not zones:
                del self._state[app_name]

    def drop(self, app_name: str) -> None:
        with self._lock:
            self._state.pop(app_name, None)

    def snapshot(self) -> Dict[str, Dict[str, List[str]]]:
        with self._lock:
            return {app: {zone: list(ips) for zone, ips in zones.items()} for app, zones in self._state.items()}


class DeletionGraceTracker:
    """Deletes records of vanished apps once they stay missing for the grace period.

    Deletion covers every configured zone, not only the zones the cache holds
    an entry for.
    """

    def __init__(
        self,
        *,
        state: DNSStateCache,
        dns_gateway: DNSGatewayClient,
        zones: Iterable[str],
        grace_period_seconds: float,
        max_attempts: int = 1,
    ):
        self.state = state
        self.dns_gateway = dns_gateway
        self.zones = list(zones)
        self.grace_period_seconds = grace_period_seconds
        self.max_attempts = max(1, int(max_attempts))
        self._missing_since: Dict[str, float] = {}
        self._attempts: Dict[str, int] = {}
        self._retry_zones: Dict[str, List[str]] = {}

    def pending_count(self) -> int:
        return len(self._missing_since)

    def is_pending(self, app_name: str) -> bool:
        return app_name in self._missing_since

    def process_removals(self, removed_apps: Iterable[str], now: float) -> None:
        # Apps already pending are no longer in the last-seen set, so they are
        # evaluated alongside the newly removed ones.
        candidates = set(removed_apps) | set(self._missing_since)

        for app_name in sorted(candidates):
            if app_name not in self.state and app_name not in self._retry_zones:
                self._forget(app_name)
                continue

            first_missing = self._missing_since.get(app_name)
            if first_missing is None:
                self._missing_since[app_name] = now
                grace_minutes = round(self.grace_period_seconds / 60)
                logger.info(f"App {app_name} not found, starting {grace_minutes} minute grace period")
                continue

            elapsed = now - first_missing
            if elapsed < self.grace_period_seconds:
                continue

            logger.info(
                f"App {app_name} missing for {round(elapsed / 60)} minutes, "
                f"deleting DNS records from all zones"
            )
            self._delete_everywhere(app_name)

    def _delete_everywhere(self, app_name: str) -> None:
        zones = self._retry_zones.get(app_name) or self.zones
        failed: List[str] = []
        for zone in zones:
            try:
                self.dns_gateway.delete_records(app_name, zone)
            except DNSGatewayError as e:
                logger.error(f"Failed to delete DNS records for {app_name} in {zone}: {e}")
                failed.append(zone)
                continue
            self.state.drop_zone(app_name, zone)

        attempts = self._attempts.get(app_name, 0) + 1
        self._attempts[app_name] = attempts
        deleted = len(zones) - len(failed)

        if failed and attempts < self.max_attempts:
            self._retry_zones[app_name] = failed
            logger.warning(
                f"Deleted DNS records for {app_name} from {deleted}/{len(zones)} zones, "
                f"will retry {', '.join(failed)} (attempt {attempts}/{self.max_attempts})"
            )
            return

        self.state.drop(app_name)
        self._forget(app_name)
        logger.info(f"Deleted DNS records for removed app {app_name} from {deleted}/{len(zones)} zones")

    def cancel_reappeared(self, seen_apps: Iterable[str]) -> None:
        for app_name in seen_apps:
            if app_name in self._missing_since:
                logger.info(f"App {app_name} reappeared, canceling deletion")
                self._forget(app_name)

    def _forget(self, app_name: str) -> None:
        self._missing_since.pop(app_name, None)
        self._attempts.pop(app_name, None)
        self._retry_zones.pop(app_name, None)


# =============================================================================
# Core Manager
# =============================================================================


class AppsDNSManager:
    """Periodically reconciles G mode game apps against DNS."""

    def __init__(
        self,
        *,
        flux_api: FluxApiClient,
        dns_gateway: DNSGatewayClient,
        zones: List[ZoneConfig],
        game_types: List[str],
        poll_interval_seconds: float = 60,
        deletion_grace_period_seconds: float = 3600,
        deletion_max_attempts: int = 1,
        resolvers: Optional[Dict[str, FdmResolver]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.flux_api = flux_api
        self.dns_gateway = dns_gateway
        self.zones = zones
        self.game_types = game_types
        self.poll_interval_seconds = poll_interval_seconds
        self.resolvers = resolvers or {zone.name: FdmResolver(zone.fdm) for zone in zones}
        self.clock = clock

        self.state = DNSStateCache()
        self.grace_tracker = DeletionGraceTracker(
            state=self.state,
            dns_gateway=dns_gateway,
            zones=[zone.name for zone in zones],
            grace_period_seconds=deletion_grace_period_seconds,
            max_attempts=deletion_max_attempts,
        )
        self._last_seen_apps: Set[str] = set()
        self._loop_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._scheduler: Optional[threading.Thread] = None

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        logger.info("Starting Apps DNS Manager service")

        if not self.dns_gateway.initialize():
            logger.error("Failed to initialize DNS Gateway - service will not update DNS records")

        self.run_processing_loop()

        self._stop_event.clear()
        self._scheduler = threading.Thread(
            target=self._schedule, name="apps-dns-scheduler", daemon=True
        )
        self._scheduler.start()
        logger.info(f"Apps DNS Manager started, polling every {self.poll_interval_seconds}s")

    def stop(self) -> None:
        logger.info("Stopping Apps DNS Manager service")
        self._stop_event.set()
        if self._scheduler is not None:
            self._scheduler.join(timeout=max(5.0, float(self.poll_interval_seconds)))
            self._scheduler = None

    def _schedule(self) -> None:
        while not self._stop_event.wait(self.poll_interval_seconds):
            self.run_processing_loop()

    # -- reconciliation -------------------------------------------------------

    def run_processing_loop(self) -> bool:
        """Run one iteration unless one is already running. Returns True if it ran."""
        if not self._loop_lock.acquire(blocking=False):
            logger.warning("Processing loop already running, skipping")
            return False

        start = time.monotonic()
        try:
            logger.info("Starting apps DNS processing loop")

            all_apps = self.flux_api.get_app_specifications()
            if not all_apps:
                logger.warning("No app specifications received from Flux API")
                return True

            matched_apps = filter_game_apps(all_apps, self.game_types)
            logger.info(f"Found {len(matched_apps)} G-mode apps")

            current_seen: Set[str] = set()
            zone_updates = 0
            for app in matched_apps:
                current_seen.add(app.name)
                try:
                    zone_updates += self._process_app(app)
                except Exception as e:
                    logger.error(f"Error processing app {app.name}: {e}", exc_info=True)

            # Cancel first so an app seen this tick is never deleted on it.
            self.grace_tracker.cancel_reappeared(current_seen)
            self.grace_tracker.process_removals(self._last_seen_apps - current_seen, self.clock())

            self._last_seen_apps = current_seen

            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.info(
                f"Apps DNS loop completed: {len(matched_apps)} apps, "
                f"{zone_updates} zone updates, {elapsed_ms}ms"
            )
        except Exception as e:
            logger.error(f"Error in apps DNS processing loop: {e}", exc_info=True)
        finally:
            self._loop_lock.release()
        return True

    def _process_app(self, app: AppSpec) -> int:
        """Update DNS for one app in every zone that needs it. Returns zones updated."""
        updated = 0
        for zone in self.zones:
            resolver = self.resolvers.get(zone.name)
            if resolver is None:
                logger.warning(f"No FDM resolver configured for zone {zone.name}")
                continue

            master_ip = resolver.get_master_ip(app.name)
            if not master_ip:
                logger.debug(f"No master IP available from FDM for {app.name} in {zone.name}, skipping")
                continue

            ips = [_normalize_ip(master_ip)]
            if not self.state.has_changed(app.name, zone.name, ips):
                logger.debug(f"No DNS change needed for {app.name} in {zone.name}")
                continue

            logger.info(f"Updating DNS for {app.name} in {zone.name}: {', '.join(ips)}")
            try:
                self.dns_gateway.create_records(app.name, ips, zone.name, zone.ttl)
            except (DNSGatewayError, ValueError) as e:
                logger.error(f"Failed to update DNS for {app.name} in {zone.name}: {e}")
                continue

            self.state.record(app.name, zone.name, ips)
            logger.info(f"DNS updated for {app.name}.{zone.name} -> {', '.join(ips)}")
            updated += 1
        return updated

    # -- introspection --------------------------------------------------------

    def is_loop_running(self) -> bool:
        return self._loop_lock.locked()

    def get_status(self) -> Dict[str, Any]:
        scheduler = self._scheduler
        return {
            "running": scheduler is not None and scheduler.is_alive(),
            "loop_in_progress": self.is_loop_running(),
            "dns_gateway_enabled": self.dns_gateway.is_ready(),
            "tracked_apps": len(self.state),
            "pending_deletions": self.grace_tracker.pending_count(),
            "last_seen_apps": sorted(self._last_seen_apps),
        }

    def get_dns_state(self) -> Dict[str, Dict[str, List[str]]]:
        return self.state.snapshot()


# =============================================================================
# Main
# =============================================================================


def create_dns_gateway() -> DNSGatewayClient:
    """Factory function to create the configured DNS gateway client."""
    return DNSGatewayClient(
        endpoint=DNS_GATEWAY_ENDPOINT,
        cert_path=DNS_GATEWAY_CERT_PATH,
        key_path=DNS_GATEWAY_KEY_PATH,
        ca_path=DNS_GATEWAY_CA_PATH,
        timeout_seconds=DNS_GATEWAY_TIMEOUT_SECONDS,
        enabled=_parse_bool(DNS_GATEWAY_ENABLED, default=False),
    )


def validate_config(zones: List[ZoneConfig], game_types: List[str]) -> bool:
    """Validate configuration."""
    errors = []

    if not zones:
        errors.append("At least one DNS zone is required (set DNS_CONFIG_PATH or DNS_ZONE)")
    for zone in zones:
        if "{index}" not in zone.fdm.base_url_pattern:
            errors.append(f"Zone '{zone.name}': fdm base_url_pattern must contain '{{index}}'")
        if zone.ttl <= 0:
            errors.append(f"Zone '{zone.name}': ttl must be positive")

    if not game_types:
        errors.append("At least one game type is required")

    if POLL_INTERVAL_SECONDS <= 0:
        errors.append("POLL_INTERVAL_SECONDS must be positive")
    if DELETION_GRACE_PERIOD_SECONDS < 0:
        errors.append("DELETION_GRACE_PERIOD_SECONDS must not be negative")

    if _parse_bool(DNS_GATEWAY_ENABLED, default=False):
        if not DNS_GATEWAY_ENDPOINT:
            errors.append("DNS_GATEWAY_ENDPOINT is required when DNS_GATEWAY_ENABLED=true")
        if not (DNS_GATEWAY_CERT_PATH and DNS_GATEWAY_KEY_PATH and DNS_GATEWAY_CA_PATH):
            errors.append(
                "DNS_GATEWAY_CERT_PATH, DNS_GATEWAY_KEY_PATH and DNS_GATEWAY_CA_PATH "
                "are required when DNS_GATEWAY_ENABLED=true"
            )
    else:
        logger.warning("DNS Gateway disabled. DNS records will not be updated.")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    zones = load_zones(DNS_CONFIG_PATH)
    game_types = load_game_types(DNS_CONFIG_PATH, GAME_TYPES)

    if not validate_config(zones, game_types):
        logger.error("Configuration validation failed")
        sys.exit(1)

    logger.info(f"DNS zones: {', '.join(z.name for z in zones)}")
    logger.info(f"Game types: {', '.join(game_types)}")
    logger.info(f"Sync mode: {SYNC_MODE}")
    logger.info(f"Polling interval: {POLL_INTERVAL_SECONDS}s")
    logger.info(f"Deletion grace period: {DELETION_GRACE_PERIOD_SECONDS // 60} minutes")

    manager = AppsDNSManager(
        flux_api=FluxApiClient(FLUX_API_URL, FLUX_API_TIMEOUT_SECONDS),
        dns_gateway=create_dns_gateway(),
        zones=zones,
        game_types=game_types,
        poll_interval_seconds=POLL_INTERVAL_SECONDS,
        deletion_grace_period_seconds=DELETION_GRACE_PERIOD_SECONDS,
        deletion_max_attempts=DELETION_MAX_ATTEMPTS,
    )

    if SYNC_MODE == "once":
        if not manager.dns_gateway.initialize():
            logger.error("Failed to initialize DNS Gateway - service will not update DNS records")
        manager.run_processing_loop()
        return

    if SYNC_MODE != "watch":
        logger.error(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
        sys.exit(1)

    manager.start()
    try:
        logger.info(f"Flux Apps DNS Manager listening on {SERVER_HOST}:{SERVER_PORT}")
        uvicorn.run(create_app(manager), host=SERVER_HOST, port=SERVER_PORT)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    finally:
        manager.stop()


if __name__ == "__main__":
    main()
