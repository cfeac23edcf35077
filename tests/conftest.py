"""Shared mock collaborators for AppsDNSManager tests."""

from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest

from flux_apps_dns.cli import (
    AppsDNSManager,
    AppSpec,
    DNSGatewayError,
    DNSGatewayNotReadyError,
    FdmConfig,
    ZoneConfig,
)

ZONE_A = "app.runonflux.io"
ZONE_B = "app2.runonflux.io"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MockFluxApi:
    """Flux API returning whatever app list the test sets."""

    def __init__(self, apps: Optional[List[AppSpec]] = None):
        self.apps: List[AppSpec] = apps or []
        self.calls = 0
        self.on_fetch: Optional[Callable[[], None]] = None

    def get_app_specifications(self) -> List[AppSpec]:
        self.calls += 1
        if self.on_fetch is not None:
            self.on_fetch()
        return list(self.apps)


class MockResolver:
    """FDM resolver backed by a dict of app name -> master IP."""

    def __init__(self, ips: Optional[Dict[str, str]] = None):
        self.ips: Dict[str, str] = ips or {}
        self.calls: List[str] = []
        self.failing_apps: Set[str] = set()

    def get_master_ip(self, app_name: str) -> Optional[str]:
        self.calls.append(app_name)
        if app_name in self.failing_apps:
            raise RuntimeError(f"resolver blew up on {app_name}")
        return self.ips.get(app_name)


class MockDNSGateway:
    """In-memory DNS gateway with call tracking and per-zone failure injection."""

    def __init__(self, ready: bool = True):
        self.ready = ready
        self.records: Dict[Tuple[str, str], List[str]] = {}
        self.create_calls: List[Tuple[str, List[str], str, int]] = []
        self.delete_calls: List[Tuple[str, str]] = []
        self.failing_create_zones: Set[str] = set()
        self.failing_delete_zones: Set[str] = set()

    def initialize(self) -> bool:
        return self.ready

    def is_ready(self) -> bool:
        return self.ready

    def create_records(self, app_name: str, ips: List[str], zone: str, ttl: int) -> None:
        if not self.ready:
            raise DNSGatewayNotReadyError()
        self.create_calls.append((app_name, list(ips), zone, ttl))
        if zone in self.failing_create_zones:
            raise DNSGatewayError("create failed", status_code=500, body={"error": "boom"})
        self.records[(app_name, zone)] = list(ips)

    def delete_records(self, app_name: str, zone: str) -> None:
        if not self.ready:
            raise DNSGatewayNotReadyError()
        self.delete_calls.append((app_name, zone))
        if zone in self.failing_delete_zones:
            raise DNSGatewayError("delete failed", status_code=500, body={"error": "boom"})
        self.records.pop((app_name, zone), None)


def make_zone(name: str, ttl: int = 300) -> ZoneConfig:
    return ZoneConfig(
        name=name,
        ttl=ttl,
        fdm=FdmConfig(base_url_pattern=f"http://fdm-{{index}}.{name}:16130"),
    )


def game_app(name: str) -> AppSpec:
    return AppSpec(name=name, version=3, container_data="g:/data")


class ManagerHarness:
    """AppsDNSManager wired to mock collaborators."""

    def __init__(
        self,
        zones: Optional[List[str]] = None,
        game_types: Optional[List[str]] = None,
        grace_period_seconds: float = 3600,
        max_attempts: int = 1,
        gateway_ready: bool = True,
    ):
        zone_names = zones or [ZONE_A]
        self.clock = FakeClock()
        self.flux_api = MockFluxApi()
        self.gateway = MockDNSGateway(ready=gateway_ready)
        self.resolvers = {name: MockResolver() for name in zone_names}
        self.manager = AppsDNSManager(
            flux_api=self.flux_api,  # type: ignore[arg-type]
            dns_gateway=self.gateway,  # type: ignore[arg-type]
            zones=[make_zone(name) for name in zone_names],
            game_types=game_types or ["minecraft", "valheim"],
            poll_interval_seconds=60,
            deletion_grace_period_seconds=grace_period_seconds,
            deletion_max_attempts=max_attempts,
            resolvers=self.resolvers,  # type: ignore[arg-type]
            clock=self.clock,
        )

    def set_apps(self, **master_ips: Optional[str]) -> None:
        """Publish apps with their master IP in every zone (None = no IP)."""
        self.flux_api.apps = [game_app(name) for name in master_ips]
        for resolver in self.resolvers.values():
            resolver.ips = {name: ip for name, ip in master_ips.items() if ip}

    def run(self) -> bool:
        return self.manager.run_processing_loop()


@pytest.fixture
def harness() -> Callable[..., ManagerHarness]:
    return ManagerHarness
