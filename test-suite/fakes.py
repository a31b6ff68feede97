#!/usr/bin/env python3
"""
In-memory backends for the facade / coordinator / dashboard tests.

Each fake declares the same MODE and CAPABILITIES as the real adapter it
replaces, so SurgeClient dispatch is exercised unchanged.
"""
import asyncio
import importlib.util
import pathlib
import sys
from typing import List, Optional


ROOT = pathlib.Path(__file__).resolve().parents[1]
MODULE_PATH = ROOT / "surgetui.py"


def load_surgetui():
    mod = sys.modules.get("surgetui")
    if mod is not None:
        return mod
    spec = importlib.util.spec_from_file_location("surgetui", MODULE_PATH)
    if spec is None or spec.loader is None:
        raise RuntimeError(f"cannot load module from {MODULE_PATH}")
    mod = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = mod
    spec.loader.exec_module(mod)
    return mod


ST = load_surgetui()


def req(rid: int, started_at: float, **kw):
    return ST.RequestRecord(id=rid, started_at=started_at, **kw)


class FakeHttp:
    MODE = ST.BackendMode.HTTP_API
    CAPABILITIES = ST.HttpBackend.CAPABILITIES

    def __init__(self):
        self.error: Optional[Exception] = None
        self.outbound = ST.OutboundMode.RULE
        self.policies = [ST.Policy("A", "proxy"), ST.Policy("B", "proxy")]
        self.groups = [
            ST.PolicyGroup(
                "Proxy",
                (ST.PolicyMember("A", type_description="Shadowsocks"), ST.PolicyMember("B", type_description="Trojan")),
                selected="A",
            ),
        ]
        self.features = {"mitm": False, "capture": True}
        self.requests = [req(1, 100.0), req(2, 300.0), req(3, 200.0)]
        self.active = [req(9, 50.0)]
        self.dns = [ST.DnsRecord("example.com", ("93.184.216.34",))]
        self.calls: List[str] = []
        self.closed = False

    def _hit(self, op: str) -> None:
        self.calls.append(op)
        if self.error is not None:
            raise self.error

    async def health_check(self):
        self._hit("health_check")

    async def get_outbound_mode(self):
        self._hit("get_outbound_mode")
        return self.outbound

    async def set_outbound_mode(self, mode):
        self._hit("set_outbound_mode")
        self.outbound = mode

    async def list_policies(self):
        self._hit("list_policies")
        return list(self.policies)

    async def list_policy_groups(self):
        self._hit("list_policy_groups")
        return list(self.groups)

    async def select_policy(self, group, policy):
        self._hit("select_policy")
        self.groups = [
            ST.PolicyGroup(g.name, g.members, policy, g.available) if g.name == group else g
            for g in self.groups
        ]

    async def test_policy(self, name):
        self._hit("test_policy")

    async def test_policy_group(self, group):
        self._hit("test_policy_group")
        return ["A"]

    async def get_recent_requests(self):
        self._hit("get_recent_requests")
        return list(self.requests)

    async def get_active_connections(self):
        self._hit("get_active_connections")
        return list(self.active)

    async def kill_connection(self, conn_id):
        self._hit("kill_connection")
        self.active = [r for r in self.active if r.id != conn_id]

    async def get_feature(self, name):
        self._hit("get_feature")
        return self.features[name]

    async def set_feature(self, name, enabled):
        self._hit("set_feature")
        self.features[name] = enabled

    async def reload_config(self):
        self._hit("reload_config")

    async def get_dns_cache(self):
        self._hit("get_dns_cache")
        return list(self.dns)

    async def flush_dns(self):
        self._hit("flush_dns")
        self.dns = []

    async def aclose(self):
        self.closed = True


class FakeCli:
    MODE = ST.BackendMode.COMMAND_LINE
    CAPABILITIES = ST.CliBackend.CAPABILITIES

    def __init__(self):
        self.error: Optional[Exception] = None
        self.profile_has_api: Optional[bool] = None
        self.policies = [ST.Policy("A"), ST.Policy("B")]
        self.requests = [req(1, 100.0), req(2, 300.0)]
        self.test_results = [
            ST.Policy("A", availability=ST.Availability.AVAILABLE, latency_ms=120, tested_at=1.0),
            ST.Policy("B", availability=ST.Availability.UNAVAILABLE, tested_at=1.0),
        ]
        self.test_gate: Optional[asyncio.Event] = None
        self.test_error: Optional[Exception] = None
        self.calls: List[str] = []

    def _hit(self, op: str) -> None:
        self.calls.append(op)
        if self.error is not None:
            raise self.error

    async def health_check(self):
        self._hit("health_check")

    async def api_enabled_in_profile(self):
        return self.profile_has_api

    async def list_policies(self):
        self._hit("list_policies")
        return list(self.policies)

    async def test_policy(self, name):
        self._hit("test_policy")

    async def test_policy_group(self, group):
        self._hit("test_policy_group")
        return []

    async def test_all_policies(self):
        self.calls.append("test_all_policies")
        if self.test_gate is not None:
            await self.test_gate.wait()
        if self.test_error is not None:
            raise self.test_error
        return list(self.test_results)

    async def get_recent_requests(self):
        self._hit("get_recent_requests")
        return list(self.requests)

    async def get_active_connections(self):
        self._hit("get_active_connections")
        return []

    async def kill_connection(self, conn_id):
        self._hit("kill_connection")

    async def reload_config(self):
        self._hit("reload_config")

    async def get_dns_cache(self):
        self._hit("get_dns_cache")
        return []

    async def flush_dns(self):
        self._hit("flush_dns")


class FakeSystem:
    MODE = ST.BackendMode.SYSTEM_PROBE
    CAPABILITIES = ST.SystemBackend.CAPABILITIES

    def __init__(self, running: bool = True):
        self.running = running
        # after launch(), the process shows up on this is_running() poll (None = never)
        self.appear_after: Optional[int] = None
        self.launched = 0
        self._polls = 0

    async def is_running(self):
        if self.launched and not self.running and self.appear_after is not None:
            self._polls += 1
            if self._polls >= self.appear_after:
                self.running = True
        return self.running

    async def health_check(self):
        if not await self.is_running():
            raise ST.UnavailableError("Surge is not running")

    async def launch(self):
        self.launched += 1


def make_client(**kw):
    http, cli, system = FakeHttp(), FakeCli(), FakeSystem()
    kw.setdefault("start_poll_interval", 0.01)
    client = ST.SurgeClient(http, cli, system, **kw)
    return client, http, cli, system
