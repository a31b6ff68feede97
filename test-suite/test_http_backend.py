#!/usr/bin/env python3
import json
import pathlib
import sys
import unittest

import httpx

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parent))

from fakes import ST  # noqa: E402


GROUPS = {
    "Proxy": [
        {"name": "USGroup", "isGroup": True, "typeDescription": "Select Group", "lineHash": "a1", "enabled": True},
        {"name": "DIRECT", "isGroup": False, "typeDescription": "Direct", "lineHash": "a2", "enabled": True},
    ],
    "USGroup": [
        {"name": "us-1", "isGroup": False, "typeDescription": "Shadowsocks", "lineHash": "b1", "enabled": True},
        {"name": "us-2", "isGroup": False, "typeDescription": "Trojan", "lineHash": "b2", "enabled": False},
    ],
    "Auto": [
        {"name": "us-1", "isGroup": False, "typeDescription": "Shadowsocks", "lineHash": "c1", "enabled": True},
    ],
}

SELECTED = {"Proxy": "USGroup", "USGroup": "us-1"}


class _Api:
    """Minimal Surge HTTP API answering from canned data."""

    def __init__(self):
        self.seen = []
        self.fail_status = None
        self.timeout = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.seen.append(request)
        if self.timeout:
            raise httpx.ConnectTimeout("timed out", request=request)
        if request.headers.get("X-Key") != "secret":
            return httpx.Response(401, text="Invalid API key")
        if self.fail_status:
            return httpx.Response(self.fail_status, text="oops")

        path = request.url.path
        if path == "/v1/outbound" and request.method == "GET":
            return httpx.Response(200, json={"mode": "rule"})
        if path == "/v1/policies":
            return httpx.Response(200, json={"proxies": ["us-1", "us-2"], "policy-groups": list(GROUPS)})
        if path == "/v1/policy_groups":
            return httpx.Response(200, json=GROUPS)
        if path == "/v1/policy_groups/select" and request.method == "GET":
            name = request.url.params.get("group_name")
            if name in SELECTED:
                return httpx.Response(200, json={"policy": SELECTED[name]})
            return httpx.Response(400, json={"error": "not a select group"})
        if path == "/v1/policy_groups/test":
            return httpx.Response(200, json={"available": ["us-1"]})
        if path == "/v1/requests/recent":
            return httpx.Response(200, json={"requests": [{
                "id": 17,
                "processPath": "/Applications/Safari.app/Contents/MacOS/Safari",
                "rule": "FINAL",
                "policyName": "us-1",
                "remoteHost": "example.com:443",
                "URL": "https://example.com/",
                "method": "GET",
                "status": "Completed",
                "startDate": 1700000000.5,
                "inBytes": 2048,
                "outBytes": 512,
                "completed": True,
                "failed": False,
                "notes": ["[Rule] FINAL"],
            }]})
        if path == "/v1/requests/active":
            return httpx.Response(200, json={"connections": []})
        if path == "/v1/dns":
            return httpx.Response(200, json={"dnsCache": [{
                "domain": "example.com",
                "data": ["93.184.216.34"],
                "expiresTime": 1700000100.25,
                "server": "8.8.8.8",
                "logs": ["query sent"],
                "path": "udp",
                "timeCost": 0.012,
            }]})
        if path.startswith("/v1/features/") and request.method == "GET":
            return httpx.Response(200, json={"enabled": path.endswith("mitm")})
        if request.method == "POST":
            return httpx.Response(200, json={})
        return httpx.Response(404)


class TestHttpBackend(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.api = _Api()
        self.backend = ST.HttpBackend("127.0.0.1", 6171, "secret", timeout=0.5, transport=httpx.MockTransport(self.api))

    async def asyncTearDown(self):
        await self.backend.aclose()

    def _last_body(self):
        return json.loads(self.api.seen[-1].content)

    async def test_health_check_reads_outbound_mode(self):
        await self.backend.health_check()
        self.assertEqual(await self.backend.get_outbound_mode(), ST.OutboundMode.RULE)
        self.assertEqual(self.api.seen[0].url.path, "/v1/outbound")

    async def test_wrong_key_is_unauthorized_with_server_text(self):
        backend = ST.HttpBackend("127.0.0.1", 6171, "wrong", transport=httpx.MockTransport(self.api))
        try:
            with self.assertRaises(ST.UnauthorizedError) as ctx:
                await backend.health_check()
            self.assertEqual(str(ctx.exception), "Invalid API key")
        finally:
            await backend.aclose()

    async def test_timeout_is_unavailable(self):
        self.api.timeout = True
        with self.assertRaises(ST.UnavailableError) as ctx:
            await self.backend.get_outbound_mode()
        self.assertIn("timed out", str(ctx.exception))

    async def test_server_error_is_unavailable(self):
        self.api.fail_status = 500
        with self.assertRaises(ST.UnavailableError) as ctx:
            await self.backend.list_policies()
        self.assertEqual(ctx.exception.status_code, 500)

    async def test_policy_groups_keyed_mapping(self):
        groups = await self.backend.list_policy_groups()
        self.assertEqual([g.name for g in groups], ["Auto", "Proxy", "USGroup"])
        by_name = {g.name: g for g in groups}
        self.assertIsNone(by_name["Auto"].selected)
        self.assertEqual(by_name["Proxy"].selected, "USGroup")
        usg = by_name["Proxy"].members[0]
        self.assertTrue(usg.is_group)
        self.assertEqual(usg.type_description, "Select Group")
        self.assertEqual(usg.line_hash, "a1")
        self.assertFalse(by_name["USGroup"].members[1].enabled)

    async def test_nested_selection_resolves(self):
        snap = ST.Snapshot(
            policies=tuple(await self.backend.list_policies()),
            groups=tuple(await self.backend.list_policy_groups()),
        )
        self.assertEqual(ST.resolve_policy(snap, "Proxy").leaf, "us-1")

    async def test_request_fields_map_explicitly(self):
        (r,) = await self.backend.get_recent_requests()
        self.assertEqual(r.id, 17)
        self.assertEqual(r.uploaded_bytes, 512)
        self.assertEqual(r.downloaded_bytes, 2048)
        self.assertEqual(r.started_at, 1700000000.5)
        self.assertEqual(r.policy_name, "us-1")
        self.assertEqual(r.url, "https://example.com/")
        self.assertEqual(r.app_name, "Safari")
        self.assertEqual(r.notes, ("[Rule] FINAL",))

    async def test_unexpected_shape_is_parse_error(self):
        with self.assertRaises(ST.ParseError) as ctx:
            await self.backend.get_active_connections()
        self.assertIn("/v1/requests/active", ctx.exception.source)

    async def test_dns_cache(self):
        (d,) = await self.backend.get_dns_cache()
        self.assertEqual(d.domain, "example.com")
        self.assertEqual(d.addresses, ("93.184.216.34",))
        self.assertEqual(d.expires_at, 1700000100.25)
        self.assertEqual(d.ttl_s(now=1700000000.0), 100)

    async def test_features(self):
        self.assertTrue(await self.backend.get_feature("mitm"))
        self.assertFalse(await self.backend.get_feature("capture"))
        await self.backend.set_feature("capture", True)
        self.assertEqual(self._last_body(), {"enabled": True})
        with self.assertRaises(ValueError):
            await self.backend.get_feature("rewrite")

    async def test_commands_post_expected_bodies(self):
        await self.backend.select_policy("Proxy", "DIRECT")
        self.assertEqual(self.api.seen[-1].url.path, "/v1/policy_groups/select")
        self.assertEqual(self._last_body(), {"group_name": "Proxy", "policy": "DIRECT"})

        await self.backend.set_outbound_mode(ST.OutboundMode.PROXY)
        self.assertEqual(self._last_body(), {"mode": "proxy"})

        await self.backend.kill_connection(17)
        self.assertEqual(self._last_body(), {"id": 17})

        await self.backend.test_policy("us-1")
        self.assertEqual(self._last_body(), {"policy_names": ["us-1"], "url": ST.DEFAULT_TEST_URL})

        self.assertEqual(await self.backend.test_policy_group("USGroup"), ["us-1"])

        await self.backend.flush_dns()
        self.assertEqual(self.api.seen[-1].url.path, "/v1/dns/flush")
        await self.backend.reload_config()
        self.assertEqual(self.api.seen[-1].url.path, "/v1/profiles/reload")


class TestResponseParsing(unittest.TestCase):
    def test_group_array_form_is_accepted(self):
        groups = ST._parse_group_mapping(
            [{"name": "Proxy", "policies": ["A", {"name": "B"}], "selected": "B"}], "test",
        )
        self.assertEqual(groups[0].member_names(), ["A", "B"])
        self.assertEqual(groups[0].selected, "B")

    def test_group_members_must_be_a_list(self):
        with self.assertRaises(ST.ParseError):
            ST._parse_group_mapping({"Proxy": "A,B"}, "test")

    def test_request_without_id(self):
        with self.assertRaises(ST.ParseError):
            ST._parse_requests({"requests": [{"URL": "x"}]}, "test")

    def test_unknown_outbound_mode(self):
        with self.assertRaises(ST.ParseError):
            ST._parse_outbound_mode({"mode": "global"}, "test")


if __name__ == "__main__":
    unittest.main()
