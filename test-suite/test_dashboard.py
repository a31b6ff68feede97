#!/usr/bin/env python3
import asyncio
import contextlib
import io
import pathlib
import sys
import unittest
from unittest import mock

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parent))

from fakes import ST, make_client  # noqa: E402


class _Clock:
    def __init__(self, t: float = 0.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


def make_dashboard(clock=None, **kw):
    clock = clock or _Clock()
    client, http, cli, system = make_client(clock=clock, health_interval=kw.pop("health_interval", 10.0))
    dash = ST.Dashboard(client, refresh_interval=kw.pop("refresh_interval", 1.0), clock=clock)
    return dash, http, cli, system


async def settle(dash, rounds: int = 200):
    for _ in range(rounds):
        await asyncio.sleep(0)
        dash.pump()
        if not dash.tests.in_flight:
            return


class TestDashboardLoop(unittest.IsolatedAsyncioTestCase):
    async def test_start_selects_and_refreshes(self):
        dash, _http, _cli, _sys = make_dashboard()
        await dash.start()
        self.assertEqual(dash.snapshot.mode, ST.BackendMode.HTTP_API)
        self.assertEqual(len(dash.snapshot.policies), 2)
        self.assertEqual(dash.last_refresh, 0.0)

    async def test_refresh_only_when_idle_for_interval(self):
        clock = _Clock()
        dash, http, _cli, _sys = make_dashboard(clock)
        await dash.start()
        refreshes = lambda: http.calls.count("list_policies")  # noqa: E731
        self.assertEqual(refreshes(), 1)

        clock.t = 0.5
        self.assertFalse(await dash.step())
        self.assertEqual(refreshes(), 1)

        clock.t = 1.0
        self.assertTrue(await dash.step())
        self.assertEqual(refreshes(), 2)

        # a key press postpones the next refresh
        clock.t = 1.5
        await dash.step(had_input=True)
        clock.t = 2.2
        await dash.step()
        self.assertEqual(refreshes(), 2)
        clock.t = 2.6
        await dash.step()
        self.assertEqual(refreshes(), 3)

    async def test_mode_change_refreshes_immediately(self):
        clock = _Clock()
        dash, http, _cli, _sys = make_dashboard(clock)
        await dash.start()
        http.error = ST.UnavailableError("HTTP GET /v1/outbound timed out after 3s")
        dash.client.suspect = True
        clock.t = 0.1
        self.assertTrue(await dash.step())
        self.assertEqual(dash.snapshot.mode, ST.BackendMode.COMMAND_LINE)
        self.assertEqual(dash.snapshot.alert.kind, ST.AlertKind.API_UNAVAILABLE)

    async def test_no_backend_is_reported_once(self):
        clock = _Clock()
        dash, http, cli, _sys = make_dashboard(clock)
        http.error = ST.UnavailableError("connection refused")
        cli.error = ST.UnavailableError("surge-cli not found")
        await dash.start()
        self.assertEqual(dash.snapshot.mode, ST.BackendMode.SYSTEM_PROBE)
        self.assertEqual(len(dash.notifications), 1)
        self.assertEqual(dash.notifications[0].level, "warning")

        for t in (10.0, 20.0, 30.0):
            clock.t = t
            await dash.step()
        self.assertEqual(len(dash.notifications), 1)

    async def test_notifications_are_bounded(self):
        dash, _http, _cli, _sys = make_dashboard()
        for i in range(60):
            dash.notify(f"n{i}")
        self.assertEqual(len(dash.notifications), 50)
        self.assertEqual(dash.notifications[0].message, "n10")


class TestDashboardLatencyTest(unittest.IsolatedAsyncioTestCase):
    async def test_completed_test_survives_refresh(self):
        dash, _http, _cli, _sys = make_dashboard()
        await dash.start()

        self.assertTrue(dash.run_latency_test("Proxy"))
        await settle(dash)

        self.assertEqual(dash.snapshot.policy("A").latency_ms, 120)
        self.assertEqual(dash.snapshot.group("Proxy").available, ("A",))
        self.assertEqual(dash.notifications[-1].level, "success")

        await dash.refresh()
        self.assertEqual(dash.snapshot.policy("A").latency_ms, 120)
        self.assertFalse(dash.snapshot.policy("B").alive)

    async def test_second_trigger_is_ignored_with_a_notice(self):
        dash, _http, cli, _sys = make_dashboard()
        await dash.start()
        cli.test_gate = asyncio.Event()

        self.assertTrue(dash.run_latency_test("Proxy"))
        self.assertFalse(dash.run_latency_test("Proxy"))
        self.assertIn("already running", dash.notifications[-1].message)

        cli.test_gate.set()
        await settle(dash)
        self.assertFalse(dash.tests.in_flight)

    async def test_failed_test_marks_the_client_suspect(self):
        clock = _Clock()
        dash, _http, cli, _sys = make_dashboard(clock)
        await dash.start()
        cli.test_error = ST.UnavailableError("surge-cli test-all-policies timed out after 60s")

        dash.run_latency_test("Proxy")
        await settle(dash)

        self.assertEqual(dash.notifications[-1].level, "error")
        self.assertTrue(dash.client.suspect)
        self.assertIn("timed out", dash.client.last_error)
        # re-selection runs on the next step without waiting for the health interval
        self.assertTrue(dash.client.reselect_due(clock.t))

    async def test_unsupported_in_probe_mode(self):
        dash, _http, _cli, system = make_dashboard()
        system.running = False
        await dash.start()
        self.assertFalse(dash.run_latency_test("Proxy"))
        self.assertEqual(dash.notifications[-1].level, "warning")
        self.assertFalse(dash.tests.in_flight)


class TestDashboardActions(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.dash, self.http, self.cli, self.system = make_dashboard()
        await self.dash.start()

    async def test_cycle_outbound_mode(self):
        await self.dash.cycle_outbound_mode()
        self.assertEqual(self.http.outbound, ST.OutboundMode.DIRECT)
        self.assertEqual(self.dash.snapshot.outbound_mode, ST.OutboundMode.DIRECT)

    async def test_toggle_feature(self):
        await self.dash.toggle_feature("mitm")
        self.assertTrue(self.http.features["mitm"])
        self.assertTrue(self.dash.snapshot.features.mitm)

    async def test_select_policy(self):
        await self.dash.select_policy("Proxy", "B")
        self.assertEqual(self.dash.snapshot.group("Proxy").selected, "B")

    async def test_kill_connection(self):
        rec = self.dash.snapshot.active_connections[0]
        await self.dash.kill_connection(rec)
        self.assertEqual(self.dash.snapshot.active_connections, ())

    async def test_flush_dns(self):
        await self.dash.flush_dns()
        self.assertEqual(self.dash.snapshot.dns_records, ())

    async def test_action_failure_becomes_notification(self):
        self.http.error = ST.UnavailableError("connection reset")
        await self.dash.flush_dns()
        self.assertEqual(self.dash.notifications[-1].level, "error")
        self.assertIn("connection reset", self.dash.notifications[-1].message)

    async def test_start_surge(self):
        self.system.running = False
        await self.dash.start()
        self.system.appear_after = 2
        await self.dash.start_surge()
        self.assertEqual(self.dash.snapshot.mode, ST.BackendMode.HTTP_API)

    async def test_reload_config(self):
        await self.dash.reload_config()
        self.assertIn("reload_config", self.cli.calls)
        self.assertEqual(self.dash.notifications[-1].message, "Profile reloaded")


class TestViews(unittest.IsolatedAsyncioTestCase):
    async def test_policies_view_shows_groups_and_members(self):
        dash, http, _cli, _sys = make_dashboard()
        http.groups.append(ST.PolicyGroup("Loop", (ST.PolicyMember("Loop", is_group=True),), "Loop"))
        await dash.start()

        view = ST.PolicyGroupsList()
        view.update(dash)
        self.assertEqual(len(view.walker), 2)
        self.assertEqual(view.focused_item().name, "Proxy")

        view.enter_group("Proxy")
        view.update(dash)
        self.assertIsInstance(view.focused_item(), ST.PolicyMember)
        self.assertEqual(view.leave_group(), "Proxy")

    async def test_views_tolerate_unknown_fields(self):
        dash, http, _cli, _sys = make_dashboard()
        http.error = ST.UnavailableError("down")
        await dash.start()
        for view in (ST.PolicyGroupsList(), ST.RequestsView("active_connections"), ST.DnsList(), ST.OverviewView()):
            view.update(dash)

    async def test_status_line(self):
        dash, http, _cli, _sys = make_dashboard()
        http.error = ST.UnauthorizedError("Invalid API key")
        await dash.start()
        line = ST.status_line(dash)
        self.assertIn("surge-cli", line)
        self.assertIn("Invalid API key", line)
        self.assertIn("R to reload", line)


class TestFormatting(unittest.TestCase):
    def test_latency_bands(self):
        self.assertEqual(ST.latency_attr(99), "lat_good")
        self.assertEqual(ST.latency_attr(100), "lat_warn")
        self.assertEqual(ST.latency_attr(299), "lat_warn")
        self.assertEqual(ST.latency_attr(300), "lat_bad")

    def test_fmt_bytes(self):
        self.assertEqual(ST.fmt_bytes(512), "512B")
        self.assertEqual(ST.fmt_bytes(2048), "2.0K")
        self.assertEqual(ST.fmt_bytes(5 * 1024 * 1024), "5.0M")


class TestHeadless(unittest.IsolatedAsyncioTestCase):
    async def test_run_once_prints_status(self):
        dash, http, _cli, _sys = make_dashboard()
        out = io.StringIO()
        with mock.patch.object(ST.Dashboard, "from_config", return_value=dash), contextlib.redirect_stdout(out):
            rc = await ST.run_headless(ST.AppConfig(), once=True)
        self.assertEqual(rc, 0)
        self.assertIn("[HTTP API]", out.getvalue())
        self.assertTrue(http.closed)


if __name__ == "__main__":
    unittest.main()
