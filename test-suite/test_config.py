#!/usr/bin/env python3
import contextlib
import io
import logging
import os
import pathlib
import sys
import tempfile
import unittest
from unittest import mock

import yaml

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parent))

from fakes import ST  # noqa: E402


CONFIG_YAML = """
surge:
  http_api_host: 10.0.0.2
  http_api_port: 6170
  http_api_key: from-file
  cli_path: /opt/surge-cli
  launch_command: open -a Surge
ui:
  refresh_interval: 2
  max_requests: 50
"""

NO_ENV = {var: "" for var in ST.ENV_OVERRIDES}


class TestLoadConfig(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "surge-tui.yaml")
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(CONFIG_YAML)

    def tearDown(self):
        self._tmp.cleanup()

    def _write(self, text: str) -> str:
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(text)
        return self.path

    def test_file_values(self):
        cfg = ST.load_config(self.path, env={})
        self.assertEqual(cfg.surge.http_api_host, "10.0.0.2")
        self.assertEqual(cfg.surge.http_api_port, 6170)
        self.assertEqual(cfg.surge.http_api_key, "from-file")
        self.assertEqual(cfg.surge.cli_path, "/opt/surge-cli")
        self.assertEqual(cfg.surge.launch_command, ["open", "-a", "Surge"])
        self.assertEqual(cfg.ui.refresh_interval, 2.0)
        self.assertEqual(cfg.ui.max_requests, 50)
        # untouched defaults
        self.assertEqual(cfg.ui.health_interval, 10.0)
        self.assertEqual(cfg.path, self.path)

    def test_environment_wins(self):
        env = {"SURGE_HTTP_API_KEY": "from-env", "SURGE_HTTP_API_PORT": "7000", "SURGE_CLI_PATH": "/x/surge-cli"}
        cfg = ST.load_config(self.path, env=env)
        self.assertEqual(cfg.surge.http_api_key, "from-env")
        self.assertEqual(cfg.surge.http_api_port, 7000)
        self.assertEqual(cfg.surge.cli_path, "/x/surge-cli")
        self.assertEqual(cfg.surge.http_api_host, "10.0.0.2")

    def test_bad_env_port_is_ignored(self):
        with self.assertLogs("surgetui", level="WARNING"):
            cfg = ST.load_config(self.path, env={"SURGE_HTTP_API_PORT": "http"})
        self.assertEqual(cfg.surge.http_api_port, 6170)

    def test_defaults_when_nothing_found(self):
        with mock.patch.object(ST, "default_config_paths", return_value=[]):
            cfg = ST.load_config(None, env={})
        self.assertIsNone(cfg.path)
        self.assertEqual(cfg.surge.http_api_port, 6171)
        self.assertEqual(cfg.surge.cli_path, ST.DEFAULT_CLI_PATH)
        self.assertEqual(cfg.ui.max_requests, 100)

    def test_search_order(self):
        other = os.path.join(self._tmp.name, "config.yaml")
        with open(other, "w", encoding="utf-8") as f:
            f.write("surge:\n  http_api_key: second\n")
        with mock.patch.object(ST, "default_config_paths", return_value=[os.path.join(self._tmp.name, "missing.yaml"), other, self.path]):
            cfg = ST.load_config(None, env={})
        self.assertEqual(cfg.surge.http_api_key, "second")

    def test_missing_explicit_file(self):
        with self.assertRaises(FileNotFoundError):
            ST.load_config(os.path.join(self._tmp.name, "missing.yaml"), env={})

    def test_rejects_non_mapping(self):
        with self.assertRaises(ValueError):
            ST.load_config(self._write("- a\n- b\n"), env={})
        with self.assertRaises(ValueError):
            ST.load_config(self._write("surge: [1, 2]\n"), env={})

    def test_rejects_non_positive_intervals(self):
        with self.assertRaises(ValueError):
            ST.load_config(self._write("ui:\n  refresh_interval: 0\n"), env={})

    def test_rejects_port_out_of_range(self):
        with self.assertRaises(ValueError):
            ST.load_config(self._write("surge:\n  http_api_port: 70000\n"), env={})

    def test_example_config_loads(self):
        example = ST.dump_example_config()
        self.assertIn("surge", yaml.safe_load(example))
        cfg = ST.load_config(self._write(example), env={})
        self.assertEqual(cfg.surge.http_api_key, "your-secret-key")
        self.assertEqual(cfg.ui.test_url, ST.DEFAULT_TEST_URL)


class TestCmdCheck(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self._tmp.cleanup()

    def _check(self, text: str):
        path = os.path.join(self._tmp.name, "c.yaml")
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        out, err = io.StringIO(), io.StringIO()
        with mock.patch.dict(os.environ, NO_ENV), contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            rc = ST.cmd_check(path)
        return rc, out.getvalue(), err.getvalue()

    def test_ok(self):
        rc, out, _ = self._check("surge:\n  http_api_key: k\n")
        self.assertEqual(rc, 0)
        self.assertTrue(out.startswith("OK"))

    def test_missing_key(self):
        rc, _, err = self._check("surge:\n  http_api_host: 127.0.0.1\n")
        self.assertEqual(rc, 2)
        self.assertIn("http_api_key", err)

    def test_broken_yaml(self):
        rc, _, err = self._check("surge: [\n")
        self.assertEqual(rc, 2)
        self.assertIn("Config error", err)


class TestLogging(unittest.TestCase):
    def test_log_throttled_suppresses_repeats(self):
        key = f"test-{id(self)}"
        with self.assertLogs("surgetui", level="WARNING") as cm:
            for _ in range(5):
                ST.log_throttled(logging.WARNING, key, "backend down: %s", "refused", interval_s=60.0)
        self.assertEqual(cm.output, ["WARNING:surgetui:backend down: refused"])

    def test_setup_logging_writes_file(self):
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "logs", "surge-tui.log")
            root = logging.getLogger()
            saved = list(root.handlers), root.level
            try:
                ST.setup_logging(path, "DEBUG")
                ST.LOG.debug("hello")
                for h in root.handlers:
                    h.flush()
                with open(path, encoding="utf-8") as f:
                    self.assertIn("hello", f.read())
            finally:
                for h in list(root.handlers):
                    root.removeHandler(h)
                    h.close()
                for h in saved[0]:
                    root.addHandler(h)
                root.setLevel(saved[1])


if __name__ == "__main__":
    unittest.main()
