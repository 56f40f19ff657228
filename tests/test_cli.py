import io
import os
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

from fakes import FakeHost, FakeUci

from svcpanel import cli
from svcpanel.service_manager import ServiceManager


class TestCli(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.config_path = Path(self.temp_dir.name) / "svcpanel.toml"

        uci = FakeUci(
            {
                "zerotier": {
                    "global": ("zerotier", {"enabled": "1"}),
                    "cfga00100": ("network", {"id": "0123456789abcdef"}),
                },
                "tailscale": {"settings": ("settings", {"enable": "1", "port": "41641"})},
            }
        )
        self.host = FakeHost(uci=uci)
        self.host.on("/etc/init.d/pairdrop", "install", returncode=1, stderr="disk full")

        patches = [
            mock.patch.dict(os.environ, {"SVCPANEL_ALLOW_NON_ROOT": "1"}),
            mock.patch.object(cli, "setup_logging"),
            mock.patch.object(cli, "ServiceManager", lambda config: ServiceManager(config, host=self.host)),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)

    def _run(self, *argv: str) -> tuple[int, str]:
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            code = cli.main(["--config", str(self.config_path), *argv])
        return code, buffer.getvalue()

    def test_init_refuses_overwrite(self) -> None:
        code, _ = self._run("init")
        self.assertEqual(code, 0)
        self.assertTrue(self.config_path.exists())

        code, output = self._run("init")
        self.assertEqual(code, 1)
        self.assertIn("--force", output)

        code, _ = self._run("init", "--force")
        self.assertEqual(code, 0)

    def test_show_prints_toml(self) -> None:
        code, output = self._run("show")

        self.assertEqual(code, 0)
        self.assertIn("[web]", output)
        self.assertIn("port = 8088", output)

    def test_services_get(self) -> None:
        code, output = self._run("services", "get", "zerotier")

        self.assertEqual(code, 0)
        self.assertIn("global.enabled=1", output)
        self.assertIn("cfga00100.id=0123456789abcdef", output)
        self.assertIn("cfga00100.allow_managed=1", output)

    def test_failed_action_exits_nonzero(self) -> None:
        code, output = self._run("services", "action", "pairdrop", "install")

        self.assertEqual(code, 1)
        self.assertIn("Action failed: disk full", output)

    def test_set_rejects_invalid_value(self) -> None:
        code, output = self._run("services", "set", "tailscale", "settings", "port", "70000")

        self.assertEqual(code, 1)
        self.assertIn("settings.port: Must be a valid port number (0-65535)", output)
        self.assertEqual(self.host.uci.option("tailscale", "settings", "port"), "41641")

    def test_set_rejects_unknown_option(self) -> None:
        code, output = self._run("services", "set", "tailscale", "settings", "bogus", "1")

        self.assertEqual(code, 1)
        self.assertIn("settings.bogus: Unknown option", output)
        self.assertEqual(self.host.uci.commits, [])

    def test_watch_without_polling(self) -> None:
        code, output = self._run("services", "watch", "zerotier", "--count", "1")

        self.assertEqual(code, 1)
        self.assertIn("no live status updates", output)

    def test_requires_root(self) -> None:
        with mock.patch.dict(os.environ, {"SVCPANEL_ALLOW_NON_ROOT": "0"}), mock.patch.object(
            cli.os, "geteuid", return_value=1000
        ):
            code, output = self._run("services", "list")

        self.assertEqual(code, 1)
        self.assertIn("must be run as root", output)


if __name__ == "__main__":
    unittest.main()
