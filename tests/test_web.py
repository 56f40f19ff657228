import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

os.environ.setdefault("SVCPANEL_WEB_SECRET_PATH", str(Path(tempfile.mkdtemp()) / "web.secret"))

from fastapi.testclient import TestClient

from fakes import FakeHost, FakeUci

from svcpanel import web
from svcpanel.core import Config
from svcpanel.service_manager import ServiceManager


PAIRDROP = "/etc/init.d/pairdrop"
TAILSCALE = "/etc/init.d/tailscale"


def _host() -> FakeHost:
    uci = FakeUci(
        {
            "pairdrop": {"main": ("pairdrop", {"enabled": "1", "port": "3000"})},
            "plexmediaserver": {"main": ("plexmediaserver", {"enabled": "0"})},
            "tailscale": {"settings": ("settings", {"enable": "1", "port": "41641"})},
            "zerotier": {
                "global": ("zerotier", {"enabled": "1"}),
                "cfga00100": ("network", {"id": "0123456789abcdef"}),
            },
        }
    )
    host = FakeHost(uci=uci)
    host.on("/bin/mount", stdout="")
    host.on(PAIRDROP, "install", returncode=1, stderr="disk full")
    host.on(TAILSCALE, "restart")
    host.on("/usr/bin/pgrep", "-f", "Plex Media Server", stdout="10\n")
    return host


class WebTestCase(unittest.TestCase):
    auth_disabled = True

    def setUp(self) -> None:
        patches = [
            mock.patch.object(web, "AUTH_DISABLED", self.auth_disabled),
            mock.patch.object(web, "ALLOW_NON_ROOT", True),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)
        self.host = _host()
        self.client = TestClient(web.create_app(ServiceManager(Config(), host=self.host)))


class TestPages(WebTestCase):
    def test_index_lists_services(self) -> None:
        response = self.client.get("/")

        self.assertEqual(response.status_code, 200)
        for name in ("PairDrop", "Plex Media Server", "Tailscale", "ZeroTier"):
            self.assertIn(name, response.text)

    def test_service_page(self) -> None:
        response = self.client.get("/services/pairdrop")

        self.assertEqual(response.status_code, 200)
        self.assertIn("Not Installed", response.text)
        self.assertIn('data-action="install"', response.text)
        self.assertIn('name="main.port"', response.text)

    def test_plex_page_is_polled(self) -> None:
        response = self.client.get("/services/plexmediaserver")

        self.assertIn('data-poll="1"', response.text)
        self.assertIn('data-bind="btn-start"', response.text)
        self.assertIn('data-bind="log"', response.text)

    def test_unknown_service(self) -> None:
        self.assertEqual(self.client.get("/services/syncthing").status_code, 404)
        self.assertEqual(self.client.post("/api/services/syncthing/actions/start").status_code, 404)


class TestActions(WebTestCase):
    def test_action_api_returns_outcome(self) -> None:
        response = self.client.post("/api/services/pairdrop/actions/install")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertFalse(payload["ok"])
        self.assertIn("disk full", payload["message"])
        self.assertFalse(payload["reload"])

    def test_action_form_sets_notice(self) -> None:
        response = self.client.post("/services/pairdrop/actions/install", follow_redirects=False)

        self.assertEqual(response.status_code, 303)
        self.assertEqual(response.headers["location"], "/services/pairdrop")
        page = self.client.get("/services/pairdrop")
        self.assertIn("Action failed: disk full", page.text)
        self.assertIn("notice-error", page.text)

    def test_poll_api(self) -> None:
        response = self.client.get("/api/services/plexmediaserver/poll", params={"installed": "1", "root_exists": "1"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], {"text": "Running", "kind": "ok"})


class TestSave(WebTestCase):
    def test_invalid_network_id_rerenders_form(self) -> None:
        response = self.client.post(
            "/services/zerotier/save",
            data={"global.enabled": "1", "cfga00100.id": "12345", "cfga00100.allow_managed": "1"},
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("Must be a valid 16-character Network ID", response.text)
        self.assertIn('value="12345"', response.text)
        self.assertEqual(self.host.uci.option("zerotier", "cfga00100", "id"), "0123456789abcdef")

    def test_non_ascii_port_is_a_validation_error(self) -> None:
        response = self.client.post("/services/pairdrop/save", data={"main.enabled": "1", "main.port": "\u00b2"})

        self.assertEqual(response.status_code, 400)
        self.assertIn("Must be a valid port number (0-65535)", response.text)
        self.assertEqual(self.host.uci.option("pairdrop", "main", "port"), "3000")

    def test_save_runs_apply_action(self) -> None:
        response = self.client.post(
            "/services/tailscale/save",
            data={"settings.enable": "1", "settings.port": "41642", "settings.log_stderr": "1"},
            follow_redirects=False,
        )

        self.assertEqual(response.status_code, 303)
        self.assertEqual(self.host.uci.option("tailscale", "settings", "port"), "41642")
        self.assertTrue(self.host.ran(TAILSCALE, "restart"))

    def test_add_and_delete_section(self) -> None:
        response = self.client.post("/services/zerotier/sections/network/add", follow_redirects=False)
        self.assertEqual(response.status_code, 303)
        added = [name for name in self.host.uci.configs["zerotier"] if name not in {"global", "cfga00100"}]
        self.assertEqual(len(added), 1)

        response = self.client.post(f"/services/zerotier/sections/{added[0]}/delete", follow_redirects=False)
        self.assertEqual(response.status_code, 303)
        self.assertNotIn(added[0], self.host.uci.configs["zerotier"])

    def test_named_section_cannot_be_deleted(self) -> None:
        response = self.client.post("/services/zerotier/sections/global/delete", follow_redirects=False)

        self.assertEqual(response.status_code, 404)


class TestAuth(WebTestCase):
    auth_disabled = False

    def test_pages_redirect_to_login(self) -> None:
        response = self.client.get("/", follow_redirects=False)

        self.assertEqual(response.status_code, 303)
        self.assertEqual(response.headers["location"], "/login")

    def test_api_requires_session(self) -> None:
        response = self.client.post("/api/services/pairdrop/actions/install")

        self.assertEqual(response.status_code, 401)
        self.assertFalse(self.host.ran(PAIRDROP, "install"))

    def test_login_page_is_public(self) -> None:
        self.assertEqual(self.client.get("/login").status_code, 200)

    def test_bad_credentials(self) -> None:
        with mock.patch.object(web, "_authenticate", return_value=False):
            response = self.client.post("/login", data={"username": "root", "password": "nope"})

        self.assertEqual(response.status_code, 401)
        self.assertIn("Invalid credentials.", response.text)

    def test_login_grants_session(self) -> None:
        with mock.patch.object(web, "_authenticate", return_value=True):
            response = self.client.post("/login", data={"username": "root", "password": "pw"}, follow_redirects=False)

        self.assertEqual(response.status_code, 303)
        self.assertEqual(self.client.get("/", follow_redirects=False).status_code, 200)

    def test_refuses_non_root(self) -> None:
        with mock.patch.object(web, "ALLOW_NON_ROOT", False), mock.patch.object(web.os, "geteuid", return_value=1000):
            response = self.client.get("/login")

        self.assertEqual(response.status_code, 503)


if __name__ == "__main__":
    unittest.main()
