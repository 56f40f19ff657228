import unittest

from fakes import FakeHost, FakeUci

from svcpanel.forms import (
    ConfigWriteResult,
    Field,
    FormBinder,
    FormSchema,
    SaveResult,
    Section,
    validate_network_id,
    validate_port,
    validate_uinteger,
)
from svcpanel.system import CommandResult
from svcpanel.uci import UciError, UciStore


class TestValidators(unittest.TestCase):
    def test_port(self) -> None:
        self.assertIsNone(validate_port("0"))
        self.assertIsNone(validate_port("65535"))
        self.assertIsNotNone(validate_port("65536"))
        self.assertIsNotNone(validate_port("-1"))
        self.assertIsNotNone(validate_port("80a"))
        self.assertIsNotNone(validate_port("\u00b2"))
        self.assertIsNotNone(validate_port("\uff18\uff10"))

    def test_uinteger(self) -> None:
        self.assertIsNone(validate_uinteger("1000"))
        self.assertIsNotNone(validate_uinteger("1.5"))
        self.assertIsNotNone(validate_uinteger("\u0661\u0660\u0660\u0660"))
        self.assertIsNotNone(validate_uinteger("\u00b2"))

    def test_network_id(self) -> None:
        self.assertEqual(validate_network_id("12345"), "Must be a valid 16-character Network ID")
        self.assertIsNone(validate_network_id("0123456789abcdef"))
        self.assertIsNone(validate_network_id("0123456789ABCDEF"))
        self.assertIsNotNone(validate_network_id("0123456789abcdeg"))
        self.assertIsNotNone(validate_network_id(""))


class TestField(unittest.TestCase):
    def test_unknown_widget_rejected(self) -> None:
        with self.assertRaises(ValueError):
            Field("x", widget="slider")

    def test_flag_normalization(self) -> None:
        flag = Field("enabled", widget="flag")

        self.assertEqual(flag.normalize("1"), "1")
        self.assertEqual(flag.normalize("on"), "1")
        self.assertEqual(flag.normalize(None), "0")

    def test_required_value(self) -> None:
        field = Field("port", datatype="port", rmempty=False)

        self.assertEqual(field.validate(""), "Value is required")
        self.assertIsNone(field.validate("41641"))

    def test_flag_is_never_required(self) -> None:
        self.assertFalse(Field("enabled", widget="flag", rmempty=False).required)

    def test_stored_value(self) -> None:
        self.assertIsNone(Field("port").stored_value(""))
        self.assertEqual(Field("port", rmempty=False).stored_value(""), "")
        self.assertIsNone(Field("allow_dns", widget="flag").stored_value("0"))
        self.assertEqual(Field("allow_managed", widget="flag", default="1").stored_value("0"), "0")
        self.assertEqual(Field("enabled", widget="flag", rmempty=False).stored_value("0"), "0")

    def test_non_persisted_widgets(self) -> None:
        self.assertFalse(Field("_log", widget="textarea").persist)
        self.assertFalse(Field("_go", widget="button").persist)
        self.assertFalse(Field("_info", widget="dummy").persist)


class TestSaveResult(unittest.TestCase):
    def test_partial_write(self) -> None:
        write = ConfigWriteResult(field="main.enabled", value="1", persisted=True, side_effect_applied=False, error="boom")
        result = SaveResult(writes=[write])

        self.assertTrue(write.partial)
        self.assertFalse(result.ok)
        self.assertTrue(result.changed)
        self.assertIn("saved, but applying it failed (boom)", result.summary())

    def test_no_changes(self) -> None:
        self.assertEqual(SaveResult().summary(), "No changes.")


def _schema(on_write=None, prepare=None) -> FormSchema:
    return FormSchema(
        config="demo",
        title="Demo",
        sections=[
            Section(
                name="main",
                type="demo",
                fields=[
                    Field("enabled", widget="flag", rmempty=False, on_write=on_write),
                    Field("port", datatype="port", default="3000"),
                    Field("root"),
                    Field("library"),
                    Field("_info", widget="dummy", default="hello"),
                ],
            ),
            Section(
                name="network",
                type="network",
                kind="typed",
                addremove=True,
                fields=[
                    Field("id", rmempty=False, validator=validate_network_id),
                    Field("allow_managed", widget="flag", default="1"),
                ],
            ),
        ],
        prepare=prepare,
    )


class TestFormBinder(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.uci = FakeUci(
            {
                "demo": {
                    "main": ("demo", {"enabled": "0", "port": "3000"}),
                    "cfga00010": ("network", {"id": "0123456789abcdef"}),
                }
            }
        )
        self.host = FakeHost(uci=self.uci)
        self.store = UciStore(self.host)

    async def test_values_use_defaults(self) -> None:
        binder = FormBinder(_schema(), self.store)
        values = binder.values(await binder.load())

        self.assertEqual(values["main"], {"enabled": "0", "port": "3000", "root": "", "library": ""})
        self.assertEqual(values["cfga00010"], {"id": "0123456789abcdef", "allow_managed": "1"})

    async def test_bind_marks_anonymous_sections(self) -> None:
        binder = FormBinder(_schema(), self.store)
        bound = binder.bind(await binder.load(), {"main.port": "99999"}, {"main.port": "bad"})

        self.assertEqual([item.name for item in bound], ["main", "cfga00010"])
        self.assertEqual(bound[0].values["port"], "99999")
        self.assertEqual(bound[0].errors, {"port": "bad"})
        self.assertTrue(bound[1].anonymous)

    async def test_validation_blocks_every_write(self) -> None:
        binder = FormBinder(_schema(), self.store)

        result = await binder.save(
            {"main.enabled": "1", "main.port": "70000", "cfga00010.id": "12345"},
        )

        self.assertEqual(
            result.errors,
            {
                "main.port": "Must be a valid port number (0-65535)",
                "cfga00010.id": "Must be a valid 16-character Network ID",
            },
        )
        self.assertEqual(self.uci.option("demo", "main", "enabled"), "0")
        self.assertEqual(self.uci.commits, [])

    async def test_only_changed_options_written(self) -> None:
        binder = FormBinder(_schema(), self.store)

        result = await binder.save(
            {
                "main.enabled": "0",
                "main.port": "3000",
                "main.root": "/mnt/sda1",
                "cfga00010.id": "0123456789abcdef",
                "cfga00010.allow_managed": "1",
            }
        )

        self.assertTrue(result.ok)
        self.assertEqual([write.field for write in result.writes], ["main.root"])
        self.assertEqual(self.uci.option("demo", "main", "root"), "/mnt/sda1")
        self.assertEqual(self.uci.commits, ["demo"])

    async def test_absent_checkbox_means_off(self) -> None:
        self.uci.configs["demo"]["main"][1]["enabled"] = "1"
        binder = FormBinder(_schema(), self.store)

        result = await binder.save({"main.port": "3000", "cfga00010.id": "0123456789abcdef", "cfga00010.allow_managed": "1"})

        self.assertTrue(result.ok)
        self.assertEqual(self.uci.option("demo", "main", "enabled"), "0")

    async def test_empty_optional_value_deletes_option(self) -> None:
        self.uci.configs["demo"]["main"][1]["root"] = "/mnt/old"
        binder = FormBinder(_schema(), self.store)

        await binder.save({"main.root": ""}, partial=True)

        self.assertIsNone(self.uci.option("demo", "main", "root"))

    async def test_side_effect_failure_is_partial(self) -> None:
        calls: list[tuple[str, str]] = []

        async def apply(section: str, value: str) -> CommandResult:
            calls.append((section, value))
            return CommandResult(returncode=1, stdout="", stderr="start failed")

        binder = FormBinder(_schema(on_write=apply), self.store)

        result = await binder.save({"main.enabled": "1"}, partial=True)

        self.assertEqual(calls, [("main", "1")])
        self.assertEqual(len(result.writes), 1)
        write = result.writes[0]
        self.assertTrue(write.persisted)
        self.assertFalse(write.side_effect_applied)
        self.assertEqual(write.error, "start failed")
        self.assertEqual(self.uci.option("demo", "main", "enabled"), "1")

    async def test_side_effect_exception_is_partial(self) -> None:
        async def apply(section: str, value: str):
            raise RuntimeError("no such device")

        binder = FormBinder(_schema(on_write=apply), self.store)

        result = await binder.save({"main.enabled": "1"}, partial=True)

        self.assertTrue(result.writes[0].partial)
        self.assertEqual(result.writes[0].error, "no such device")

    async def test_commit_failure_persists_nothing(self) -> None:
        calls: list[str] = []

        async def apply(section: str, value: str) -> CommandResult:
            calls.append(value)
            return CommandResult(returncode=0, stdout="")

        self.uci.fail_commit = True
        binder = FormBinder(_schema(on_write=apply), self.store)

        result = await binder.save({"main.enabled": "1"}, partial=True)

        self.assertFalse(result.writes[0].persisted)
        self.assertIn("I/O error", result.writes[0].error)
        self.assertEqual(calls, [])

    async def test_commit_failure_reverts_staged_changes(self) -> None:
        self.uci.fail_commit = True
        binder = FormBinder(_schema(), self.store)

        result = await binder.save({"main.port": "4000"}, partial=True)

        self.assertFalse(result.writes[0].persisted)
        self.assertIn(["uci", "revert", "demo"], self.host.calls)
        self.assertEqual(self.uci.reverts, ["demo"])
        values = binder.values(await binder.load())
        self.assertEqual(values["main"]["port"], "3000")

    async def test_failed_section_add_is_reverted(self) -> None:
        self.uci.fail_commit = True
        binder = FormBinder(_schema(), self.store)

        with self.assertRaises(UciError):
            await binder.add_section("network")

        self.assertEqual(self.uci.reverts, ["demo"])
        self.assertEqual(sorted(self.uci.configs["demo"]), ["cfga00010", "main"])

    async def test_partial_save_rejects_unknown_keys(self) -> None:
        binder = FormBinder(_schema(), self.store)

        result = await binder.save({"main.bogus": "1", "nosuch.port": "80", "main.port": "8080"}, partial=True)

        self.assertEqual(result.errors, {"main.bogus": "Unknown option", "nosuch.port": "Unknown option"})
        self.assertEqual(self.uci.option("demo", "main", "port"), "3000")
        self.assertEqual(self.uci.commits, [])

    async def test_bind_unchecked_flag_after_failed_save(self) -> None:
        self.uci.configs["demo"]["main"][1]["enabled"] = "1"
        binder = FormBinder(_schema(), self.store)
        submitted = {"main.port": "99999", "cfga00010.id": "0123456789abcdef"}

        result = await binder.save(submitted)
        bound = binder.bind(await binder.load(), submitted, result.errors)

        self.assertIn("main.port", result.errors)
        self.assertEqual(bound[0].values["enabled"], "0")
        self.assertEqual(bound[1].values["allow_managed"], "0")

    async def test_prepare_hook_runs_before_validation(self) -> None:
        def fill(data: dict) -> None:
            if data.get("main.root") and not data.get("main.library"):
                data["main.library"] = data["main.root"] + "/library"

        binder = FormBinder(_schema(prepare=fill), self.store)

        await binder.save({"main.root": "/mnt/sda1", "main.library": ""}, partial=True)

        self.assertEqual(self.uci.option("demo", "main", "library"), "/mnt/sda1/library")

    async def test_missing_named_section_is_created(self) -> None:
        del self.uci.configs["demo"]["main"]
        binder = FormBinder(_schema(), self.store)

        await binder.save({"main.port": "8080"}, partial=True)

        self.assertEqual(self.uci.configs["demo"]["main"][0], "demo")
        self.assertEqual(self.uci.option("demo", "main", "port"), "8080")

    async def test_add_and_remove_typed_section(self) -> None:
        binder = FormBinder(_schema(), self.store)

        name = await binder.add_section("network")
        self.assertIn(name, self.uci.configs["demo"])

        await binder.remove_section(name)
        self.assertNotIn(name, self.uci.configs["demo"])
        self.assertEqual(self.uci.commits, ["demo", "demo"])

    async def test_named_section_cannot_be_removed(self) -> None:
        binder = FormBinder(_schema(), self.store)

        with self.assertRaises(KeyError):
            await binder.remove_section("main")
        with self.assertRaises(KeyError):
            await binder.add_section("demo")


if __name__ == "__main__":
    unittest.main()
