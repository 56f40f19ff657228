"""Form schemas bound to UCI records.

A ``FormSchema`` declares the sections and fields of one service's config.
``FormBinder`` reads current values from the store, validates submitted
values, writes changed options back and then runs each changed field's
``on_write`` side effect. Persisting and the side effect are separate steps:
the result for every changed field says whether each step succeeded, and a
side effect that fails after a successful commit is reported, not undone.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Mapping, Sequence, Union

from svcpanel.system import CommandResult
from svcpanel.uci import UciError, UciSection, UciStore


WIDGETS = frozenset({"flag", "value", "password", "list", "textarea", "dummy", "button"})
FLAG_TRUE = frozenset({"1", "on", "true", "yes"})
NETWORK_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{16}$")
DIGITS_PATTERN = re.compile(r"[0-9]+")

SideEffectResult = Union[CommandResult, Sequence[CommandResult]]
SideEffect = Callable[[str, str], Awaitable[SideEffectResult]]
Validator = Callable[[str], Union[str, None]]

logger = logging.getLogger(__name__)


def validate_port(value: str) -> str | None:
    if not DIGITS_PATTERN.fullmatch(value) or int(value) > 65535:
        return "Must be a valid port number (0-65535)"
    return None


def validate_uinteger(value: str) -> str | None:
    if not DIGITS_PATTERN.fullmatch(value):
        return "Must be a non-negative integer"
    return None


def validate_network_id(value: str) -> str | None:
    if not value or not NETWORK_ID_PATTERN.match(value):
        return "Must be a valid 16-character Network ID"
    return None


DATATYPES: Dict[str, Validator] = {
    "port": validate_port,
    "uinteger": validate_uinteger,
}


@dataclass
class Field:
    name: str
    label: str = ""
    widget: str = "value"
    description: str = ""
    default: str | None = None
    placeholder: str = ""
    datatype: str | None = None
    validator: Validator | None = None
    rmempty: bool = True
    tab: str | None = None
    choices: tuple = ()
    on_write: SideEffect | None = None
    action: str | None = None
    button_label: str = ""
    button_style: str = "apply"
    disabled: bool = False
    confirm: str | None = None
    rows: int = 0
    bind: str | None = None
    raw_html: bool = False

    def __post_init__(self) -> None:
        if self.widget not in WIDGETS:
            raise ValueError(f"Unknown widget: {self.widget}")
        if self.datatype is not None and self.datatype not in DATATYPES:
            raise ValueError(f"Unknown datatype: {self.datatype}")

    @property
    def persist(self) -> bool:
        return self.widget not in {"dummy", "button", "textarea"}

    @property
    def required(self) -> bool:
        return not self.rmempty and self.widget != "flag"

    def normalize(self, raw: str | None) -> str:
        if self.widget == "flag":
            return "1" if (raw or "").strip().lower() in FLAG_TRUE else "0"
        return (raw or "").strip()

    def validate(self, value: str) -> str | None:
        if self.widget == "flag":
            return None
        if not value:
            if self.required:
                return self.validator(value) if self.validator else "Value is required"
            return None
        if self.choices and value not in {choice for choice, _ in self.choices}:
            return "Invalid choice"
        if self.datatype:
            error = DATATYPES[self.datatype](value)
            if error:
                return error
        if self.validator:
            return self.validator(value)
        return None

    def stored_value(self, value: str) -> str | None:
        """The option value to persist, ``None`` meaning the option is removed."""

        if self.widget == "flag":
            if self.rmempty and value == (self.default or "0"):
                return None
            return value
        if not value and self.rmempty:
            return None
        return value


@dataclass
class Section:
    name: str
    type: str
    title: str = ""
    description: str = ""
    fields: List[Field] = field(default_factory=list)
    kind: str = "named"
    tabs: tuple = ()
    addremove: bool = False

    def instances(self, record: Mapping[str, UciSection]) -> list[str]:
        if self.kind == "typed":
            return [name for name, section in record.items() if section.type == self.type]
        return [self.name]

    def persisted_fields(self) -> list[Field]:
        return [item for item in self.fields if item.persist]

    def tab_fields(self, tab: str | None) -> list[Field]:
        return [item for item in self.fields if item.tab == tab]


@dataclass
class FormSchema:
    config: str
    title: str
    description: str = ""
    sections: List[Section] = field(default_factory=list)
    prepare: Callable[[Dict[str, str]], None] | None = None

    def section(self, name: str) -> Section:
        for section in self.sections:
            if section.name == name:
                return section
        raise KeyError(name)

    def typed_section(self, section_type: str) -> Section:
        for section in self.sections:
            if section.kind == "typed" and section.type == section_type:
                return section
        raise KeyError(section_type)


@dataclass
class ConfigWriteResult:
    field: str
    value: str | None
    persisted: bool
    side_effect_applied: bool = True
    error: str | None = None

    @property
    def partial(self) -> bool:
        return self.persisted and not self.side_effect_applied


@dataclass
class SaveResult:
    errors: Dict[str, str] = field(default_factory=dict)
    writes: List[ConfigWriteResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and all(item.persisted and item.side_effect_applied for item in self.writes)

    @property
    def changed(self) -> bool:
        return any(item.persisted for item in self.writes)

    def summary(self) -> str:
        if self.errors:
            return "Validation failed:\n" + "\n".join(f"{key}: {message}" for key, message in self.errors.items())
        if not self.writes:
            return "No changes."
        lines: list[str] = []
        for item in self.writes:
            if not item.persisted:
                lines.append(f"{item.field}: not saved ({item.error})")
            elif not item.side_effect_applied:
                lines.append(f"{item.field}: saved, but applying it failed ({item.error})")
        return "\n".join(lines) or "Configuration saved."


@dataclass
class BoundSection:
    section: Section
    name: str
    values: Dict[str, str]
    errors: Dict[str, str]
    anonymous: bool = False


def _side_effect_error(results: Sequence[CommandResult]) -> str | None:
    for result in results:
        if result.returncode != 0:
            return result.text() or f"exit code {result.returncode}"
    return None


class FormBinder:
    def __init__(self, schema: FormSchema, store: UciStore) -> None:
        self.schema = schema
        self.store = store

    async def load(self) -> Dict[str, UciSection]:
        try:
            return await self.store.load(self.schema.config)
        except UciError as exc:
            logger.warning("Unable to load %s: %s", self.schema.config, exc)
            return {}

    def values(self, record: Mapping[str, UciSection]) -> Dict[str, Dict[str, str]]:
        values: Dict[str, Dict[str, str]] = {}
        for section in self.schema.sections:
            for name in section.instances(record):
                current = record.get(name)
                section_values: Dict[str, str] = {}
                for item in section.persisted_fields():
                    stored = current.get(item.name) if current else None
                    if stored is None:
                        stored = item.default if item.default is not None else ("0" if item.widget == "flag" else "")
                    section_values[item.name] = stored
                values[name] = section_values
        return values

    def bind(
        self,
        record: Mapping[str, UciSection],
        submitted: Mapping[str, str] | None = None,
        errors: Mapping[str, str] | None = None,
    ) -> list[BoundSection]:
        values = self.values(record)
        errors = errors or {}
        bound: list[BoundSection] = []
        for section in self.schema.sections:
            for name in section.instances(record):
                section_values = dict(values.get(name, {}))
                if submitted is not None:
                    for item in section.persisted_fields():
                        key = f"{name}.{item.name}"
                        if key in submitted:
                            section_values[item.name] = submitted[key]
                        elif item.widget == "flag":
                            section_values[item.name] = "0"
                section_errors = {
                    item.name: errors[f"{name}.{item.name}"]
                    for item in section.fields
                    if f"{name}.{item.name}" in errors
                }
                current = record.get(name)
                bound.append(
                    BoundSection(
                        section=section,
                        name=name,
                        values=section_values,
                        errors=section_errors,
                        anonymous=bool(current and current.anonymous),
                    )
                )
        return bound

    def _collect(
        self,
        record: Mapping[str, UciSection],
        submitted: Mapping[str, str],
        partial: bool,
    ) -> list[tuple[Section, str, Field, str]]:
        entries: list[tuple[Section, str, Field, str]] = []
        for section in self.schema.sections:
            for name in section.instances(record):
                for item in section.persisted_fields():
                    key = f"{name}.{item.name}"
                    if key not in submitted:
                        if partial or item.widget != "flag":
                            continue
                    entries.append((section, name, item, item.normalize(submitted.get(key))))
        return entries

    def validate(self, submitted: Mapping[str, str], record: Mapping[str, UciSection] | None = None) -> Dict[str, str]:
        record = record or {}
        errors: Dict[str, str] = {}
        for _section, name, item, value in self._collect(record, submitted, partial=True):
            message = item.validate(value)
            if message:
                errors[f"{name}.{item.name}"] = message
        return errors

    async def save(self, submitted: Mapping[str, str], partial: bool = False) -> SaveResult:
        data = dict(submitted)
        if self.schema.prepare:
            self.schema.prepare(data)
        record = await self.load()
        entries = self._collect(record, data, partial)

        errors: Dict[str, str] = {}
        if partial:
            known = {f"{name}.{item.name}" for _section, name, item, _value in entries}
            for key in data:
                if key not in known:
                    errors[key] = "Unknown option"
        for _section, name, item, value in entries:
            message = item.validate(value)
            if message:
                errors[f"{name}.{item.name}"] = message
        if errors:
            return SaveResult(errors=errors)

        changes: list[tuple[Section, str, Field, str, str | None]] = []
        for section, name, item, value in entries:
            current = record.get(name)
            existing = current.get(item.name) if current else None
            desired = item.stored_value(value)
            if desired != existing:
                changes.append((section, name, item, value, desired))
        if not changes:
            return SaveResult()

        config = self.schema.config
        writes: list[ConfigWriteResult] = []
        try:
            for section, name, item, _value, desired in changes:
                if name not in record and section.kind == "named":
                    await self.store.set_section(config, name, section.type)
                    record = {**record, name: UciSection(name=name, type=section.type)}
                if desired is None:
                    await self.store.delete(config, name, item.name)
                else:
                    await self.store.set(config, name, item.name, desired)
            await self.store.commit(config)
        except UciError as exc:
            logger.warning("Saving %s failed: %s", config, exc)
            await self._revert(config)
            return SaveResult(
                writes=[
                    ConfigWriteResult(field=f"{name}.{item.name}", value=desired, persisted=False, error=str(exc))
                    for _section, name, item, _value, desired in changes
                ]
            )

        for _section, name, item, value, desired in changes:
            write = ConfigWriteResult(field=f"{name}.{item.name}", value=desired, persisted=True)
            if item.on_write is not None:
                try:
                    outcome = await item.on_write(name, value)
                except Exception as exc:
                    logger.exception("Side effect for %s.%s failed", config, write.field)
                    write.side_effect_applied = False
                    write.error = str(exc)
                else:
                    results = [outcome] if isinstance(outcome, CommandResult) else list(outcome)
                    error = _side_effect_error(results)
                    if error:
                        logger.warning("%s.%s saved but side effect failed: %s", config, write.field, error)
                        write.side_effect_applied = False
                        write.error = error
            writes.append(write)
        return SaveResult(writes=writes)

    async def _revert(self, config: str) -> None:
        try:
            await self.store.revert(config)
        except UciError as exc:
            logger.warning("Reverting staged changes to %s failed: %s", config, exc)

    async def add_section(self, section_type: str) -> str:
        section = self.schema.typed_section(section_type)
        if not section.addremove:
            raise KeyError(section_type)
        try:
            name = await self.store.add(self.schema.config, section.type)
            await self.store.commit(self.schema.config)
        except UciError:
            await self._revert(self.schema.config)
            raise
        return name

    async def remove_section(self, name: str) -> None:
        record = await self.load()
        current = record.get(name)
        if current is None:
            raise KeyError(name)
        section = self.schema.typed_section(current.type)
        if not section.addremove:
            raise KeyError(name)
        try:
            await self.store.delete(self.schema.config, name)
            await self.store.commit(self.schema.config)
        except UciError:
            await self._revert(self.schema.config)
            raise
