from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping

from svcpanel import pairdrop, plexmediaserver, tailscale, zerotier
from svcpanel.core import Config
from svcpanel.dispatch import ActionOutcome, ControlScript
from svcpanel.forms import BoundSection, FormBinder, FormSchema, SaveResult
from svcpanel.poll import Patch, Poller
from svcpanel.probes import ServiceStatus, ServiceStatusProvider, gather
from svcpanel.services import ServiceContext, ServiceSpec, ServiceView
from svcpanel.system import Host
from svcpanel.uci import UciError, UciSection, UciStore


SERVICE_SPECS: tuple[ServiceSpec, ...] = (
    pairdrop.SPEC,
    plexmediaserver.SPEC,
    tailscale.SPEC,
    zerotier.SPEC,
)

logger = logging.getLogger(__name__)


def list_service_specs() -> list[ServiceSpec]:
    return list(SERVICE_SPECS)


def list_service_keys() -> list[str]:
    return [spec.key for spec in SERVICE_SPECS]


def get_service_spec(key: str) -> ServiceSpec:
    for spec in SERVICE_SPECS:
        if spec.key == key:
            return spec
    raise KeyError(key)


@dataclass
class ServiceInfo:
    key: str
    name: str
    description: str
    installed: bool
    running: bool
    status_text: str
    status_kind: str


@dataclass
class ServicePage:
    spec: ServiceSpec
    context: ServiceContext
    schema: FormSchema
    view: ServiceView
    sections: List[BoundSection]
    record: Dict[str, UciSection]

    @property
    def poll_context(self) -> Dict[str, str]:
        return self.context.status.poll_context()


@dataclass
class SaveOutcome:
    result: SaveResult
    action: ActionOutcome | None = None
    submitted: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.result.ok and (self.action is None or self.action.ok)


class ServiceManager:
    """Entry point shared by the web panel and the CLI.

    Every call re-reads UCI and re-runs the probes; nothing is cached between
    requests.
    """

    def __init__(self, config: Config | None = None, host: Host | None = None, store: UciStore | None = None) -> None:
        self.config = config or Config()
        self.host = host or Host()
        self.store = store or UciStore(self.host, self.config.paths.uci)

    def control_script(self, spec: ServiceSpec) -> ControlScript | None:
        return spec.control_script(self.host, self.config.paths.init_dir)

    def provider(self, spec: ServiceSpec, script: ControlScript | None = None) -> ServiceStatusProvider:
        if script is None:
            script = self.control_script(spec)
        return spec.provider(self.host, script, self.config.paths)

    async def load_record(self, spec: ServiceSpec) -> Dict[str, UciSection]:
        try:
            return await self.store.load(spec.config)
        except UciError as exc:
            logger.warning("Unable to load %s: %s", spec.config, exc)
            return {}

    async def context(self, key: str) -> tuple[ServiceContext, Dict[str, UciSection]]:
        spec = get_service_spec(key)
        script = self.control_script(spec)
        record = await self.load_record(spec)
        status = await self.provider(spec, script).snapshot(record)
        return ServiceContext(host=self.host, script=script, status=status), record

    async def status(self, key: str) -> ServiceStatus:
        context, _record = await self.context(key)
        return context.status

    async def info(self, key: str) -> ServiceInfo:
        spec = get_service_spec(key)
        context, _record = await self.context(key)
        view = spec.build_view(context)
        return ServiceInfo(
            key=spec.key,
            name=spec.name,
            description=spec.description,
            installed=context.status.installed,
            running=context.status.running,
            status_text=view.status_text,
            status_kind=view.status_kind,
        )

    async def list_services(self) -> list[ServiceInfo]:
        return await gather(*(self.info(spec.key) for spec in SERVICE_SPECS))

    async def page(
        self,
        key: str,
        submitted: Mapping[str, str] | None = None,
        errors: Mapping[str, str] | None = None,
    ) -> ServicePage:
        spec = get_service_spec(key)
        context, record = await self.context(key)
        schema = spec.build_schema(context)
        binder = FormBinder(schema, self.store)
        return ServicePage(
            spec=spec,
            context=context,
            schema=schema,
            view=spec.build_view(context),
            sections=binder.bind(record, submitted, errors),
            record=record,
        )

    async def run_action(self, key: str, action: str) -> ActionOutcome:
        spec = get_service_spec(key)
        script = self.control_script(spec)
        if script is None:
            return ActionOutcome(action=action, ok=False, message="No control script defined for this service.")
        logger.info("Dispatching %s %s", key, action)
        return await spec.dispatcher(script).dispatch(action)

    async def save(
        self,
        key: str,
        submitted: Mapping[str, str],
        action: str | None = None,
        partial: bool = False,
    ) -> SaveOutcome:
        """Validate and persist *submitted*, then run the follow-up action.

        The follow-up is *action* when given, otherwise the service's
        ``apply_action``. It only runs when nothing failed validation or
        failed to persist.
        """

        spec = get_service_spec(key)
        context, _record = await self.context(key)
        binder = FormBinder(spec.build_schema(context), self.store)
        result = await binder.save(submitted, partial=partial)
        outcome = SaveOutcome(result=result, submitted=dict(submitted))
        if result.errors or any(not write.persisted for write in result.writes):
            return outcome
        follow_up = action or spec.apply_action
        if follow_up:
            outcome.action = await self.run_action(key, follow_up)
        return outcome

    async def set_option(self, key: str, section: str, option: str, value: str) -> SaveOutcome:
        return await self.save(key, {f"{section}.{option}": value}, partial=True)

    async def values(self, key: str) -> Dict[str, Dict[str, str]]:
        spec = get_service_spec(key)
        context, record = await self.context(key)
        return FormBinder(spec.build_schema(context), self.store).values(record)

    def poller(self, key: str, context: Mapping[str, str]) -> Poller:
        spec = get_service_spec(key)
        poller = Poller(self.config.web.poll_interval)
        for name, fn in self.provider(spec).poll_tasks(context).items():
            poller.add(name, fn)
        return poller

    async def poll(self, key: str, context: Mapping[str, str]) -> Patch:
        spec = get_service_spec(key)
        return await self.provider(spec).poll(context)

    async def add_section(self, key: str, section_type: str) -> str:
        spec = get_service_spec(key)
        context, _record = await self.context(key)
        return await FormBinder(spec.build_schema(context), self.store).add_section(section_type)

    async def remove_section(self, key: str, name: str) -> None:
        spec = get_service_spec(key)
        context, _record = await self.context(key)
        await FormBinder(spec.build_schema(context), self.store).remove_section(name)
