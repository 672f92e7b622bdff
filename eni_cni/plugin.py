"""CNI command dispatch.

Maps CNI_COMMAND to the ENI and namespace operations:

- ADD: fatal on first failure. Anything provisioned before the failure is
  rolled back and an error result is returned with a non-zero exit code.
- DEL: best effort. Every step runs regardless of earlier failures and the
  runtime always sees success, so container teardown is never blocked.
- VERSION: report supported CNI versions.
- anything else (CHECK, GC, STATUS, ...): echo the previous result.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import ValidationError

from eni_cni.config import CNIEnvironment, Settings, settings as default_settings
from eni_cni.context import workdir_for
from eni_cni.errors import CODE_GENERIC, DecodeError, MetadataError, NamespaceError, PluginError
from eni_cni.metadata import MetadataResolver
from eni_cni.netns import NamespaceInstaller
from eni_cni.provisioner import ENIProvisioner, OperationResult, create_ec2_client
from eni_cni.schemas import ENIRecord, ErrorResult, NetConf, VersionResult
from eni_cni.state import StateStore

logger = logging.getLogger(__name__)

ProvisionerFactory = Callable[[str, Any, NamespaceInstaller], ENIProvisioner]


@dataclass
class PluginResult:
    """What the process writes to stdout and exits with."""

    exit_code: int
    output: str


@dataclass
class TeardownSummary:
    """Aggregated outcome of a DEL invocation."""

    container_id: str
    results: list[OperationResult] = field(default_factory=list)

    @property
    def failures(self) -> list[OperationResult]:
        return [r for r in self.results if not r.ok]

    @property
    def clean(self) -> bool:
        return not self.failures

    @property
    def retryable(self) -> bool:
        return any(r.retryable for r in self.failures)

    def describe(self) -> str:
        if self.clean:
            return f"teardown of {self.container_id} complete"
        details = "; ".join(f"{r.step}: {r.error.message if r.error else 'failed'}" for r in self.failures)
        kind = "retryable" if self.retryable else "permanent"
        return f"teardown of {self.container_id} incomplete ({kind}): {details}"


def _default_provisioner(settings: Settings) -> ProvisionerFactory:
    def factory(region, metadata, installer):
        return ENIProvisioner(
            create_ec2_client(region),
            settings,
            link_locator=installer.find_link_by_mac,
            mac_lister=metadata.attached_macs if metadata is not None else None,
        )
    return factory


class CNIPlugin:
    """One plugin invocation."""

    def __init__(
        self,
        settings: Settings | None = None,
        metadata_factory: Callable[[], MetadataResolver] | None = None,
        installer_factory: Callable[[], NamespaceInstaller] | None = None,
        provisioner_factory: ProvisionerFactory | None = None,
    ):
        self.settings = settings or default_settings
        self.metadata_factory = metadata_factory or (lambda: MetadataResolver(self.settings))
        self.installer_factory = installer_factory or (lambda: NamespaceInstaller(self.settings))
        self.provisioner_factory = provisioner_factory or _default_provisioner(self.settings)

    def run(self, env: CNIEnvironment, stdin_text: str) -> PluginResult:
        command = env.command.upper()
        logger.info(
            f"CNI plugin invoked: command={command} container={env.containerid} "
            f"netns={env.netns} ifname={env.ifname} args={env.args} path={env.path}"
        )

        if command == "VERSION":
            return self._version()

        try:
            netconf = self._parse_netconf(stdin_text)
        except DecodeError as e:
            if command == "ADD":
                logger.error(f"Failed to execute ADD command: {e.message}")
                return self._error(self.settings.cni_version, e.message)
            logger.warning(f"{e.message}; continuing {command or 'command'} with an empty result")
            netconf = NetConf()

        passthrough = json.dumps(netconf.prev_result)
        logger.debug(f"Result of the CNI: {passthrough}")

        if command == "ADD":
            try:
                self._add(env, netconf)
            except PluginError as e:
                logger.error(f"Failed to execute ADD command: {e.message}")
                return self._error(netconf.cni_version, e.message)
            except Exception as e:
                logger.exception("Failed to execute ADD command")
                return self._error(netconf.cni_version, f"Failed to execute ADD command: {e}")
            return PluginResult(exit_code=0, output=passthrough)

        if command == "DEL":
            try:
                summary = self._del(env)
                log = logger.info if summary.clean else logger.warning
                log(summary.describe())
            except Exception:
                logger.exception(f"Unexpected error during DEL of {env.containerid}")
            return PluginResult(exit_code=0, output=passthrough)

        logger.info(f"Command {command or '<empty>'} is not ADD or DEL, passing result through")
        return PluginResult(exit_code=0, output=passthrough)

    # --- helpers ---

    def _parse_netconf(self, stdin_text: str) -> NetConf:
        if not stdin_text.strip():
            raise DecodeError("Empty network configuration on stdin")
        try:
            raw = json.loads(stdin_text)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Network configuration is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise DecodeError("Network configuration must be a JSON object")
        try:
            netconf = NetConf.model_validate(raw)
        except ValidationError as e:
            raise DecodeError(f"Invalid network configuration: {e}") from e
        logger.debug(f"Received CNI Config: {stdin_text.strip()}")
        return netconf

    def _error(self, cni_version: str, message: str) -> PluginResult:
        envelope = ErrorResult(
            cni_version=cni_version or self.settings.cni_version,
            code=CODE_GENERIC,
            msg=message,
        )
        return PluginResult(exit_code=1, output=envelope.model_dump_json(by_alias=True))

    def _version(self) -> PluginResult:
        reply = VersionResult(
            cni_version=self.settings.cni_version,
            supported_versions=self.settings.supported_versions,
        )
        return PluginResult(exit_code=0, output=reply.model_dump_json(by_alias=True))

    # --- ADD ---

    def _add(self, env: CNIEnvironment, netconf: NetConf) -> ENIRecord:
        metadata = self.metadata_factory()
        try:
            ctx = metadata.resolve(env)
            store = StateStore(ctx.workdir)
            store.ensure()
            logger.info(f"cni temp dir: {ctx.workdir}")

            installer = self.installer_factory()
            provisioner = self.provisioner_factory(ctx.region, metadata, installer)

            record = provisioner.create_and_attach(
                ctx, store, netconf.security_group_ids, netconf.subnet_id
            )
            try:
                facts = installer.wait_for_link_facts(
                    record.link_name,
                    timeout=self.settings.attach_timeout,
                    mac=record.mac_address,
                )
                if facts.link != record.link_name:
                    logger.info(f"Host link {record.link_name} was renamed to {facts.link}")
                    record = record.model_copy(update={"link_name": facts.link})
                    store.save_record(record)
                installer.create_handle(ctx.container_id, ctx.netns)
                installer.move_interface(facts.link, ctx.container_id, ctx.ifname)
                installer.configure_address(
                    ctx.container_id, facts.address, facts.broadcast, ctx.ifname
                )
                installer.install_default_route(ctx.container_id, facts.gateway, ctx.ifname)
            except (PluginError, OSError) as e:
                logger.error(f"Namespace setup failed, rolling back ENI {record.interface_id}: {e}")
                self._rollback(ctx.container_id, installer, provisioner, record, store)
                if isinstance(e, OSError):
                    raise NamespaceError(f"Namespace setup failed: {e}") from e
                raise
        finally:
            metadata.close()

        logger.info(f"ADD complete: {record.interface_id} is {ctx.ifname} in {ctx.container_id}")
        return record

    def _rollback(
        self,
        container_id: str,
        installer: NamespaceInstaller,
        provisioner: ENIProvisioner,
        record: ENIRecord,
        store: StateStore,
    ) -> None:
        try:
            installer.remove_handle(container_id)
        except OSError as e:
            logger.warning(f"Rollback could not remove namespace handle: {e}")
        for result in provisioner.release(record, store):
            if not result.ok:
                logger.error(f"Rollback {result.step} failed, ENI {record.interface_id} leaked")

    # --- DEL ---

    def _del(self, env: CNIEnvironment) -> TeardownSummary:
        summary = TeardownSummary(container_id=env.containerid)
        if not env.containerid:
            logger.warning("CNI_CONTAINERID is not set; nothing to tear down")
            return summary

        installer = self.installer_factory()
        try:
            removed = installer.remove_handle(env.containerid)
            summary.results.append(OperationResult(step="remove_handle", ok=True, skipped=not removed))
        except OSError as e:
            error = NamespaceError(f"Failed to remove namespace handle: {e}")
            logger.error(error.message)
            summary.results.append(OperationResult(step="remove_handle", ok=False, error=error))

        store = StateStore(workdir_for(env.containerid, self.settings.state_root))
        record = store.load_record(env.containerid)
        if record is None:
            logger.info(f"No ENI recorded in {store.workdir}; treating as already clean")
            store.remove()
            return summary

        region = record.region or self._region_from_metadata(env)
        if not region:
            error = MetadataError(f"Region unknown; ENI {record.interface_id} leaked")
            logger.error(error.message)
            summary.results.append(OperationResult(step="detach", ok=False, error=error))
            return summary

        provisioner = self.provisioner_factory(region, None, installer)
        results = provisioner.release(record, store)
        summary.results.extend(results)
        for result in results:
            if result.step == "delete" and not result.ok:
                logger.error(f"ENI {record.interface_id} leaked: {result.error.message}")

        if summary.clean:
            store.remove()
        return summary

    def _region_from_metadata(self, env: CNIEnvironment) -> str:
        metadata = self.metadata_factory()
        try:
            return metadata.resolve(env).region
        except PluginError as e:
            logger.error(f"Cannot resolve region for teardown: {e.message}")
            return ""
        finally:
            metadata.close()
