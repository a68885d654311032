"""Resumable, idempotent VM provisioning steps."""

from __future__ import annotations

import gzip
import io
import uuid
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

from libvirt_provider.cidata import IsoEncoder, build_cidata, encode_iso
from libvirt_provider.config import decode_machine_request
from libvirt_provider.constants import (
    DISK_FORMAT_QCOW2,
    DISK_FORMAT_RAW,
    DOMAIN_RUNNING,
    GiB,
    RETRY_DEFAULT,
    RETRY_SHORT,
)
from libvirt_provider.domain import render_domain_xml
from libvirt_provider.exceptions import (
    ConfigError,
    DomainNotFoundError,
    HypervisorError,
    ManagerError,
    RetryableError,
    VolumeNotFoundError,
)
from libvirt_provider.images import ImageCache
from libvirt_provider.models import AdditionalDisk, MachineRequest, MachineState, Outcome
from libvirt_provider.utils import log

if TYPE_CHECKING:
    from libvirt_provider.hypervisor import LibvirtBroker


def _no_uuid_sink(machine_uuid: str) -> None:
    pass


@dataclass
class ProvisionContext:
    """Everything one provisioning pass needs from the orchestrator.

    ``provider_data`` is the loosely-typed machine config; it is decoded into
    ``request`` at the start of every pass. ``state`` is mutated in place and
    must be persisted by the caller after the pass, whatever the outcome.
    """

    request_id: str
    provider_data: Union[str, Dict[str, Any]]
    state: MachineState
    talos_version: str
    generate_schematic_id: Callable[[], str]
    set_machine_uuid: Callable[[str], None] = _no_uuid_sink
    request: Optional[MachineRequest] = None


@dataclass(frozen=True)
class Step:
    name: str
    handler: Callable[[ProvisionContext], Outcome]


def primary_volume_name(request_id: str) -> str:
    return f"{request_id}.qcow2"


def additional_volume_name(request_id: str, index: int, disk_type: str) -> str:
    return f"{request_id}-{index}-{disk_type}.qcow2"


def cidata_volume_name(request_id: str) -> str:
    return f"{request_id}-cidata.iso"


def _wait_for(value: Optional[str], what: str) -> str:
    if not value:
        raise RetryableError(f"waiting for {what}", RETRY_DEFAULT)
    return value


class ProvisionPipeline:
    """Ordered provisioning steps over a shared :class:`MachineState`.

    Every step first checks the state field it produces and returns
    immediately when it is already set, so re-running a finished pass touches
    nothing. A step that fails asks the driver to retry, and the next pass
    starts again from the first step.
    """

    def __init__(
        self,
        broker: LibvirtBroker,
        image_cache: ImageCache,
        iso_encoder: IsoEncoder = encode_iso,
        acquire_timeout: Optional[float] = None,
    ) -> None:
        self.broker = broker
        self.image_cache = image_cache
        self.iso_encoder = iso_encoder
        self.acquire_timeout = acquire_timeout
        self.steps: List[Step] = [
            Step("generate_uuid", self.generate_uuid),
            Step("create_schematic", self.create_schematic),
            Step("provision_primary_disk", self.provision_primary_disk),
            Step("provision_additional_disks", self.provision_additional_disks),
            Step("provision_cidata", self.provision_cidata),
            Step("create_vm", self.create_vm),
            Step("start_vm", self.start_vm),
        ]

    def run(self, ctx: ProvisionContext) -> Outcome:
        try:
            ctx.request = decode_machine_request(ctx.provider_data)
        except ConfigError as exc:
            log("ERROR", f"{ctx.request_id}: invalid provider data: {exc}")
            return replace(Outcome.fatal(exc), step="decode_request")

        for step in self.steps:
            try:
                outcome = step.handler(ctx)
            except ConfigError as exc:
                outcome = Outcome.fatal(exc)
            except RetryableError as exc:
                outcome = Outcome.retry(exc.delay, str(exc))
            if outcome.ok:
                continue
            outcome = replace(outcome, step=step.name)
            if outcome.error is not None:
                log("ERROR", f"{ctx.request_id}: {step.name} failed: {outcome.reason}")
            else:
                log("INFO", f"{ctx.request_id}: {step.name} retry in {outcome.delay:g}s: {outcome.reason}")
            return outcome

        log("DEBUG", f"{ctx.request_id}: provisioning complete")
        return Outcome.proceed()

    # -- steps -----------------------------------------------------------

    def generate_uuid(self, ctx: ProvisionContext) -> Outcome:
        if ctx.state.uuid:
            return Outcome.proceed()

        candidate = str(uuid.uuid4())
        try:
            self.broker.lookup_domain_by_uuid(candidate)
        except DomainNotFoundError:
            ctx.state.uuid = candidate
            ctx.set_machine_uuid(candidate)
            log("INFO", f"{ctx.request_id}: assigned UUID {candidate}")
            return Outcome.proceed()
        except HypervisorError as exc:
            return Outcome.retry(RETRY_DEFAULT, str(exc))
        return Outcome.retry(RETRY_SHORT, f"UUID {candidate} is already in use")

    def create_schematic(self, ctx: ProvisionContext) -> Outcome:
        if ctx.state.schematic_id:
            return Outcome.proceed()

        try:
            schematic_id = ctx.generate_schematic_id()
        except Exception as exc:
            return Outcome.retry(RETRY_DEFAULT, f"error generating schematic ID: {exc}")
        if not schematic_id:
            return Outcome.retry(RETRY_DEFAULT, "image factory returned an empty schematic ID")

        ctx.state.schematic_id = schematic_id
        log("INFO", f"{ctx.request_id}: created schematic {schematic_id}")
        return Outcome.proceed()

    def provision_primary_disk(self, ctx: ProvisionContext) -> Outcome:
        if ctx.state.vm_vol_name:
            return Outcome.proceed()

        request = ctx.request
        assert request is not None
        schematic_id = _wait_for(ctx.state.schematic_id, "schematic")
        version = ctx.talos_version

        try:
            image_path = self.image_cache.acquire(schematic_id, version, timeout=self.acquire_timeout)
        except (ManagerError, OSError) as exc:
            return Outcome.retry(RETRY_DEFAULT, f"error fetching image: {exc}")

        vol_name = primary_volume_name(ctx.request_id)
        capacity = request.disk_size * GiB
        try:
            ctx.state.pool_name = request.storage_pool
            vol = self.broker.create_volume(request.storage_pool, vol_name, DISK_FORMAT_QCOW2, capacity)
            with open(image_path, "rb") as fh, gzip.GzipFile(fileobj=fh) as image:
                self.broker.upload_volume(vol, image)
            # the uploaded image is usually smaller than the requested disk
            self.broker.resize_volume(vol, capacity)
        except HypervisorError as exc:
            return Outcome.retry(RETRY_DEFAULT, f"error provisioning disk {vol_name}: {exc}")
        except (OSError, EOFError) as exc:
            return Outcome.retry(RETRY_DEFAULT, f"error reading local disk image {image_path}: {exc}")
        finally:
            self.image_cache.release(schematic_id, version)

        ctx.state.vm_vol_name = vol_name
        log("SUCCESS", f"{ctx.request_id}: provisioned primary disk {request.storage_pool}/{vol_name}")
        return Outcome.proceed()

    def provision_additional_disks(self, ctx: ProvisionContext) -> Outcome:
        request = ctx.request
        assert request is not None
        recorded = ctx.state.additional_disks
        if recorded is not None and len(recorded) >= len(request.additional_disks):
            return Outcome.proceed()

        # each volume is recorded as soon as it exists so teardown can find it
        disks = ctx.state.additional_disks = list(recorded or [])
        done = {disk.vol_name for disk in disks}
        for idx, disk_cfg in enumerate(request.additional_disks):
            vol_name = additional_volume_name(ctx.request_id, idx, disk_cfg.type)
            if vol_name in done:
                continue
            try:
                self.broker.create_volume(request.storage_pool, vol_name, DISK_FORMAT_QCOW2, disk_cfg.size * GiB)
            except HypervisorError as exc:
                return Outcome.retry(RETRY_DEFAULT, f"error creating disk {vol_name}: {exc}")
            disks.append(AdditionalDisk(type=disk_cfg.type, vol_name=vol_name))

        log("INFO", f"{ctx.request_id}: provisioned {len(disks)} additional disk(s)")
        return Outcome.proceed()

    def provision_cidata(self, ctx: ProvisionContext) -> Outcome:
        if ctx.state.cidata_vol_name:
            return Outcome.proceed()

        request = ctx.request
        assert request is not None
        vol_name = cidata_volume_name(ctx.request_id)
        try:
            iso_data = build_cidata(ctx.request_id, self.iso_encoder)
        except ManagerError as exc:
            return Outcome.retry(RETRY_DEFAULT, str(exc))

        try:
            try:
                stale = self.broker.get_volume(request.storage_pool, vol_name)
            except VolumeNotFoundError:
                stale = None
            if stale is not None:
                self.broker.delete_volume(stale)
                log("INFO", f"{ctx.request_id}: deleted stale cidata volume {vol_name}")
            vol = self.broker.create_volume(request.storage_pool, vol_name, DISK_FORMAT_RAW, len(iso_data))
            self.broker.upload_volume(vol, io.BytesIO(iso_data))
        except HypervisorError as exc:
            return Outcome.retry(RETRY_DEFAULT, f"error provisioning cidata volume {vol_name}: {exc}")

        ctx.state.cidata_vol_name = vol_name
        log("INFO", f"{ctx.request_id}: provisioned cidata ISO {vol_name}")
        return Outcome.proceed()

    def create_vm(self, ctx: ProvisionContext) -> Outcome:
        if ctx.state.vm_name:
            return Outcome.proceed()

        request = ctx.request
        assert request is not None
        vol_name = _wait_for(ctx.state.vm_vol_name, "image")
        domain_uuid = _wait_for(ctx.state.uuid, "UUID")
        pool = ctx.state.pool_name or request.storage_pool

        try:
            self.broker.get_volume(pool, vol_name)
        except HypervisorError as exc:
            return Outcome.retry(RETRY_DEFAULT, f"error fetching volume: {exc}")

        xml = render_domain_xml(
            name=ctx.request_id,
            domain_uuid=domain_uuid,
            request=request,
            pool=pool,
            primary_volume=vol_name,
            additional_disks=ctx.state.additional_disks,
            cidata_volume=ctx.state.cidata_vol_name,
        )
        log("DEBUG", f"{ctx.request_id}: domain XML:\n{xml}")

        try:
            self.broker.define_domain(xml)
        except HypervisorError as exc:
            return Outcome.retry(RETRY_DEFAULT, str(exc))

        ctx.state.vm_name = ctx.request_id
        log("SUCCESS", f"{ctx.request_id}: defined domain")
        return Outcome.proceed()

    def start_vm(self, ctx: ProvisionContext) -> Outcome:
        vm_name = _wait_for(ctx.state.vm_name, "domain definition")

        try:
            dom = self.broker.lookup_domain(vm_name)
            state, _reason = self.broker.domain_state(dom)
        except HypervisorError as exc:
            return Outcome.retry(RETRY_DEFAULT, f"VM lookup failed: {exc}")

        if state == DOMAIN_RUNNING:
            return Outcome.proceed()

        try:
            self.broker.start_domain(dom)
        except HypervisorError as exc:
            if "domain is already running" not in str(exc).lower():
                return Outcome.retry(RETRY_DEFAULT, f"failed to start VM: {exc}")
            log("DEBUG", f"{vm_name}: already running")
            return Outcome.proceed()

        log("SUCCESS", f"{vm_name}: domain started")
        return Outcome.proceed()
