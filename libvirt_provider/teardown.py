"""State-driven deprovisioning of a machine's domain and volumes."""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Tuple

from libvirt_provider.constants import (
    DOMAIN_RUNNING,
    DOMAIN_SHUTDOWN,
    DOMAIN_SHUTOFF,
    RETRY_DEFAULT,
    RETRY_STOPPING,
)
from libvirt_provider.exceptions import (
    ConfigError,
    DomainNotFoundError,
    HypervisorError,
    VolumeNotFoundError,
)
from libvirt_provider.models import MachineState, Outcome
from libvirt_provider.pipeline import cidata_volume_name, primary_volume_name
from libvirt_provider.utils import log

if TYPE_CHECKING:
    from libvirt_provider.hypervisor import LibvirtBroker


class Deprovisioner:
    """Converge a machine to fully removed, one reconciliation pass at a time.

    Each pass observes the domain state and takes at most one step towards
    removal:

    ========== ============================== ===================
    state      action                         outcome
    ========== ============================== ===================
    absent     none                           clean up volumes
    running    destroy (result ignored)       retry soon
    shutdown   none                           retry later
    shutoff    undefine                       clean up volumes
    other      none                           retry later
    ========== ============================== ===================

    Volumes are looked up by the names recorded in :class:`MachineState`; a
    volume that is already gone counts as cleaned up.
    """

    def __init__(self, broker: LibvirtBroker) -> None:
        self.broker = broker

    def run(self, request_id: str, state: MachineState) -> Outcome:
        if not request_id:
            return Outcome.retry(RETRY_DEFAULT, "empty machine name")

        outcome = self.remove_domain(request_id)
        if not outcome.ok:
            return outcome

        volumes = self.volumes_to_remove(request_id, state)
        if not volumes:
            log("INFO", f"{request_id}: no volumes were recorded, nothing to clean up")
            return Outcome.proceed()

        pool_name = state.pool_name
        if not pool_name:
            return Outcome.fatal(ConfigError(f"{request_id}: volumes recorded without a storage pool"))

        try:
            for vol_name, label in volumes:
                self._remove_volume(pool_name, vol_name, label)
        except HypervisorError as exc:
            log("WARN", f"{request_id}: volume cleanup failed: {exc}")
            return Outcome.retry(RETRY_DEFAULT, str(exc))

        log("SUCCESS", f"{request_id}: deprovisioned")
        return Outcome.proceed()

    def volumes_to_remove(self, request_id: str, state: MachineState) -> List[Tuple[str, str]]:
        """Return ``(volume name, label)`` pairs in deletion order.

        The primary and cidata volumes exist before their names are recorded,
        so once a pool is recorded their fixed names are checked as well.
        """
        volumes: List[Tuple[str, str]] = []
        primary = state.vm_vol_name
        cidata = state.cidata_vol_name
        if state.pool_name:
            primary = primary or primary_volume_name(request_id)
            cidata = cidata or cidata_volume_name(request_id)
        if primary:
            volumes.append((primary, "volume"))
        volumes += [(disk.vol_name, "additional disk volume") for disk in state.additional_disks or []]
        if cidata:
            volumes.append((cidata, "cidata volume"))
        return volumes

    def remove_domain(self, vm_name: str) -> Outcome:
        """Advance the domain one step towards undefined; ``proceed`` once it is gone."""
        try:
            dom = self.broker.lookup_domain(vm_name)
            state, _reason = self.broker.domain_state(dom)
        except DomainNotFoundError:
            log("INFO", f"Domain {vm_name} was already removed")
            return Outcome.proceed()
        except HypervisorError as exc:
            return Outcome.retry(RETRY_DEFAULT, f"fetching domain: {exc}")

        if state == DOMAIN_RUNNING:
            # "destroy" is libvirt's hard power-off; it may complete asynchronously
            try:
                self.broker.destroy_domain(dom)
                log("INFO", f"Destroyed domain {vm_name}")
            except HypervisorError as exc:
                log("WARN", f"Destroy of domain {vm_name} reported: {exc}")
            return Outcome.retry(RETRY_STOPPING, f"waiting for domain {vm_name} to stop")

        if state == DOMAIN_SHUTDOWN:
            return Outcome.retry(RETRY_DEFAULT, f"domain {vm_name} is shutting down")

        if state == DOMAIN_SHUTOFF:
            try:
                self.broker.undefine_domain(dom)
            except HypervisorError as exc:
                return Outcome.retry(RETRY_DEFAULT, f"undefine VM: {exc}")
            log("INFO", f"Undefined domain {vm_name}")
            return Outcome.proceed()

        return Outcome.retry(RETRY_DEFAULT, f"unknown VM state: {state}")

    def _remove_volume(self, pool_name: str, vol_name: str, label: str) -> None:
        try:
            vol = self.broker.get_volume(pool_name, vol_name)
        except VolumeNotFoundError:
            log("INFO", f"{label.capitalize()} was removed already: {vol_name}")
            return
        self.broker.delete_volume(vol)
        log("INFO", f"Removed {label}: {vol_name}")
