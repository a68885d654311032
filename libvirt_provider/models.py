"""Data models for the libvirt infra provider."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass
class AdditionalDiskConfig:
    type: str  # "nvme", "sata", ...
    size: int  # GiB


@dataclass
class NetworkInterfaceConfig:
    network: str
    driver: str = "virtio"


@dataclass
class ProviderConfig:
    libvirt_uri: str
    cache_path: Path
    image_factory_url: str
    cache_max_age: float
    cache_cleanup_interval: float
    download_timeout: float


@dataclass
class MachineRequest:
    """Provider data declared for one machine, decoded once per reconciliation pass."""

    cores: int
    memory: int  # MiB
    disk_size: int  # GiB
    storage_pool: str
    additional_disks: List[AdditionalDiskConfig] = field(default_factory=list)
    network_interfaces: List[NetworkInterfaceConfig] = field(default_factory=list)


@dataclass
class AdditionalDisk:
    type: str
    vol_name: str


@dataclass
class MachineState:
    """Persisted provisioning progress.

    A field being set means the step that produces it has completed. The
    external driver persists this between passes via :meth:`to_dict`.
    """

    uuid: Optional[str] = None
    schematic_id: Optional[str] = None
    pool_name: Optional[str] = None
    vm_vol_name: Optional[str] = None
    additional_disks: Optional[List[AdditionalDisk]] = None
    cidata_vol_name: Optional[str] = None
    vm_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for key in ("uuid", "schematic_id", "pool_name", "vm_vol_name", "cidata_vol_name", "vm_name"):
            value = getattr(self, key)
            if value:
                data[key] = value
        if self.additional_disks is not None:
            data["additional_disks"] = [
                {"type": disk.type, "vol_name": disk.vol_name} for disk in self.additional_disks
            ]
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MachineState":
        data = data or {}
        disks = data.get("additional_disks")
        return cls(
            uuid=data.get("uuid") or None,
            schematic_id=data.get("schematic_id") or None,
            pool_name=data.get("pool_name") or None,
            vm_vol_name=data.get("vm_vol_name") or None,
            additional_disks=(
                [AdditionalDisk(type=d["type"], vol_name=d["vol_name"]) for d in disks]
                if disks is not None
                else None
            ),
            cidata_vol_name=data.get("cidata_vol_name") or None,
            vm_name=data.get("vm_name") or None,
        )


PROCEED = "proceed"
RETRY = "retry"
FATAL = "fatal"


@dataclass(frozen=True)
class Outcome:
    """Result of a provisioning step or a deprovisioning pass.

    ``retry`` carries the suggested delay before the driver invokes us again;
    ``fatal`` carries the error to surface. The core itself never sleeps.
    """

    action: str
    delay: float = 0.0
    reason: str = ""
    error: Optional[BaseException] = None
    step: Optional[str] = None

    @classmethod
    def proceed(cls) -> "Outcome":
        return cls(PROCEED)

    @classmethod
    def retry(cls, delay: float, reason: str = "") -> "Outcome":
        return cls(RETRY, delay=delay, reason=reason)

    @classmethod
    def fatal(cls, error: BaseException) -> "Outcome":
        return cls(FATAL, reason=str(error), error=error)

    @property
    def ok(self) -> bool:
        return self.action == PROCEED
