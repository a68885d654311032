"""Domain XML rendering and disk slot assignment."""

from __future__ import annotations

import uuid
from typing import List, Optional, Tuple
from xml.etree.ElementTree import Element, SubElement, tostring

from libvirt_provider.constants import (
    CIDATA_DISK_DEV,
    DISK_FORMAT_QCOW2,
    DISK_FORMAT_RAW,
    GUEST_AGENT_CHANNEL,
    GUEST_AGENT_SOCKET_DIR,
    PRIMARY_DISK_BUS,
    PRIMARY_DISK_DEV,
    SATA_DEV_PREFIX,
)
from libvirt_provider.models import AdditionalDisk, MachineRequest
from libvirt_provider.network import render_interface


def letter_slot(index: int) -> str:
    """Bijective base-26 name for a slot index: 0 -> a, 25 -> z, 26 -> aa, 27 -> ab."""
    if index < 0:
        raise ValueError(f"slot index must be >= 0 (got {index})")
    letters = ""
    while index >= 0:
        letters = chr(ord("a") + index % 26) + letters
        index = index // 26 - 1
    return letters


def assign_disk_targets(disks: List[AdditionalDisk]) -> List[Tuple[str, str]]:
    """Return ``(dev, bus)`` for each additional disk, in order.

    nvme disks count up on their own bus (nvme0n1, nvme1n1, ...). Every other
    type takes the next ``sd`` letter; letter index 0 stays reserved for the
    primary disk, so the first one lands on ``sdb``.
    """
    targets = []
    letter_index = 1
    nvme_index = 0
    for disk in disks:
        if disk.type == "nvme":
            targets.append((f"nvme{nvme_index}n1", "nvme"))
            nvme_index += 1
        else:
            targets.append((f"{SATA_DEV_PREFIX}{letter_slot(letter_index)}", "sata"))
            letter_index += 1
    return targets


def _volume_disk(
    devices: Element,
    pool: str,
    volume: str,
    dev: str,
    bus: str,
    fmt: str = DISK_FORMAT_QCOW2,
    device: str = "disk",
    serial: Optional[str] = None,
) -> Element:
    disk = SubElement(devices, "disk", type="volume", device=device)
    if device == "cdrom":
        SubElement(disk, "driver", name="qemu", type=fmt)
    else:
        SubElement(disk, "driver", name="qemu", type=fmt, cache="none", io="native")
    SubElement(disk, "source", pool=pool, volume=volume)
    SubElement(disk, "target", dev=dev, bus=bus)
    if serial:
        SubElement(disk, "serial").text = serial
    return disk


def render_domain_xml(
    name: str,
    domain_uuid: str,
    request: MachineRequest,
    pool: str,
    primary_volume: str,
    additional_disks: Optional[List[AdditionalDisk]] = None,
    cidata_volume: Optional[str] = None,
) -> str:
    """Compose the full domain definition for a provisioned machine.

    The UUID must match the one reported to the orchestrator, it is how the
    booted machine is matched back to its request.
    """
    domain = Element("domain", type="kvm")
    SubElement(domain, "name").text = name
    SubElement(domain, "uuid").text = domain_uuid
    SubElement(domain, "memory", unit="MiB").text = str(request.memory)
    SubElement(domain, "vcpu", placement="static").text = str(request.cores)

    os_el = SubElement(domain, "os")
    SubElement(os_el, "type", arch="x86_64", machine="q35").text = "hvm"
    SubElement(os_el, "boot", dev="hd")

    features = SubElement(domain, "features")
    SubElement(features, "acpi")
    SubElement(features, "apic")

    SubElement(domain, "cpu", mode="host-passthrough")

    devices = SubElement(domain, "devices")

    # Primary disk
    _volume_disk(devices, pool, primary_volume, PRIMARY_DISK_DEV, PRIMARY_DISK_BUS)

    # Additional disks
    extra = additional_disks or []
    for disk, (dev, bus) in zip(extra, assign_disk_targets(extra)):
        _volume_disk(devices, pool, disk.vol_name, dev, bus, serial=str(uuid.uuid4()))

    # NoCloud seed
    if cidata_volume:
        cdrom = _volume_disk(
            devices, pool, cidata_volume, CIDATA_DISK_DEV, "sata", fmt=DISK_FORMAT_RAW, device="cdrom"
        )
        SubElement(cdrom, "readonly")

    for iface in request.network_interfaces:
        devices.append(render_interface(iface))

    SubElement(devices, "memballoon", model="virtio")

    # Guest agent channel
    channel = SubElement(devices, "channel", type="unix")
    SubElement(channel, "source", mode="bind", path=str(GUEST_AGENT_SOCKET_DIR / f"{name}.{GUEST_AGENT_CHANNEL}"))
    SubElement(channel, "target", type="virtio", name=GUEST_AGENT_CHANNEL)

    # Serial console
    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")

    video = SubElement(devices, "video")
    vid_model = SubElement(video, "model", type="virtio", heads="1", primary="yes")
    SubElement(vid_model, "resolution", x="1920", y="1080")

    SubElement(devices, "graphics", type="spice", autoport="yes")

    from xml.dom.minidom import parseString

    raw = tostring(domain, encoding="unicode")
    return parseString(raw).toprettyxml(indent="  ").split("\n", 1)[1].rstrip()
