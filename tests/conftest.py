"""Shared test fixtures."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from libvirt_provider.models import AdditionalDisk, MachineRequest, MachineState, NetworkInterfaceConfig


@pytest.fixture
def provider_data() -> dict:
    """Loosely-typed machine config as handed over by the orchestrator."""
    return {
        "cores": 2,
        "memory": 4096,
        "disk_size": 20,
        "storage_pool": "default",
        "network_interfaces": [{"network_name": "default", "driver": "virtio"}],
    }


@pytest.fixture
def machine_request() -> MachineRequest:
    return MachineRequest(
        cores=2,
        memory=4096,
        disk_size=20,
        storage_pool="default",
        network_interfaces=[NetworkInterfaceConfig(network="default")],
    )


@pytest.fixture
def provisioned_state() -> MachineState:
    """State of a machine whose provisioning pass completed."""
    return MachineState(
        uuid="7c3a1e6e-0000-4000-8000-000000000001",
        schematic_id="abc123",
        pool_name="default",
        vm_vol_name="req-1.qcow2",
        additional_disks=[AdditionalDisk(type="sata", vol_name="req-1-0-sata.qcow2")],
        cidata_vol_name="req-1-cidata.iso",
        vm_name="req-1",
    )


@pytest.fixture
def image_cache() -> MagicMock:
    cache = MagicMock()
    cache.acquire.return_value = "/cache/abc123-v1.11.3.qcow2.gz"
    return cache


@pytest.fixture
def libvirt_error():
    """Factory for real ``libvirt.libvirtError`` instances carrying a given error code."""
    libvirt = pytest.importorskip("libvirt")

    def _make(code: int = 1, message: str = "libvirt failure"):
        exc = libvirt.libvirtError(message)
        # (code, domain, message, level, str1, str2, str3, int1, int2) as in virGetLastError()
        exc.err = (code, 0, message, 2, "", None, None, 0, 0)
        return exc

    return _make
