"""Tests for libvirt_provider.pipeline module."""

from __future__ import annotations

import gzip
from unittest.mock import MagicMock

import pytest

from libvirt_provider.config import decode_machine_request
from libvirt_provider.constants import DOMAIN_RUNNING, DOMAIN_SHUTOFF
from libvirt_provider.exceptions import (
    DomainNotFoundError,
    HypervisorError,
    ImageDownloadError,
    RetryableError,
    VolumeNotFoundError,
)
from libvirt_provider.models import FATAL, RETRY, AdditionalDisk, MachineState
from libvirt_provider.pipeline import (
    ProvisionContext,
    ProvisionPipeline,
    additional_volume_name,
    cidata_volume_name,
    primary_volume_name,
)

MUTATING_CALLS = (
    "create_volume",
    "delete_volume",
    "resize_volume",
    "upload_volume",
    "define_domain",
    "start_domain",
    "destroy_domain",
    "undefine_domain",
)


@pytest.fixture
def broker():
    broker = MagicMock()
    broker.lookup_domain_by_uuid.side_effect = DomainNotFoundError("no domain")
    broker.domain_state.return_value = (DOMAIN_SHUTOFF, 0)
    return broker


@pytest.fixture
def image_cache(tmp_path):
    image = tmp_path / "abc123-v1.11.3.qcow2.gz"
    image.write_bytes(gzip.compress(b"talos disk image"))
    cache = MagicMock()
    cache.acquire.return_value = image
    return cache


@pytest.fixture
def encoder():
    return MagicMock(return_value=b"ISO-DATA")


@pytest.fixture
def pipeline(broker, image_cache, encoder):
    return ProvisionPipeline(broker, image_cache, iso_encoder=encoder)


def _ctx(provider_data, state=None, schematic="abc123", uuid_sink=None):
    return ProvisionContext(
        request_id="req-1",
        provider_data=provider_data,
        state=state if state is not None else MachineState(),
        talos_version="v1.11.3",
        generate_schematic_id=MagicMock(return_value=schematic),
        set_machine_uuid=uuid_sink or MagicMock(),
    )


class TestVolumeNames:
    def test_names(self):
        assert primary_volume_name("req-1") == "req-1.qcow2"
        assert additional_volume_name("req-1", 2, "nvme") == "req-1-2-nvme.qcow2"
        assert cidata_volume_name("req-1") == "req-1-cidata.iso"


class TestFullPass:
    def test_provisions_from_scratch(self, pipeline, broker, image_cache, provider_data):
        provider_data["additional_disks"] = [{"type": "sata", "size": 5}]
        sink = MagicMock()
        ctx = _ctx(provider_data, uuid_sink=sink)

        outcome = pipeline.run(ctx)

        assert outcome.ok
        state = ctx.state
        assert state.uuid
        sink.assert_called_once_with(state.uuid)
        assert state.schematic_id == "abc123"
        assert state.pool_name == "default"
        assert state.vm_vol_name == "req-1.qcow2"
        assert state.additional_disks == [AdditionalDisk(type="sata", vol_name="req-1-0-sata.qcow2")]
        assert state.cidata_vol_name == "req-1-cidata.iso"
        assert state.vm_name == "req-1"

        image_cache.acquire.assert_called_once_with("abc123", "v1.11.3", timeout=None)
        image_cache.release.assert_called_once_with("abc123", "v1.11.3")
        broker.resize_volume.assert_called_once_with(broker.create_volume.return_value, 20 * 1024**3)
        xml = broker.define_domain.call_args[0][0]
        assert f"<uuid>{state.uuid}</uuid>" in xml
        broker.start_domain.assert_called_once()

    def test_second_pass_is_a_no_op(self, pipeline, broker, image_cache, provider_data, provisioned_state):
        broker.domain_state.return_value = (DOMAIN_RUNNING, 1)
        ctx = _ctx(provider_data, state=provisioned_state)

        outcome = pipeline.run(ctx)

        assert outcome.ok
        for name in MUTATING_CALLS:
            getattr(broker, name).assert_not_called()
        broker.lookup_domain_by_uuid.assert_not_called()
        image_cache.acquire.assert_not_called()
        ctx.generate_schematic_id.assert_not_called()

    def test_invalid_provider_data_is_fatal(self, pipeline, broker, provider_data):
        del provider_data["storage_pool"]
        outcome = pipeline.run(_ctx(provider_data))

        assert outcome.action == FATAL
        assert outcome.step == "decode_request"
        assert "storage_pool" in outcome.reason
        assert broker.method_calls == []

    def test_stops_at_first_failing_step(self, pipeline, broker, provider_data):
        ctx = _ctx(provider_data, schematic="")

        outcome = pipeline.run(ctx)

        assert outcome.action == RETRY
        assert outcome.step == "create_schematic"
        assert ctx.state.uuid is not None
        broker.create_volume.assert_not_called()


class TestGenerateUuid:
    def test_collision_retries_quickly(self, pipeline, broker, provider_data):
        broker.lookup_domain_by_uuid.side_effect = None
        ctx = _ctx(provider_data)

        outcome = pipeline.generate_uuid(ctx)

        assert outcome.action == RETRY
        assert outcome.delay == 1.0
        assert ctx.state.uuid is None
        ctx.set_machine_uuid.assert_not_called()

    def test_lookup_error_retries(self, pipeline, broker, provider_data):
        broker.lookup_domain_by_uuid.side_effect = HypervisorError("connection lost")
        outcome = pipeline.generate_uuid(_ctx(provider_data))
        assert outcome.action == RETRY
        assert outcome.delay == 10.0

    def test_existing_uuid_is_kept(self, pipeline, broker, provider_data):
        ctx = _ctx(provider_data, state=MachineState(uuid="fixed"))
        assert pipeline.generate_uuid(ctx).ok
        assert ctx.state.uuid == "fixed"
        broker.lookup_domain_by_uuid.assert_not_called()


class TestCreateSchematic:
    def test_generator_error_retries(self, pipeline, provider_data):
        ctx = _ctx(provider_data)
        ctx.generate_schematic_id.side_effect = RuntimeError("factory unavailable")

        outcome = pipeline.create_schematic(ctx)

        assert outcome.action == RETRY
        assert "factory unavailable" in outcome.reason
        assert ctx.state.schematic_id is None


class TestPrimaryDisk:
    def _ready(self, provider_data):
        ctx = _ctx(provider_data, state=MachineState(uuid="u", schematic_id="abc123"))
        ctx.request = decode_machine_request(provider_data)
        return ctx

    def test_uploads_decompressed_image(self, pipeline, broker, provider_data):
        uploaded = []
        broker.upload_volume.side_effect = lambda vol, source: uploaded.append(source.read())
        ctx = self._ready(provider_data)

        assert pipeline.provision_primary_disk(ctx).ok

        assert uploaded == [b"talos disk image"]
        broker.create_volume.assert_called_once_with("default", "req-1.qcow2", "qcow2", 20 * 1024**3)

    def test_image_fetch_failure_retries(self, pipeline, image_cache, provider_data):
        image_cache.acquire.side_effect = ImageDownloadError("unexpected status code 500")
        ctx = self._ready(provider_data)

        outcome = pipeline.provision_primary_disk(ctx)

        assert outcome.action == RETRY
        assert "error fetching image" in outcome.reason
        image_cache.release.assert_not_called()
        assert ctx.state.vm_vol_name is None

    def test_local_cache_io_error_retries(self, pipeline, broker, image_cache, provider_data):
        image_cache.acquire.side_effect = OSError(28, "No space left on device")
        ctx = self._ready(provider_data)

        outcome = pipeline.provision_primary_disk(ctx)

        assert outcome.action == RETRY
        assert "No space left on device" in outcome.reason
        broker.create_volume.assert_not_called()
        image_cache.release.assert_not_called()

    def test_upload_failure_releases_image(self, pipeline, broker, image_cache, provider_data):
        broker.upload_volume.side_effect = HypervisorError("stream broke")
        ctx = self._ready(provider_data)

        outcome = pipeline.provision_primary_disk(ctx)

        assert outcome.action == RETRY
        image_cache.release.assert_called_once_with("abc123", "v1.11.3")
        assert ctx.state.vm_vol_name is None

    def test_corrupt_image_retries(self, pipeline, broker, image_cache, provider_data, tmp_path):
        bad = tmp_path / "bad.qcow2.gz"
        bad.write_bytes(b"not gzip")
        image_cache.acquire.return_value = bad
        broker.upload_volume.side_effect = lambda vol, source: source.read()
        ctx = self._ready(provider_data)

        outcome = pipeline.provision_primary_disk(ctx)

        assert outcome.action == RETRY
        assert "local disk image" in outcome.reason
        image_cache.release.assert_called_once()

    def test_waits_for_schematic(self, pipeline, provider_data):
        ctx = _ctx(provider_data, state=MachineState(uuid="u"))
        ctx.request = decode_machine_request(provider_data)
        with pytest.raises(RetryableError, match="waiting for schematic"):
            pipeline.provision_primary_disk(ctx)


class TestAdditionalDisks:
    def test_creates_each_disk(self, pipeline, broker, provider_data):
        provider_data["additional_disks"] = [{"type": "nvme", "size": 10}, {"type": "sata", "size": 5}]
        ctx = _ctx(provider_data)
        ctx.request = decode_machine_request(provider_data)

        assert pipeline.provision_additional_disks(ctx).ok

        created = [c.args for c in broker.create_volume.call_args_list]
        assert created == [
            ("default", "req-1-0-nvme.qcow2", "qcow2", 10 * 1024**3),
            ("default", "req-1-1-sata.qcow2", "qcow2", 5 * 1024**3),
        ]
        assert [d.vol_name for d in ctx.state.additional_disks] == ["req-1-0-nvme.qcow2", "req-1-1-sata.qcow2"]

    def test_partial_failure_records_created_disks(self, pipeline, broker, provider_data):
        provider_data["additional_disks"] = [{"type": "nvme", "size": 10}, {"type": "sata", "size": 5}]
        broker.create_volume.side_effect = [MagicMock(), HypervisorError("pool full")]
        ctx = _ctx(provider_data)
        ctx.request = decode_machine_request(provider_data)

        outcome = pipeline.provision_additional_disks(ctx)

        assert outcome.action == RETRY
        assert ctx.state.additional_disks == [AdditionalDisk(type="nvme", vol_name="req-1-0-nvme.qcow2")]

    def test_resumes_after_partial_failure(self, pipeline, broker, provider_data):
        provider_data["additional_disks"] = [{"type": "nvme", "size": 10}, {"type": "sata", "size": 5}]
        state = MachineState(additional_disks=[AdditionalDisk(type="nvme", vol_name="req-1-0-nvme.qcow2")])
        ctx = _ctx(provider_data, state=state)
        ctx.request = decode_machine_request(provider_data)

        assert pipeline.provision_additional_disks(ctx).ok

        broker.create_volume.assert_called_once_with("default", "req-1-1-sata.qcow2", "qcow2", 5 * 1024**3)
        assert [d.vol_name for d in ctx.state.additional_disks] == ["req-1-0-nvme.qcow2", "req-1-1-sata.qcow2"]

    def test_complete_disks_are_skipped(self, pipeline, broker, provider_data):
        provider_data["additional_disks"] = [{"type": "nvme", "size": 10}]
        state = MachineState(additional_disks=[AdditionalDisk(type="nvme", vol_name="req-1-0-nvme.qcow2")])
        ctx = _ctx(provider_data, state=state)
        ctx.request = decode_machine_request(provider_data)

        assert pipeline.provision_additional_disks(ctx).ok
        broker.create_volume.assert_not_called()

    def test_no_disks_requested(self, pipeline, broker, provider_data):
        ctx = _ctx(provider_data)
        ctx.request = decode_machine_request(provider_data)
        assert pipeline.provision_additional_disks(ctx).ok
        assert ctx.state.additional_disks == []
        broker.create_volume.assert_not_called()


class TestCidata:
    def test_replaces_stale_volume(self, pipeline, broker, encoder, provider_data):
        stale = MagicMock()
        broker.get_volume.return_value = stale
        ctx = _ctx(provider_data)
        ctx.request = decode_machine_request(provider_data)

        assert pipeline.provision_cidata(ctx).ok

        broker.delete_volume.assert_called_once_with(stale)
        broker.create_volume.assert_called_once_with("default", "req-1-cidata.iso", "raw", len(b"ISO-DATA"))
        vol, source = broker.upload_volume.call_args[0]
        assert source.read() == b"ISO-DATA"
        assert encoder.call_args[0][0] == "local-hostname: req-1\n"
        assert ctx.state.cidata_vol_name == "req-1-cidata.iso"

    def test_fresh_volume(self, pipeline, broker, provider_data):
        broker.get_volume.side_effect = VolumeNotFoundError("missing")
        ctx = _ctx(provider_data)
        ctx.request = decode_machine_request(provider_data)

        assert pipeline.provision_cidata(ctx).ok
        broker.delete_volume.assert_not_called()

    def test_upload_failure_retries(self, pipeline, broker, provider_data):
        broker.get_volume.side_effect = VolumeNotFoundError("missing")
        broker.upload_volume.side_effect = HypervisorError("stream broke")
        ctx = _ctx(provider_data)
        ctx.request = decode_machine_request(provider_data)

        outcome = pipeline.provision_cidata(ctx)

        assert outcome.action == RETRY
        assert ctx.state.cidata_vol_name is None


class TestCreateVm:
    def test_waits_for_primary_volume(self, pipeline, broker, provider_data):
        ctx = _ctx(provider_data, state=MachineState(uuid="u"))
        ctx.request = decode_machine_request(provider_data)
        with pytest.raises(RetryableError, match="waiting for image"):
            pipeline.create_vm(ctx)
        broker.define_domain.assert_not_called()

    def test_volume_lookup_failure_retries(self, pipeline, broker, provider_data):
        broker.get_volume.side_effect = HypervisorError("pool inactive")
        ctx = _ctx(provider_data, state=MachineState(uuid="u", vm_vol_name="req-1.qcow2", pool_name="default"))
        ctx.request = decode_machine_request(provider_data)

        outcome = pipeline.create_vm(ctx)

        assert outcome.action == RETRY
        broker.define_domain.assert_not_called()
        assert ctx.state.vm_name is None

    def test_defines_domain(self, pipeline, broker, provider_data):
        state = MachineState(
            uuid="7c3a1e6e-0000-4000-8000-000000000001",
            pool_name="default",
            vm_vol_name="req-1.qcow2",
            additional_disks=[],
            cidata_vol_name="req-1-cidata.iso",
        )
        ctx = _ctx(provider_data, state=state)
        ctx.request = decode_machine_request(provider_data)

        assert pipeline.create_vm(ctx).ok

        xml = broker.define_domain.call_args[0][0]
        assert "<name>req-1</name>" in xml
        assert 'volume="req-1-cidata.iso"' in xml
        assert ctx.state.vm_name == "req-1"

    def test_define_failure_retries(self, pipeline, broker, provider_data):
        broker.define_domain.side_effect = HypervisorError("invalid XML")
        ctx = _ctx(provider_data, state=MachineState(uuid="u", vm_vol_name="req-1.qcow2"))
        ctx.request = decode_machine_request(provider_data)

        outcome = pipeline.create_vm(ctx)

        assert outcome.action == RETRY
        assert ctx.state.vm_name is None


class TestStartVm:
    def _ctx(self, provider_data):
        return _ctx(provider_data, state=MachineState(vm_name="req-1"))

    def test_already_running(self, pipeline, broker, provider_data):
        broker.domain_state.return_value = (DOMAIN_RUNNING, 1)
        assert pipeline.start_vm(self._ctx(provider_data)).ok
        broker.start_domain.assert_not_called()

    def test_starts_stopped_domain(self, pipeline, broker, provider_data):
        assert pipeline.start_vm(self._ctx(provider_data)).ok
        broker.start_domain.assert_called_once_with(broker.lookup_domain.return_value)

    def test_already_running_error_is_success(self, pipeline, broker, provider_data):
        broker.start_domain.side_effect = HypervisorError(
            "starting domain req-1: Requested operation is not valid: domain is already running"
        )
        assert pipeline.start_vm(self._ctx(provider_data)).ok

    def test_start_failure_retries(self, pipeline, broker, provider_data):
        broker.start_domain.side_effect = HypervisorError("no memory")
        outcome = pipeline.start_vm(self._ctx(provider_data))
        assert outcome.action == RETRY
        assert outcome.delay == 10.0

    def test_lookup_failure_retries(self, pipeline, broker, provider_data):
        broker.lookup_domain.side_effect = DomainNotFoundError("gone")
        outcome = pipeline.start_vm(self._ctx(provider_data))
        assert outcome.action == RETRY

    def test_waits_for_definition(self, pipeline, provider_data):
        ctx = _ctx(provider_data)
        with pytest.raises(RetryableError, match="waiting for domain definition"):
            pipeline.start_vm(ctx)
