"""Idempotent libvirt primitives for storage volumes and domains."""

from __future__ import annotations

from typing import BinaryIO, Optional, Tuple
from xml.etree.ElementTree import Element, SubElement, tostring

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from libvirt_provider.constants import LIBVIRT_URI
from libvirt_provider.exceptions import (
    DomainNotFoundError,
    HypervisorError,
    VolumeNotFoundError,
)
from libvirt_provider.utils import log


def error_code(exc: libvirt.libvirtError) -> Optional[int]:
    return exc.get_error_code()


def error_message(exc: libvirt.libvirtError) -> str:
    return exc.get_error_message() or str(exc)


def render_volume_xml(name: str, fmt: str, capacity: int) -> str:
    """Thin-provisioned volume: nothing allocated up front, ``capacity`` bytes declared."""
    volume = Element("volume", type="file")
    SubElement(volume, "name").text = name
    SubElement(volume, "allocation", unit="bytes").text = "0"
    SubElement(volume, "capacity", unit="bytes").text = str(capacity)
    target = SubElement(volume, "target")
    SubElement(target, "format", type=fmt)
    return tostring(volume, encoding="unicode")


class LibvirtBroker:
    """Thin wrapper over a libvirt connection.

    Handles are never cached; every call re-resolves the object by name so
    libvirt stays the only source of truth. Missing objects are reported with
    :class:`VolumeNotFoundError` / :class:`DomainNotFoundError`, everything
    else with :class:`HypervisorError` naming the operation that failed.
    """

    def __init__(self, conn: Optional[libvirt.virConnect] = None) -> None:
        self.conn = conn

    @classmethod
    def connect(cls, uri: str = LIBVIRT_URI) -> "LibvirtBroker":
        try:
            conn = libvirt.open(uri)
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to open libvirt connection to {uri}: {error_message(exc)}") from exc
        if conn is None:
            raise HypervisorError(f"Failed to open libvirt connection to {uri}")
        log("INFO", f"Connected to libvirt at {uri} (version {conn.getLibVersion()})")
        return cls(conn)

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _conn(self) -> libvirt.virConnect:
        if self.conn is None:
            raise HypervisorError("libvirt connection not established")
        return self.conn

    # -- storage ---------------------------------------------------------

    def get_pool(self, pool_name: str) -> libvirt.virStoragePool:
        try:
            return self._conn().storagePoolLookupByName(pool_name)
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"looking up storage pool {pool_name}: {error_message(exc)}") from exc

    def get_volume(self, pool_name: str, vol_name: str) -> libvirt.virStorageVol:
        pool = self.get_pool(pool_name)
        try:
            return pool.storageVolLookupByName(vol_name)
        except libvirt.libvirtError as exc:
            if error_code(exc) == libvirt.VIR_ERR_NO_STORAGE_VOL:
                raise VolumeNotFoundError(f"volume {pool_name}/{vol_name} does not exist") from exc
            raise HypervisorError(f"looking up volume {pool_name}/{vol_name}: {error_message(exc)}") from exc

    def create_volume(self, pool_name: str, vol_name: str, fmt: str, capacity: int) -> libvirt.virStorageVol:
        """Get-or-create: an existing volume is returned unchanged."""
        try:
            return self.get_volume(pool_name, vol_name)
        except VolumeNotFoundError:
            pass

        pool = self.get_pool(pool_name)
        try:
            vol = pool.createXML(render_volume_xml(vol_name, fmt, capacity), 0)
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"creating volume {pool_name}/{vol_name}: {error_message(exc)}") from exc
        log("INFO", f"Created volume {pool_name}/{vol_name} ({fmt}, {capacity} bytes)")
        return vol

    def delete_volume(self, vol: libvirt.virStorageVol) -> None:
        try:
            vol.delete(0)
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"deleting volume {vol.name()}: {error_message(exc)}") from exc

    def resize_volume(self, vol: libvirt.virStorageVol, capacity: int) -> None:
        try:
            vol.resize(capacity, 0)
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"expanding volume {vol.name()} to {capacity} bytes: {error_message(exc)}") from exc

    def upload_volume(self, vol: libvirt.virStorageVol, source: BinaryIO) -> None:
        """Stream ``source`` into the volume from offset 0."""
        conn = self._conn()
        try:
            stream = conn.newStream(0)
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"opening upload stream for {vol.name()}: {error_message(exc)}") from exc

        def _read(_stream, nbytes, fh):
            return fh.read(nbytes)

        try:
            vol.upload(stream, 0, 0, 0)
            stream.sendAll(_read, source)
            stream.finish()
        except (libvirt.libvirtError, OSError) as exc:
            try:
                stream.abort()
            except libvirt.libvirtError:
                log("DEBUG", f"Could not abort upload stream for {vol.name()}")
            message = error_message(exc) if isinstance(exc, libvirt.libvirtError) else str(exc)
            raise HypervisorError(f"uploading to volume {vol.name()}: {message}") from exc

    # -- domains ---------------------------------------------------------

    def lookup_domain(self, name: str) -> libvirt.virDomain:
        try:
            return self._conn().lookupByName(name)
        except libvirt.libvirtError as exc:
            if error_code(exc) == libvirt.VIR_ERR_NO_DOMAIN:
                raise DomainNotFoundError(f"domain {name} not found") from exc
            raise HypervisorError(f"looking up domain {name}: {error_message(exc)}") from exc

    def lookup_domain_by_uuid(self, uuid: str) -> libvirt.virDomain:
        try:
            return self._conn().lookupByUUIDString(uuid)
        except libvirt.libvirtError as exc:
            if error_code(exc) == libvirt.VIR_ERR_NO_DOMAIN:
                raise DomainNotFoundError(f"no domain with UUID {uuid}") from exc
            raise HypervisorError(f"looking up domain by UUID {uuid}: {error_message(exc)}") from exc

    def domain_state(self, dom: libvirt.virDomain) -> Tuple[int, int]:
        try:
            state, reason = dom.state()
        except libvirt.libvirtError as exc:
            if error_code(exc) == libvirt.VIR_ERR_NO_DOMAIN:
                raise DomainNotFoundError(f"domain {dom.name()} vanished") from exc
            raise HypervisorError(f"fetching state of domain {dom.name()}: {error_message(exc)}") from exc
        return state, reason

    def define_domain(self, xml: str) -> libvirt.virDomain:
        """Define or redefine a domain; libvirt replaces any definition with the same name."""
        try:
            dom = self._conn().defineXML(xml)
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"defining domain: {error_message(exc)}") from exc
        if dom is None:
            raise HypervisorError("defining domain: libvirt returned no domain")
        return dom

    def start_domain(self, dom: libvirt.virDomain) -> None:
        try:
            dom.create()
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"starting domain {dom.name()}: {error_message(exc)}") from exc

    def destroy_domain(self, dom: libvirt.virDomain) -> None:
        try:
            dom.destroy()
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"destroying domain {dom.name()}: {error_message(exc)}") from exc

    def undefine_domain(self, dom: libvirt.virDomain) -> None:
        try:
            dom.undefine()
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"undefining domain {dom.name()}: {error_message(exc)}") from exc
