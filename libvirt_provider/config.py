"""Configuration loading and provider data decoding for the libvirt infra provider."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from libvirt_provider.constants import (
    DEFAULT_CACHE_PATH,
    DEFAULT_CLEANUP_INTERVAL,
    DEFAULT_MAX_AGE,
    DOWNLOAD_TIMEOUT,
    IMAGE_FACTORY_URL,
    LIBVIRT_URI,
    SUPPORTED_NETWORK_MODELS,
)
from libvirt_provider.exceptions import ConfigError
from libvirt_provider.models import (
    AdditionalDiskConfig,
    MachineRequest,
    NetworkInterfaceConfig,
    ProviderConfig,
)
from libvirt_provider.utils import log, parse_positive_int, parse_seconds


def _load_mapping(raw: Union[str, bytes, Dict[str, Any], None], what: str) -> Dict[str, Any]:
    if raw is None:
        raise ConfigError(f"{what} is missing")
    if isinstance(raw, (str, bytes)):
        try:
            raw = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ConfigError(f"{what} contains invalid YAML: {exc}")
    if not isinstance(raw, dict):
        raise ConfigError(f"{what} must be a mapping, got {type(raw).__name__}")
    return raw


def _decode_additional_disks(raw: Any) -> List[AdditionalDiskConfig]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError("additional_disks must be a list")
    disks = []
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigError(f"additional_disks[{idx}] must be a mapping")
        disk_type = str(entry.get("type") or "").strip().lower()
        if not disk_type:
            raise ConfigError(f"additional_disks[{idx}].type must be set")
        size = parse_positive_int(f"additional_disks[{idx}].size", entry.get("size"))
        disks.append(AdditionalDiskConfig(type=disk_type, size=size))
    return disks


def _decode_network_interfaces(raw: Any, fallback_network: Optional[str]) -> List[NetworkInterfaceConfig]:
    if not raw:
        if fallback_network:
            return [NetworkInterfaceConfig(network=fallback_network)]
        return []
    if not isinstance(raw, list):
        raise ConfigError("network_interfaces must be a list")
    interfaces = []
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigError(f"network_interfaces[{idx}] must be a mapping")
        network = str(entry.get("network_name") or entry.get("network") or "").strip()
        if not network:
            raise ConfigError(f"network_interfaces[{idx}].network_name must be set")
        driver = str(entry.get("driver") or "virtio").strip().lower()
        if driver not in SUPPORTED_NETWORK_MODELS:
            supported = ", ".join(sorted(SUPPORTED_NETWORK_MODELS))
            raise ConfigError(f"Unsupported network driver '{driver}'. Supported: {supported}")
        interfaces.append(NetworkInterfaceConfig(network=network, driver=driver))
    return interfaces


def decode_machine_request(raw: Union[str, bytes, Dict[str, Any], None]) -> MachineRequest:
    """Decode loosely-typed provider data into a :class:`MachineRequest`.

    Any decode failure is a :class:`ConfigError`; retrying will not fix it.
    """
    data = _load_mapping(raw, "Provider data")

    storage_pool = str(data.get("storage_pool") or "").strip()
    if not storage_pool:
        raise ConfigError("storage_pool must be set")

    network = data.get("network")
    return MachineRequest(
        cores=parse_positive_int("cores", data.get("cores")),
        memory=parse_positive_int("memory", data.get("memory")),
        disk_size=parse_positive_int("disk_size", data.get("disk_size")),
        storage_pool=storage_pool,
        additional_disks=_decode_additional_disks(data.get("additional_disks")),
        network_interfaces=_decode_network_interfaces(
            data.get("network_interfaces"),
            str(network).strip() if network else None,
        ),
    )


def load_provider_config(config_path: Optional[Path] = None) -> ProviderConfig:
    """Read the provider config file, falling back to environment defaults.

    Expected layout::

        libvirt:
          uri: qemu+ssh://root@host/system
        image_cache:
          path: /var/cache/omni-libvirt
          max_age: 3600
          cleanup_interval: 3600
          download_timeout: 120
          factory_url: https://factory.talos.dev
    """
    data: Dict[str, Any] = {}
    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Provider config missing: {config_path}")
        try:
            data = _load_mapping(config_path.read_text(), f"Provider config {config_path}")
        except OSError as exc:
            raise ConfigError(f"Cannot read provider config {config_path}: {exc}")

    libvirt_section = data.get("libvirt") or {}
    cache_section = data.get("image_cache") or {}
    if not isinstance(libvirt_section, dict) or not isinstance(cache_section, dict):
        raise ConfigError("'libvirt' and 'image_cache' sections must be mappings")

    uri = str(libvirt_section.get("uri") or "").strip() or LIBVIRT_URI
    cache_path = Path(cache_section["path"]) if cache_section.get("path") else DEFAULT_CACHE_PATH
    factory_url = str(cache_section.get("factory_url") or "").strip() or IMAGE_FACTORY_URL

    cfg = ProviderConfig(
        libvirt_uri=uri,
        cache_path=cache_path,
        image_factory_url=factory_url.rstrip("/"),
        cache_max_age=parse_seconds("image_cache.max_age", cache_section.get("max_age", DEFAULT_MAX_AGE)),
        cache_cleanup_interval=parse_seconds(
            "image_cache.cleanup_interval",
            cache_section.get("cleanup_interval", DEFAULT_CLEANUP_INTERVAL),
        ),
        download_timeout=parse_seconds(
            "image_cache.download_timeout",
            cache_section.get("download_timeout", DOWNLOAD_TIMEOUT),
        ),
    )
    log("DEBUG", f"libvirt URI: {cfg.libvirt_uri}, image cache: {cfg.cache_path}")
    return cfg
