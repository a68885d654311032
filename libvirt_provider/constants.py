"""Global constants and environment-derived defaults for the libvirt infra provider."""

from __future__ import annotations

import os
from pathlib import Path

TRUTHY = {"1", "true", "yes", "on"}

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")

MiB = 1024 * 1024
GiB = MiB * 1024

DISK_FORMAT_QCOW2 = "qcow2"
DISK_FORMAT_RAW = "raw"

# Image cache
DEFAULT_CACHE_PATH = Path(os.environ.get("IMAGE_CACHE_DIR", "/tmp/omni-libvirt-cache"))
IMAGE_FACTORY_URL = os.environ.get("IMAGE_FACTORY_URL", "https://factory.talos.dev")
IMAGE_ASSET = "metal-amd64.qcow2.gz"
DOWNLOAD_TEMP_PREFIX = "download-"
DOWNLOAD_TEMP_SUFFIX = ".tmp"
DEFAULT_CLEANUP_INTERVAL = float(os.environ.get("IMAGE_CACHE_CLEANUP_INTERVAL", "3600"))
DEFAULT_MAX_AGE = float(os.environ.get("IMAGE_CACHE_MAX_AGE", "3600"))
DOWNLOAD_TIMEOUT = float(os.environ.get("IMAGE_DOWNLOAD_TIMEOUT", "120"))
DOWNLOAD_CHUNK_SIZE = 1024 * 256  # 256 KiB
USER_AGENT = "libvirt-infra-provider/1.0"

# Retry hints handed back to the reconciliation driver (seconds)
RETRY_SHORT = 1.0
RETRY_STOPPING = 3.0
RETRY_DEFAULT = 10.0

# Domain layout
PRIMARY_DISK_DEV = "vda"
PRIMARY_DISK_BUS = "virtio"
SATA_DEV_PREFIX = "sd"
CIDATA_DISK_DEV = "sda"
GUEST_AGENT_CHANNEL = "org.qemu.guest_agent.0"
GUEST_AGENT_SOCKET_DIR = Path("/var/lib/libvirt/qemu/channel/target")

SUPPORTED_NETWORK_MODELS = {"virtio", "e1000", "e1000e", "rtl8139", "ne2k_pci", "pcnet", "vmxnet3"}

# Cloud-init NoCloud payload
CIDATA_VOLUME_LABEL = "cidata"
DEFAULT_USER_DATA = "#cloud-config\n"

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# virDomainState values reported by virDomainGetState
DOMAIN_RUNNING = 1
DOMAIN_SHUTDOWN = 4
DOMAIN_SHUTOFF = 5
