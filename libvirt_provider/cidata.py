"""NoCloud (cidata) bootstrap payload for provisioned guests."""

from __future__ import annotations

import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Dict

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from libvirt_provider.constants import CIDATA_VOLUME_LABEL, DEFAULT_USER_DATA
from libvirt_provider.exceptions import ManagerError
from libvirt_provider.utils import run

# (meta-data, user-data, network-config) -> ISO bytes
IsoEncoder = Callable[[str, str, str], bytes]


def meta_data(hostname: str) -> str:
    return f"local-hostname: {hostname}\n"


def network_config() -> str:
    """DHCP on every ``en*`` / ``eth*`` interface."""
    ethernets: Dict[str, object] = {}
    for key, pattern in (("all-en", "en*"), ("all-eth", "eth*")):
        ethernets[key] = {"match": {"name": pattern}, "dhcp4": True, "dhcp6": True}
    return yaml.safe_dump({"version": 2, "ethernets": ethernets}, sort_keys=False, default_flow_style=False)


def encode_iso(meta: str, user: str, network: str) -> bytes:
    """Pack the three NoCloud documents into an ISO9660 image labelled ``cidata``."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        (tmp / "meta-data").write_text(meta, encoding="utf-8")
        (tmp / "user-data").write_text(user, encoding="utf-8")
        (tmp / "network-config").write_text(network, encoding="utf-8")
        output = tmp / "cidata.iso"
        cmd = [
            "genisoimage",
            "-output",
            str(output),
            "-volid",
            CIDATA_VOLUME_LABEL,
            "-joliet",
            "-rock",
            str(tmp / "meta-data"),
            str(tmp / "user-data"),
            str(tmp / "network-config"),
        ]
        try:
            run(cmd, capture_output=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise ManagerError(f"error generating cidata ISO: {exc}") from exc
        return output.read_bytes()


def build_cidata(hostname: str, encoder: IsoEncoder = encode_iso) -> bytes:
    return encoder(meta_data(hostname), DEFAULT_USER_DATA, network_config())
