"""Network interface XML generation for the libvirt infra provider."""

from __future__ import annotations

from xml.etree.ElementTree import Element, SubElement

from libvirt_provider.exceptions import ConfigError
from libvirt_provider.models import NetworkInterfaceConfig


def render_interface(config: NetworkInterfaceConfig) -> Element:
    """Build an ``<interface type='network'>`` element attached to a libvirt network.

    No MAC address is set; libvirt generates one when the domain is defined.
    """
    if not config.network:
        raise ConfigError("network interface must name a libvirt network")
    iface = Element("interface", type="network")
    SubElement(iface, "source", network=config.network)
    SubElement(iface, "model", type=config.driver or "virtio")
    return iface
