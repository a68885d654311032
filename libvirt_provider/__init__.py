"""libvirt infra provider package."""

__all__ = [
    "cidata",
    "cli",
    "config",
    "constants",
    "domain",
    "exceptions",
    "hypervisor",
    "images",
    "models",
    "network",
    "pipeline",
    "teardown",
    "utils",
]
