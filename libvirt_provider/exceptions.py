"""Custom exceptions for the libvirt infra provider."""

from __future__ import annotations


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(ManagerError):
    """Malformed or missing machine request data. Never retried."""


class RetryableError(ManagerError):
    """Transient failure; the reconciliation driver should try again after ``delay`` seconds."""

    def __init__(self, message: str, delay: float = 10.0) -> None:
        super().__init__(message)
        self.delay = delay


class HypervisorError(ManagerError):
    """A libvirt call failed."""


class NotExistsError(HypervisorError):
    """The requested hypervisor object does not exist."""


class VolumeNotFoundError(NotExistsError):
    pass


class DomainNotFoundError(NotExistsError):
    pass


class ImageDownloadError(ManagerError):
    """Fetching an image from the image factory failed."""
