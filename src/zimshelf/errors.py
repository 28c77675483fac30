"""Typed errors raised by the library services and translated by the routers."""

from zimshelf.services.disk_space import format_gb


class CatalogUnavailableError(Exception):
    """The remote catalog could not be reached or its feed could not be parsed."""


class UpstreamUnavailableError(Exception):
    """The download server refused or failed the initial request."""


class DownloadAlreadyInProgressError(Exception):
    def __init__(self, filename: str) -> None:
        self.filename = filename
        super().__init__(f"Download already in progress: {filename}")


class ArchiveExistsError(Exception):
    def __init__(self, filename: str) -> None:
        self.filename = filename
        super().__init__(f"ZIM file already exists: {filename}")


class DownloadCorruptError(Exception):
    def __init__(self, filename: str, expected: int, actual: int) -> None:
        self.filename = filename
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Downloaded file {filename} is {actual} bytes, expected {expected}; discarded"
        )


class InsufficientDiskSpaceError(Exception):
    def __init__(self, available: int, required: int) -> None:
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient disk space. Available: {format_gb(available)}, "
            f"Required: {format_gb(required)}"
        )


class NoUpdateAvailableError(Exception):
    def __init__(self) -> None:
        super().__init__("No update available. Check for updates first.")


class UpdateFinalizationError(Exception):
    """Swapping in a downloaded update failed; the previous file was restored."""


class ArchiveNotQuarantinedError(Exception):
    def __init__(self, archive_id: int) -> None:
        self.archive_id = archive_id
        super().__init__(f"ZIM archive {archive_id} is not quarantined")


class ContentUnavailableError(Exception):
    """kiwix-serve could not be reached or returned unreadable output."""
