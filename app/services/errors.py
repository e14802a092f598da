"""Error taxonomy shared by the admission, resolution and retention services."""


class CDNError(Exception):
    """Base class for every error the core raises."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class BlockedError(CDNError):
    """Extension or content type is on the blocklist."""

    status_code = 415

    def __init__(self, file_type: str):
        super().__init__(f"'{file_type}' is not allowed.")
        self.file_type = file_type


class TooLargeError(CDNError):
    """Upload exceeds the ceiling that applies to the uploader's role."""

    status_code = 413

    def __init__(self, size_bytes: int, limit_bytes: int):
        super().__init__(
            f"File too big ({size_bytes} bytes). Maximum allowed is {humanize_bytes(limit_bytes)}"
        )
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class InvalidUrlError(CDNError):
    status_code = 400

    def __init__(self, url: str, reason: str = "Invalid URL format"):
        super().__init__(f"{reason}: '{url}'")
        self.url = url


class MissingFieldError(CDNError):
    status_code = 400

    def __init__(self, field_name: str):
        super().__init__(f"Missing required field: '{field_name}'")
        self.field_name = field_name


class NotFoundError(CDNError):
    status_code = 404

    def __init__(self, identifier: str):
        super().__init__(f"Could not find file '{identifier}'")
        self.identifier = identifier


class StorageFailure(CDNError):
    """Blob or metadata store read/write failed."""

    status_code = 500


class BlobNotFoundError(StorageFailure):
    status_code = 404

    def __init__(self, identifier: str):
        super().__init__(f"Blob {identifier} not found")
        self.identifier = identifier


class IdentifierExhaustedError(CDNError):
    """No free identifier after the retry budget; the ID length is too short."""

    def __init__(self, attempts: int, length: int):
        super().__init__(f"Failed to generate a free identifier of length {length} after {attempts} attempts")
        self.attempts = attempts
        self.length = length


class ConfigurationError(Exception):
    """Raised at startup when the settings are unusable."""


_SUFFIXES = ("B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB", "YiB")


def humanize_bytes(size: int) -> str:
    """Format a byte count with binary suffixes, e.g. ``512 MiB``."""
    value = float(size)
    for suffix in _SUFFIXES:
        if value < 1024 or suffix == _SUFFIXES[-1]:
            if suffix == "B":
                return f"{int(value)} B"
            text = f"{int(value * 100) / 100:.2f}".rstrip("0").rstrip(".")
            return f"{text} {suffix}"
        value /= 1024
