"""
Error hierarchy for the gateway.

Fatal job errors (origin, transcode, upload, timeout) are recorded on the
CacheJob and reported once to the next caller. Metadata lookup failures are
never fatal.
"""


class GatewayError(Exception):
    """Base class for every error raised by the gateway."""

    def describe(self) -> str:
        """Short form stored on a failed job: ``"<ErrorClass>: <message>"``."""
        return f"{type(self).__name__}: {self}"


class ConfigError(GatewayError):
    """Missing or invalid configuration."""


class InvalidContentId(GatewayError):
    """The supplied value does not contain a recognisable content id."""


class StorageError(GatewayError):
    """Transport-level failure talking to the durable store."""


class OriginSpawnError(GatewayError):
    """The fetch binary could not be started."""


class OriginExitError(GatewayError):
    """The fetch subprocess exited with a non-zero status."""

    def __init__(self, returncode: int, detail: str = ""):
        self.returncode = returncode
        self.detail = detail
        message = detail or f"yt-dlp exited with code {returncode}"
        super().__init__(message)


class TranscodeError(GatewayError):
    """The encoder failed for a reason other than a closed sink."""


class UploadError(GatewayError):
    """Writing the encoded object to the durable store failed."""


class MetadataLookupError(GatewayError):
    """Title/author lookup failed; playback continues with placeholders."""


class JobTimeoutError(GatewayError):
    """A cache job ran past the configured job timeout."""


def describe_error(error: BaseException) -> str:
    """Render any exception the way it is stored on a failed job."""
    if isinstance(error, GatewayError):
        return error.describe()
    return f"{type(error).__name__}: {error}"
