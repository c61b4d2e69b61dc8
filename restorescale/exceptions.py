"""Error taxonomy for the restoration/upscaling pipeline."""


class RestoreScaleError(Exception):
    """Base class for every pipeline failure."""


class CacheError(RestoreScaleError):
    """Model cache storage failed. Never escapes the cache itself."""


class NetworkFetchError(RestoreScaleError):
    """Downloading model weights failed (non-2xx, timeout, connection)."""

    def __init__(self, message: str, url: str = "", status_code: int = 0):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class BackendInitError(RestoreScaleError):
    """An inference session could not be compiled for the requested backend."""


class InferenceError(RestoreScaleError):
    """A session run failed or produced no usable output."""


class ProtocolMisuseError(RestoreScaleError):
    """The orchestrator was driven out of order (caller bug)."""


__all__ = [
    "RestoreScaleError",
    "CacheError",
    "NetworkFetchError",
    "BackendInitError",
    "InferenceError",
    "ProtocolMisuseError",
]
