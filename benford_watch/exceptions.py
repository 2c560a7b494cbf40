class BenfordWatchError(Exception):
    """Base class for errors raised by the analysis service."""


class EmptySourceError(BenfordWatchError):
    """The source produced no numeric tokens, so no run is started."""


class UnsupportedSourceError(BenfordWatchError):
    """The submitted file type cannot be analyzed in the requested mode."""


class ProducerFailure(BenfordWatchError):
    """An external producer (file read, OCR, download, decoding) failed."""

    def __init__(self, source: str, message: str, cause: Exception = None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.message = message
        self.cause = cause


class EngineUnavailableError(BenfordWatchError):
    """No OCR engine or coefficient decoder is plugged in for an image upload."""


class ConfigError(BenfordWatchError):
    pass
