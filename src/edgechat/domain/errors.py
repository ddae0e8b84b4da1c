from __future__ import annotations


class IngestionError(Exception):
    """Attachment could not be turned into prompt text. Never fatal to a turn."""

    def __init__(self, message: str, filename: str | None = None) -> None:
        super().__init__(message)
        self.filename = filename


class AttachmentNotFound(IngestionError):
    pass


class UnsupportedFormat(IngestionError):
    pass


class DecodeFailed(IngestionError):
    def __init__(self, message: str, filename: str | None = None, decoder: str | None = None) -> None:
        super().__init__(message, filename)
        self.decoder = decoder


class EngineInitError(RuntimeError):
    pass


class GenerationError(RuntimeError):
    pass


class ResetError(RuntimeError):
    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts
