"""Exceptions raised by the card rendering and print export engine."""
from __future__ import annotations


class CardEngineError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(CardEngineError, ValueError):
    """Raised when a template or export configuration is malformed."""


class AssetLoadError(CardEngineError):
    """Raised when an image asset cannot be fetched or decoded."""

    def __init__(self, source: str, reason: str):
        super().__init__(f"Could not load asset {source!r}: {reason}")
        self.source = source
        self.reason = reason


class RenderError(CardEngineError):
    """Raised when drawing a card fails unexpectedly."""


class ExportError(CardEngineError):
    """Raised when an artifact cannot be serialised or written."""


class UnsupportedFormatError(ExportError):
    """Raised when an export format or feature is not implemented."""


class JobCancelledError(CardEngineError):
    """Raised when an export job is cancelled before its final flush."""
