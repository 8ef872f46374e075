"""
Exception hierarchy for cloudimager.

Every failure surfaced by the orchestrator derives from CloudImagerError so
callers can catch the whole family at once, while the concrete classes keep
their natural builtin bases for code that only expects ValueError or
LookupError.
"""

from typing import Optional


class CloudImagerError(Exception):
    """Base exception for cloudimager errors."""

    pass


class UnsupportedFormatError(CloudImagerError, ValueError):
    """Raised when an input image has a missing or unsupported MIME type."""

    pass


class UnknownPresetError(CloudImagerError, LookupError):
    """Raised when processing is requested with an unregistered preset."""

    def __init__(self, preset_name: str):
        super().__init__(f'Non-existing preset "{preset_name}"')
        self.preset_name = preset_name


class TransformStepError(CloudImagerError):
    """Raised when a transformation step of a variant pipeline fails."""

    def __init__(self, message: str, variant: Optional[str] = None):
        super().__init__(message)
        self.variant = variant


class OutletError(CloudImagerError):
    """Raised when an outlet fails to persist a processed image."""

    def __init__(self, message: str, variant: Optional[str] = None):
        super().__init__(message)
        self.variant = variant
