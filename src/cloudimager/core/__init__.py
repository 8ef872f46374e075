"""
Core functionality for cloudimager package.

This package contains the orchestrator, the pipeline executor, the outlet
and storage abstractions, and the bundled Pillow image manipulator.
"""

from .concurrency import IMAGE_CONCURRENCY, VARIANT_CONCURRENCY, bounded_gather, settle
from .formatting import DEFAULT_FILE_NAME_FORMAT, format_file_name
from .imager import CloudImager, ImagerOptions
from .manipulators import ImageHandle, PillowHandle, PillowManipulator
from .outlets import LocalDirectoryOutlet, ObjectStorageOutlet
from .pipeline import apply_preset, discard_stored
from .processors import operation, smart_crop
from .storage import S3StorageClient, StorageClient

__all__ = [
    "IMAGE_CONCURRENCY",
    "VARIANT_CONCURRENCY",
    "bounded_gather",
    "settle",
    "DEFAULT_FILE_NAME_FORMAT",
    "format_file_name",
    "CloudImager",
    "ImagerOptions",
    "ImageHandle",
    "PillowHandle",
    "PillowManipulator",
    "LocalDirectoryOutlet",
    "ObjectStorageOutlet",
    "apply_preset",
    "discard_stored",
    "operation",
    "smart_crop",
    "S3StorageClient",
    "StorageClient",
]
