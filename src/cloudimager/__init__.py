"""
Cloudimager - an asynchronous batch image variant orchestrator.

This package applies named presets (sets of transformation pipelines) to
source images and persists every produced variant through pluggable outlets,
such as a local upload directory or an S3 bucket.
"""

# Runtime guard to ensure Pydantic v2 is installed
import pydantic

# Essential package-level exports for public API
from .config import Settings, load_config
from .core import (
    CloudImager,
    ImagerOptions,
    LocalDirectoryOutlet,
    ObjectStorageOutlet,
    PillowManipulator,
    S3StorageClient,
    format_file_name,
    operation,
    smart_crop,
)
from .errors import (
    CloudImagerError,
    OutletError,
    TransformStepError,
    UnknownPresetError,
    UnsupportedFormatError,
)
from .models import FileDescriptor, OutletContext, Preset, SizedReference, UploadRecord

assert pydantic.VERSION.startswith("2."), (
    f"Pydantic v2 or greater is required, but found version {pydantic.VERSION}. "
    "Please upgrade with: pip install 'pydantic>=2.0,<3.0'"
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "Settings",
    "load_config",
    "CloudImager",
    "ImagerOptions",
    "LocalDirectoryOutlet",
    "ObjectStorageOutlet",
    "PillowManipulator",
    "S3StorageClient",
    "format_file_name",
    "operation",
    "smart_crop",
    "CloudImagerError",
    "OutletError",
    "TransformStepError",
    "UnknownPresetError",
    "UnsupportedFormatError",
    "FileDescriptor",
    "OutletContext",
    "Preset",
    "SizedReference",
    "UploadRecord",
]
