"""
Core data models for cloudimager package.

This module defines Pydantic models for input images, presets, outlet
contexts and the structured references returned by outlets.
"""

import mimetypes
import os
import uuid
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import UnsupportedFormatError

# Supported MIME types and the canonical extension written for each
MIME_EXTENSIONS: Dict[str, str] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
}

ORIGINAL_VARIANT = "original"
DEFAULT_PRESET = "default"

MimeLookup = Callable[[str], Optional[str]]


def default_mime_lookup(filename: str) -> Optional[str]:
    """Guess a MIME type from a filename using the standard mimetypes table."""
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type


class UploadRecord(BaseModel):
    """
    An already-uploaded file, as handed over by a web framework.

    Only ``path``, ``name`` and ``type`` are recognized; anything else on the
    originating record is ignored.
    """

    path: str = Field(..., description="Location of the uploaded file")
    name: str = Field(..., description="Original filename of the upload")
    type: Optional[str] = Field(default=None, description="Declared MIME type")

    model_config = ConfigDict(extra="ignore")


ImageSource = Union[str, "os.PathLike[str]", UploadRecord, Mapping]


class FileDescriptor(BaseModel):
    """
    Describes one input image and the values derived from it.

    Descriptors are built with :meth:`from_source` and never change after
    construction. ``mime_extension`` and ``uid`` are derived, not supplied.
    """

    path: str
    name: str
    type: str
    extension: str
    basename: str
    mime_extension: str
    uid: str

    model_config = ConfigDict(frozen=True, extra="forbid")

    @classmethod
    def from_source(
        cls, source: ImageSource, mime_lookup: Optional[MimeLookup] = None
    ) -> "FileDescriptor":
        """
        Build a descriptor from a filesystem path or an upload record.

        Args:
            source: Path to an image file, an UploadRecord, or a mapping with
                ``path``/``name``/``type`` keys
            mime_lookup: Function mapping a filename to a MIME type, used for
                plain paths only

        Returns:
            FileDescriptor: The populated descriptor

        Raises:
            UnsupportedFormatError: If the MIME type is missing or unsupported
            TypeError: If the source is of an unrecognized kind
        """
        if isinstance(source, Mapping):
            source = UploadRecord.model_validate(dict(source))

        if isinstance(source, UploadRecord):
            path, name, mime_type = source.path, source.name, source.type
        elif isinstance(source, (str, os.PathLike)):
            path = os.fspath(source)
            name = os.path.basename(path)
            mime_type = (mime_lookup or default_mime_lookup)(name)
        else:
            raise TypeError(
                f"Expected a path or an upload record, got {type(source).__name__}"
            )

        if not mime_type or mime_type not in MIME_EXTENSIONS:
            raise UnsupportedFormatError(
                f"Unknown or incompatible image format: {mime_type}"
            )

        basename, extension = os.path.splitext(name)
        return cls(
            path=path,
            name=name,
            type=mime_type,
            extension=extension,
            basename=basename,
            mime_extension="." + MIME_EXTENSIONS[mime_type],
            uid=uuid.uuid4().hex[:16],
        )


class Preset(BaseModel):
    """
    A named bundle of variant pipelines plus persistence options.

    Each variant maps to an ordered list of steps. A step is a callable that
    receives an image handle and returns the (possibly new) handle, ``None``
    to keep the current one, or an awaitable resolving to either.
    """

    name: str = Field(default=DEFAULT_PRESET, min_length=1)

    variants: Dict[str, List[Callable[..., Any]]] = Field(
        ..., description="Variant name to ordered transformation steps"
    )

    keep_original: bool = Field(
        default=True,
        description="Also persist the untouched source under 'original'",
    )

    outlet: Optional[Any] = Field(
        default=None,
        description="Outlet callable or directory path overriding the default",
    )

    file_name_format: Optional[Union[str, Callable[..., str]]] = Field(
        default=None, description="File name template overriding the default"
    )

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("variants", mode="before")
    @classmethod
    def normalize_variants(cls, v: Any) -> Dict[str, List[Any]]:
        """Wrap single steps into one-element lists and reject empty presets."""
        if not isinstance(v, Mapping):
            raise ValueError("Variants must be a mapping of name to steps")
        if not v:
            raise ValueError("A preset needs at least one variant")

        normalized = {}
        for variant_name, steps in v.items():
            if variant_name == ORIGINAL_VARIANT:
                raise ValueError(f"'{ORIGINAL_VARIANT}' is a reserved variant name")
            if callable(steps):
                steps = [steps]
            steps = list(steps)
            if not all(callable(step) for step in steps):
                raise ValueError(f"Every step of variant '{variant_name}' must be callable")
            normalized[str(variant_name)] = steps
        return normalized

    @field_validator("outlet")
    @classmethod
    def validate_outlet(cls, v: Any) -> Any:
        """Accept outlet callables and directory paths only."""
        if v is None or callable(v) or isinstance(v, (str, os.PathLike)):
            return v
        raise ValueError("Outlet must be a callable or a directory path")


class OutletContext(BaseModel):
    """
    Per-(image, variant) metadata handed to the file name formatter and outlet.

    Extra keyword fields are allowed and become template placeholders.
    """

    image: FileDescriptor
    preset: str
    variant: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="allow")

    def template_fields(self) -> Dict[str, Any]:
        """Return every context field except the image descriptor."""
        return self.model_dump(exclude={"image"})


class ImageSize(BaseModel):
    """Pixel dimensions of an image."""

    width: int = Field(..., ge=0)
    height: int = Field(..., ge=0)


class SizedReference(BaseModel):
    """Outlet reference that also carries the stored image dimensions."""

    url: str
    size: ImageSize
