"""
Orchestration layer for cloudimager package.

:class:`CloudImager` holds the preset registry and the process-wide options
(default outlet, file name format and formatter, result transformator and
image manipulator), and exposes :meth:`CloudImager.process`, which applies a
preset to a batch of images and returns where every variant was stored.

Presets and options are meant to be configured before the first ``process``
call; options are read once at the start of each call.
"""

import inspect
import logging
import os
import time
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..errors import UnknownPresetError
from ..models import DEFAULT_PRESET, FileDescriptor, OutletContext, Preset, UploadRecord
from .concurrency import IMAGE_CONCURRENCY, bounded_gather
from .formatting import (
    DEFAULT_FILE_NAME_FORMAT,
    FileNameFormatter,
    FileNameTemplate,
    format_file_name,
)
from .manipulators import ImageManipulator, PillowManipulator
from .outlets import LocalDirectoryOutlet, ObjectStorageOutlet
from .pipeline import Outlet, apply_preset
from .storage import S3StorageClient, StorageClient

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

ResultTransformator = Callable[[List[Dict[str, Any]], str, bool], Any]


def default_result_transformator(
    results: List[Dict[str, Any]], preset_name: str, is_single: bool
) -> Any:
    """Unwrap the result of a single image, return batches unchanged."""
    return results[0] if is_single else results


class ImagerOptions(BaseModel):
    """Process-wide configuration of a CloudImager instance."""

    default_outlet: Optional[Any] = Field(
        default=None, description="Outlet callable or directory path used by default"
    )

    upload_directory: Optional[Union[str, Path]] = Field(
        default=None,
        description="Directory (local) or key prefix (object storage) for outlets",
    )

    file_name_format: Union[str, Callable[..., str]] = Field(
        default=DEFAULT_FILE_NAME_FORMAT, description="Default file name template"
    )

    file_name_formatter: Callable[..., str] = Field(
        default=format_file_name, description="Resolves templates against a context"
    )

    result_transformator: Callable[..., Any] = Field(
        default=default_result_transformator,
        description="Reshapes per-image results before they are returned",
    )

    image_manipulator: Callable[..., Any] = Field(
        default_factory=PillowManipulator,
        description="Opens image handles on a path",
    )

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=True)


def _option(name: str, doc: str) -> property:
    def getter(self: "CloudImager") -> Any:
        return getattr(self.options, name)

    def setter(self: "CloudImager", value: Any) -> None:
        setattr(self.options, name, value)

    return property(getter, setter, doc=doc)


class CloudImager:
    """
    Applies named presets to images and persists every variant via outlets.

    Example:
        >>> imager = CloudImager(upload_directory="output")
        >>> imager.preset({"square": smart_crop(100, 100)}, keep_original=False)
        >>> await imager.process("cat.jpg")
        {'square': 'output/3f2a..._square.jpg'}
    """

    default_outlet = _option("default_outlet", "Outlet used when none is given")
    upload_directory = _option("upload_directory", "Default upload directory")
    file_name_format = _option("file_name_format", "Default file name template")
    file_name_formatter = _option("file_name_formatter", "Template formatter")
    result_transformator = _option("result_transformator", "Result reshaping hook")
    image_manipulator = _option("image_manipulator", "Image handle factory")

    def __init__(self, options: Optional[ImagerOptions] = None, **overrides: Any):
        self.options = options.model_copy() if options is not None else ImagerOptions()
        for name, value in overrides.items():
            if name not in ImagerOptions.model_fields:
                raise TypeError(f"Unknown CloudImager option: {name}")
            setattr(self.options, name, value)
        self._presets: Dict[str, Preset] = {}

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CloudImager":
        """
        Build an orchestrator from loaded configuration.

        When an S3 bucket is configured the default outlet uploads there,
        otherwise variants are written to the configured upload directory.
        """
        defaults = settings.defaults
        imager = cls(file_name_format=defaults.file_name_format)

        if settings.s3 is not None:
            client = S3StorageClient(
                region=settings.s3.region,
                access_key_id=settings.s3.access_key_id,
                secret_access_key=settings.s3.secret_access_key,
                endpoint_url=settings.s3.endpoint_url,
            )
            imager.default_outlet = imager.object_storage_outlet(
                client,
                settings.s3.bucket,
                base_url=settings.s3.base_url,
                include_size=defaults.include_size,
                upload_directory=settings.s3.upload_directory,
            )
        else:
            imager.upload_directory = defaults.upload_directory
            imager.default_outlet = imager.local_directory_outlet(
                return_type=defaults.return_type,
                include_size=defaults.include_size,
            )
        return imager

    # Preset registry

    def preset(
        self,
        name: Union[str, Dict[str, Any]],
        variants: Optional[Dict[str, Any]] = None,
        **options: Any,
    ) -> None:
        """
        Register a preset, replacing any preset of the same name.

        Can be called as ``preset(name, variants, **options)`` or, for the
        ``default`` preset, as ``preset(variants, **options)``.

        Args:
            name: Preset name, or the variants mapping for the default preset
            variants: Variant name to a step or an ordered list of steps
            **options: ``keep_original``, ``outlet``, ``file_name_format``
        """
        if not isinstance(name, str):
            if variants is not None:
                raise TypeError("Variants given twice")
            name, variants = DEFAULT_PRESET, name
        if variants is None:
            raise ValueError(f"Preset '{name}' needs variants")

        self._presets[name] = Preset(name=name, variants=variants, **options)
        logger.info(f"Registered preset '{name}' with variants: {', '.join(variants)}")

    def has_preset(self, name: str) -> bool:
        return name in self._presets

    def get_preset(self, name: str) -> Preset:
        """Return a registered preset, raising UnknownPresetError if missing."""
        try:
            return self._presets[name]
        except KeyError:
            raise UnknownPresetError(name) from None

    # Naming and outlets

    def format_file_name(
        self, template: Optional[FileNameTemplate], context: OutletContext
    ) -> str:
        """
        Resolve the file name of a variant.

        The explicit template wins, then the preset's ``file_name_format``,
        then the orchestrator's ``file_name_format``.
        """
        if not template:
            preset = self._presets.get(context.preset)
            template = (preset and preset.file_name_format) or self.file_name_format
        formatter: FileNameFormatter = self.file_name_formatter
        return formatter(template, context)

    def local_directory_outlet(self, **options: Any) -> LocalDirectoryOutlet:
        """Create a LocalDirectoryOutlet bound to this orchestrator."""
        return LocalDirectoryOutlet(self, **options)

    def object_storage_outlet(
        self, client: StorageClient, container: str, **options: Any
    ) -> ObjectStorageOutlet:
        """Create an ObjectStorageOutlet bound to this orchestrator."""
        return ObjectStorageOutlet(self, client, container, **options)

    def resolve_outlet(self, outlet: Optional[Any], preset: Preset) -> Outlet:
        """
        Pick the outlet for a call.

        Order: explicit argument, preset outlet, default outlet, then a local
        directory outlet. Directory paths are shorthand for a local directory
        outlet rooted there.
        """
        if outlet is None:
            outlet = preset.outlet or self.default_outlet or self.local_directory_outlet()
        if isinstance(outlet, (str, os.PathLike)):
            outlet = self.local_directory_outlet(upload_directory=outlet)
        if not callable(outlet):
            raise TypeError(f"Outlet must be callable, got {type(outlet).__name__}")
        return outlet

    # Processing

    async def process(
        self,
        images: Any,
        preset_name: Union[str, Outlet] = DEFAULT_PRESET,
        outlet: Optional[Any] = None,
    ) -> Any:
        """
        Apply a preset to one image or a batch of images.

        Args:
            images: A path or upload record, or any iterable of them
            preset_name: Name of a registered preset; an outlet callable may be
                given here instead, in which case the default preset is used
            outlet: Outlet callable or directory path overriding the defaults

        Returns:
            Any: For a single image, a dict of variant name to reference; for
            a batch, a list of such dicts in input order (after passing
            through the result transformator)

        Raises:
            UnknownPresetError: If the preset is not registered
            UnsupportedFormatError: If an image has an unsupported type
            TransformStepError: If a transformation step fails
            OutletError: If an outlet fails to store a variant
        """
        if callable(preset_name) and outlet is None:
            preset_name, outlet = DEFAULT_PRESET, preset_name

        preset = self.get_preset(preset_name)
        is_single = _is_single(images)
        sources = [images] if is_single else list(images)

        effective_outlet = self.resolve_outlet(outlet, preset)
        manipulator: ImageManipulator = self.image_manipulator
        transformator: ResultTransformator = self.result_transformator

        start_time = time.time()
        logger.info(f"Processing {len(sources)} image(s) with preset '{preset.name}'")

        async def _process_image(source: Any) -> Dict[str, Any]:
            image = FileDescriptor.from_source(source)
            return await apply_preset(image, preset, effective_outlet, manipulator)

        try:
            results = await bounded_gather(sources, _process_image, IMAGE_CONCURRENCY)
        except Exception as e:
            logger.error(f"Preset '{preset.name}' failed: {e}")
            raise

        logger.info(
            f"Processed {len(sources)} image(s) with preset '{preset.name}' "
            f"in {time.time() - start_time:.2f}s"
        )

        transformed = transformator(results, preset.name, is_single)
        if inspect.isawaitable(transformed):
            transformed = await transformed
        return transformed


def _is_single(images: Any) -> bool:
    """Paths, mappings and upload records are one image; other iterables are a batch."""
    if isinstance(images, (str, bytes, os.PathLike, Mapping, UploadRecord)):
        return True
    return not isinstance(images, Iterable)
