"""
Pipeline executor for cloudimager.

This module applies one preset to one image: every variant pipeline runs
against its own fresh manipulator handle, the finished handle is passed to
the outlet, and the outlet references are collected per variant name.
"""

import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Tuple

from ..errors import CloudImagerError, OutletError, TransformStepError
from ..models import ORIGINAL_VARIANT, FileDescriptor, OutletContext, Preset
from .concurrency import VARIANT_CONCURRENCY, bounded_gather
from .manipulators import ImageHandle, ImageManipulator
from .processors import Step

logger = logging.getLogger(__name__)

Outlet = Callable[[ImageHandle, OutletContext], Awaitable[Any]]


async def apply_preset(
    image: FileDescriptor,
    preset: Preset,
    outlet: Outlet,
    manipulator: ImageManipulator,
) -> Dict[str, Any]:
    """
    Produce and persist every variant of a preset for one image.

    Variants run concurrently, at most VARIANT_CONCURRENCY at a time. The
    first failing variant cancels the others and its error is raised, so the
    caller either gets every variant or nothing. Variants stored before the
    failure are handed back to the outlet's ``discard`` hook when it has one.

    Args:
        image: Descriptor of the source image
        preset: Preset whose variants are applied
        outlet: Persists a finished handle and returns its reference
        manipulator: Opens image handles on a path

    Returns:
        Dict[str, Any]: Outlet reference per variant name, plus ``original``
        when the preset keeps the original

    Raises:
        TransformStepError: If opening the image or any step fails
        OutletError: If the outlet fails to persist a variant
    """
    start_time = time.time()
    variant_names = list(preset.variants)
    logger.debug(
        f"Applying preset '{preset.name}' to {image.name}: {', '.join(variant_names)}"
    )
    stored: List[Tuple[str, Any]] = []

    async def _process_variant(variant_name: str) -> Any:
        handle = _open_handle(manipulator, image, variant_name)
        opened = [handle]
        try:
            handle = await run_steps(handle, preset.variants[variant_name], image, variant_name)
            if handle not in opened:
                opened.append(handle)
            context = OutletContext(image=image, preset=preset.name, variant=variant_name)
            reference = await store(outlet, handle, context)
            stored.append((variant_name, reference))
            return reference
        finally:
            _close_handles(opened)

    try:
        results = await bounded_gather(variant_names, _process_variant, VARIANT_CONCURRENCY)
        variants = dict(zip(variant_names, results))

        if preset.keep_original:
            handle = _open_handle(manipulator, image, ORIGINAL_VARIANT)
            try:
                context = OutletContext(
                    image=image, preset=preset.name, variant=ORIGINAL_VARIANT
                )
                variants[ORIGINAL_VARIANT] = await store(outlet, handle, context)
            finally:
                _close_handles([handle])
    except BaseException:
        await discard_stored(outlet, image, stored)
        raise

    logger.info(
        f"Stored {len(variants)} variant(s) of {image.name} "
        f"in {time.time() - start_time:.2f}s"
    )
    return variants


async def run_steps(
    handle: ImageHandle,
    steps: Sequence[Step],
    image: FileDescriptor,
    variant_name: str,
) -> ImageHandle:
    """
    Apply the steps of one variant in order.

    A step may return a handle, ``None`` to keep the current handle, or an
    awaitable resolving to either.

    Raises:
        TransformStepError: Wrapping the first exception raised by a step
    """
    for index, step in enumerate(steps, start=1):
        try:
            result = step(handle)
            if inspect.isawaitable(result):
                result = await result
        except CloudImagerError:
            raise
        except Exception as e:
            logger.error(
                f"Step {index} of variant '{variant_name}' failed for {image.name}: {e}"
            )
            raise TransformStepError(
                f"Step {index} of variant '{variant_name}' failed for {image.name}: {e}",
                variant=variant_name,
            ) from e

        if result is not None:
            handle = result

    return handle


async def store(outlet: Outlet, handle: ImageHandle, context: OutletContext) -> Any:
    """
    Hand a finished handle to the outlet and return its reference.

    Raises:
        OutletError: Wrapping any exception raised by the outlet
    """
    try:
        reference = outlet(handle, context)
        if inspect.isawaitable(reference):
            reference = await reference
        return reference
    except CloudImagerError:
        raise
    except Exception as e:
        logger.error(
            f"Outlet failed for variant '{context.variant}' of {context.image.name}: {e}"
        )
        raise OutletError(
            f"Failed to store variant '{context.variant}' of {context.image.name}: {e}",
            variant=context.variant,
        ) from e


async def discard_stored(
    outlet: Outlet, image: FileDescriptor, stored: List[Tuple[str, Any]]
) -> None:
    """
    Ask the outlet to remove variants of a failed image that were already stored.

    Outlets opt in by providing a ``discard(reference)`` method (sync or
    async). Failures are logged, the original error is what the caller sees.
    """
    discard = getattr(outlet, "discard", None)
    if discard is None or not stored:
        return

    for variant_name, reference in stored:
        try:
            result = discard(reference)
            if inspect.isawaitable(result):
                await result
            logger.debug(f"Discarded variant '{variant_name}' of {image.name}")
        except Exception as e:
            logger.warning(
                f"Failed to discard variant '{variant_name}' of {image.name}: {e}"
            )


def _open_handle(
    manipulator: ImageManipulator, image: FileDescriptor, variant_name: str
) -> ImageHandle:
    try:
        return manipulator(image.path)
    except Exception as e:
        raise TransformStepError(
            f"Could not open {image.path}: {e}", variant=variant_name
        ) from e


def _close_handles(handles: List[ImageHandle]) -> None:
    for handle in handles:
        close = getattr(handle, "close", None)
        if close is None:
            continue
        try:
            close()
        except Exception as e:
            logger.warning(f"Failed to close image handle: {e}")
