"""
Ready-made transformation steps for presets.

A step is called with an image handle and returns the handle to continue
with. ``operation`` turns any named manipulator operation into a step;
``smart_crop`` is a composite step that fills a target box exactly.
"""

from numbers import Real
from typing import Any, Awaitable, Callable

from .manipulators import ImageHandle

Step = Callable[[ImageHandle], Any]


def operation(name: str, *args: Any, **kwargs: Any) -> Callable[[ImageHandle], ImageHandle]:
    """
    Build a step that forwards one named operation to the handle.

    Example:
        >>> preset = {"sepia": operation("sepia"), "small": operation("resize", 320)}
    """

    def step(handle: ImageHandle) -> ImageHandle:
        return handle.apply(name, *args, **kwargs)

    step.__name__ = f"operation_{name}"
    return step


def smart_crop(width: int, height: int) -> Callable[[ImageHandle], Awaitable[ImageHandle]]:
    """
    Build a step that resizes and center-crops an image to exactly width x height.

    The image is scaled so that it covers the target box, cropped around the
    center when the aspect ratios differ, and stripped of profiles.

    Raises:
        ValueError: If width or height is not a number larger than zero
    """
    if not _is_number(width) or not _is_number(height):
        raise ValueError("Invalid sizing, width and height must be numeric")
    if width < 1 or height < 1:
        raise ValueError("Invalid sizing, width and height must be larger than zero")

    async def step(handle: ImageHandle) -> ImageHandle:
        size = await handle.size()
        if not size.width or not size.height:
            raise ValueError("Could not get size of image")

        target_ratio = width / height
        actual_ratio = size.width / size.height

        # Fix the dimension that needs the larger scale, keep the other proportional
        handle = handle.apply(
            "resize",
            width if target_ratio >= actual_ratio else None,
            height if target_ratio <= actual_ratio else None,
        )
        if target_ratio != actual_ratio:
            handle = handle.apply("gravity", "center").apply("crop", width, height)
        return handle.apply("no_profile").apply("auto_orient")

    step.__name__ = f"smart_crop_{width}x{height}"
    return step


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)
