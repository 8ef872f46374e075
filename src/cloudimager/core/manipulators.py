"""
Image manipulation backends for cloudimager.

The orchestrator only relies on the :class:`ImageHandle` protocol: open a
handle on a path, forward named operations to it, and finally write or
serialize the result. :class:`PillowManipulator` is the bundled
implementation; it queues operations and renders them lazily in a worker
thread so that decoding and encoding never block the event loop.
"""

import asyncio
import io
import logging
import threading
from pathlib import Path
from typing import (
    Any,
    Callable,
    List,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
    Union,
    runtime_checkable,
)

from PIL import Image, ImageChops, ImageEnhance, ImageFilter, ImageOps

from ..models import ImageSize
from .concurrency import settle

logger = logging.getLogger(__name__)

Destination = Union[str, Path]
R = TypeVar("R")


@runtime_checkable
class ImageHandle(Protocol):
    """A stateful reference to an image being transformed."""

    async def size(self) -> ImageSize:
        """Return the current pixel dimensions."""
        ...

    def apply(self, operation: str, *args: Any, **kwargs: Any) -> "ImageHandle":
        """Queue a named operation and return the handle for chaining."""
        ...

    async def write(self, destination: Destination) -> None:
        """Render and write the image to a local file."""
        ...

    async def to_bytes(self) -> bytes:
        """Render and return the encoded image."""
        ...

    def close(self) -> None:
        """Release any resources held by the handle."""
        ...


ImageManipulator = Callable[[str], ImageHandle]

# Gravity name to (horizontal, vertical) anchor fractions used by crop
GRAVITY_ANCHORS = {
    "northwest": (0.0, 0.0),
    "north": (0.5, 0.0),
    "northeast": (1.0, 0.0),
    "west": (0.0, 0.5),
    "center": (0.5, 0.5),
    "east": (1.0, 0.5),
    "southwest": (0.0, 1.0),
    "south": (0.5, 1.0),
    "southeast": (1.0, 1.0),
}

OPERATIONS = frozenset(
    {
        "auto_orient",
        "blur",
        "colorize",
        "contrast",
        "crop",
        "equalize",
        "flip",
        "flop",
        "gravity",
        "grayscale",
        "modulate",
        "negative",
        "no_profile",
        "normalize",
        "quality",
        "resize",
        "rotate",
        "sepia",
        "sharpen",
        "strip",
        "thumbnail",
        "trim",
    }
)


class PillowHandle:
    """
    Image handle backed by Pillow.

    Operations are recorded by :meth:`apply` and executed the next time the
    image is rendered (size lookup, write or serialization). Rendering runs in
    a worker thread; awaiting callers only resume once that thread is done,
    even when they are cancelled, and :meth:`close` called while a thread
    still works on the image is deferred until it finishes.
    """

    def __init__(self, path: Destination):
        self.path = str(path)
        self._pending: List[Tuple[str, tuple, dict]] = []
        self._image: Optional[Image.Image] = None
        self._format: Optional[str] = None
        self._gravity = "northwest"
        self._quality: Optional[int] = None
        self._strip = False
        self._lock = threading.Lock()
        self._active = 0
        self._close_requested = False

    def apply(self, operation: str, *args: Any, **kwargs: Any) -> "PillowHandle":
        if operation not in OPERATIONS:
            raise ValueError(f"Unsupported image operation: {operation}")
        self._pending.append((operation, args, kwargs))
        return self

    async def size(self) -> ImageSize:
        width, height = await self._in_thread(self._measure)
        return ImageSize(width=width, height=height)

    async def write(self, destination: Destination) -> None:
        await self._in_thread(self._save, str(destination), destination)

    async def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        await self._in_thread(self._save, buffer)
        return buffer.getvalue()

    def close(self) -> None:
        with self._lock:
            if self._active:
                self._close_requested = True
                return
        self._release()

    async def _in_thread(self, work: Callable[..., R], *args: Any) -> R:
        return await settle(asyncio.to_thread(self._exclusive, work, *args))

    def _exclusive(self, work: Callable[..., R], *args: Any) -> R:
        with self._lock:
            self._active += 1
        try:
            return work(*args)
        finally:
            with self._lock:
                self._active -= 1
                release = self._close_requested and not self._active
                if release:
                    self._close_requested = False
            if release:
                self._release()

    def _release(self) -> None:
        if self._image is not None:
            self._image.close()
            self._image = None
        self._pending.clear()

    def _measure(self) -> Tuple[int, int]:
        return self._render().size

    def _render(self) -> Image.Image:
        if self._image is None:
            image = Image.open(self.path)
            image.load()
            self._format = image.format
            self._image = image

        while self._pending:
            operation, args, kwargs = self._pending.pop(0)
            logger.debug(f"Applying {operation}{args} to {self.path}")
            handler = getattr(self, f"_op_{operation}")
            self._image = handler(self._image, *args, **kwargs)

        return self._image

    def _resolve_format(self, destination: Optional[Destination]) -> str:
        if destination is not None:
            extension = Path(destination).suffix.lower()
            registered = Image.registered_extensions().get(extension)
            if registered:
                return registered
        return self._format or "PNG"

    def _save(
        self, target: Union[str, io.BytesIO], destination: Optional[Destination] = None
    ) -> None:
        image = self._render()
        image_format = self._resolve_format(destination)
        params: dict = {}

        if image_format == "JPEG" and image.mode not in ("RGB", "L", "CMYK"):
            image = image.convert("RGB")
        if self._quality is not None:
            params["quality"] = self._quality
        if not self._strip:
            for key in ("icc_profile", "exif"):
                if image.info.get(key):
                    params[key] = image.info[key]

        image.save(target, format=image_format, **params)

    # Operations

    def _op_resize(
        self, image: Image.Image, width: Optional[int] = None, height: Optional[int] = None
    ) -> Image.Image:
        current_width, current_height = image.size
        if width and height:
            scale = min(width / current_width, height / current_height)
        elif width:
            scale = width / current_width
        elif height:
            scale = height / current_height
        else:
            return image

        new_size = (
            max(1, round(current_width * scale)),
            max(1, round(current_height * scale)),
        )
        return image.resize(new_size, Image.Resampling.LANCZOS)

    def _op_gravity(self, image: Image.Image, gravity: str) -> Image.Image:
        name = gravity.replace("_", "").lower()
        if name not in GRAVITY_ANCHORS:
            raise ValueError(f"Unknown gravity: {gravity}")
        self._gravity = name
        return image

    def _op_crop(
        self, image: Image.Image, width: int, height: int, x: int = 0, y: int = 0
    ) -> Image.Image:
        current_width, current_height = image.size
        width = min(width, current_width)
        height = min(height, current_height)
        anchor_x, anchor_y = GRAVITY_ANCHORS[self._gravity]

        left = min(max(round((current_width - width) * anchor_x) + x, 0), current_width - width)
        top = min(max(round((current_height - height) * anchor_y) + y, 0), current_height - height)
        return image.crop((left, top, left + width, top + height))

    def _op_blur(
        self, image: Image.Image, radius: float, sigma: Optional[float] = None
    ) -> Image.Image:
        return image.filter(ImageFilter.GaussianBlur(sigma if sigma is not None else radius))

    def _op_sepia(self, image: Image.Image) -> Image.Image:
        toned = ImageOps.colorize(ImageOps.grayscale(image), "#2b1d0e", "#fff4dc")
        if image.mode == "RGBA":
            toned.putalpha(image.getchannel("A"))
        return toned

    def _op_colorize(
        self,
        image: Image.Image,
        red: float,
        green: Optional[float] = None,
        blue: Optional[float] = None,
    ) -> Image.Image:
        # A single value applies to all channels
        green = red if green is None else green
        blue = red if blue is None else blue
        image = _as_rgb(image)

        bands = list(image.split())
        for index, percent in enumerate((red, green, blue)):
            amount = max(-100.0, min(100.0, float(percent))) / 100.0
            if amount >= 0:
                bands[index] = bands[index].point(lambda v, a=amount: v + (255 - v) * a)
            else:
                bands[index] = bands[index].point(lambda v, a=amount: v * (1 + a))
        return Image.merge(image.mode, bands)

    def _op_contrast(self, image: Image.Image, amount: Union[int, float, str] = 1) -> Image.Image:
        factor = max(0.0, 1.0 + 0.1 * float(str(amount)))
        return ImageEnhance.Contrast(_as_rgb(image)).enhance(factor)

    def _op_auto_orient(self, image: Image.Image) -> Image.Image:
        return ImageOps.exif_transpose(image)

    def _op_no_profile(self, image: Image.Image) -> Image.Image:
        self._strip = True
        image.info.pop("icc_profile", None)
        image.info.pop("exif", None)
        return image

    _op_strip = _op_no_profile

    def _op_rotate(self, image: Image.Image, degrees: float) -> Image.Image:
        # Positive angles rotate clockwise
        return image.rotate(-float(degrees), expand=True)

    def _op_flip(self, image: Image.Image) -> Image.Image:
        return ImageOps.flip(image)

    def _op_flop(self, image: Image.Image) -> Image.Image:
        return ImageOps.mirror(image)

    def _op_grayscale(self, image: Image.Image) -> Image.Image:
        return ImageOps.grayscale(image)

    def _op_quality(self, image: Image.Image, quality: int) -> Image.Image:
        self._quality = int(quality)
        return image

    def _op_thumbnail(self, image: Image.Image, width: int, height: int) -> Image.Image:
        thumbnail = image.copy()
        thumbnail.thumbnail((width, height))
        return thumbnail

    def _op_sharpen(
        self, image: Image.Image, radius: float, sigma: Optional[float] = None
    ) -> Image.Image:
        return image.filter(ImageFilter.UnsharpMask(radius=sigma if sigma is not None else radius))

    def _op_negative(self, image: Image.Image) -> Image.Image:
        return _keep_alpha(image, ImageOps.invert)

    def _op_equalize(self, image: Image.Image) -> Image.Image:
        return _keep_alpha(image, ImageOps.equalize)

    def _op_normalize(self, image: Image.Image) -> Image.Image:
        return _keep_alpha(image, ImageOps.autocontrast)

    def _op_modulate(
        self,
        image: Image.Image,
        brightness: float = 100,
        saturation: float = 100,
        hue: float = 100,
    ) -> Image.Image:
        # Percentages, 100 leaves a channel unchanged; hue 0 and 200 are -180 and +180 degrees
        def modulate(rgb: Image.Image) -> Image.Image:
            rgb = ImageEnhance.Brightness(rgb).enhance(float(brightness) / 100)
            rgb = ImageEnhance.Color(rgb).enhance(float(saturation) / 100)
            shift = round((float(hue) - 100) / 200 * 256)
            if shift % 256:
                h, s, v = rgb.convert("HSV").split()
                h = h.point(lambda value: (value + shift) % 256)
                rgb = Image.merge("HSV", (h, s, v)).convert("RGB")
            return rgb

        return _keep_alpha(image, modulate)

    def _op_trim(self, image: Image.Image) -> Image.Image:
        # Removes borders of the top-left pixel's color
        image = _as_rgb(image)
        background = Image.new(image.mode, image.size, image.getpixel((0, 0)))
        bbox = ImageChops.difference(image, background).convert("RGB").getbbox()
        return image.crop(bbox) if bbox else image


def _as_rgb(image: Image.Image) -> Image.Image:
    if image.mode in ("RGB", "RGBA"):
        return image
    if image.mode == "LA" or (image.mode == "P" and "transparency" in image.info):
        return image.convert("RGBA")
    return image.convert("RGB")


def _keep_alpha(
    image: Image.Image, transform: Callable[[Image.Image], Image.Image]
) -> Image.Image:
    """Apply an RGB-only transform, carrying the alpha channel over unchanged."""
    image = _as_rgb(image)
    if image.mode != "RGBA":
        return transform(image)
    result = transform(image.convert("RGB"))
    result.putalpha(image.getchannel("A"))
    return result


class PillowManipulator:
    """Opens :class:`PillowHandle` instances; the default image manipulator."""

    def __call__(self, path: Destination) -> PillowHandle:
        return PillowHandle(path)
