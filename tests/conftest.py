"""
Shared pytest fixtures for cloudimager test suite.

This module provides reusable fixtures for sample images, descriptors and
instrumented fakes of the image manipulator and outlets used across multiple
test modules.
"""

import asyncio
import tempfile
import time
from pathlib import Path

import pytest
from PIL import Image

from cloudimager.core.imager import CloudImager
from cloudimager.models import FileDescriptor, ImageSize, UploadRecord


class FakeHandle:
    """Image handle that records operations instead of touching pixels."""

    def __init__(self, path, manipulator):
        self.path = path
        self.manipulator = manipulator
        self.operations = []
        self.closed = False

    def apply(self, operation, *args, **kwargs):
        self.operations.append((operation, args, kwargs))
        return self

    async def size(self):
        await asyncio.sleep(self.manipulator.delays.get(self.path, 0))
        width, height = self.manipulator.image_size
        return ImageSize(width=width, height=height)

    async def write(self, destination):
        await asyncio.sleep(0)
        Path(destination).write_bytes(self.render())

    async def to_bytes(self):
        await asyncio.sleep(0)
        return self.render()

    def render(self):
        names = ",".join(operation for operation, _, _ in self.operations)
        return f"{self.path}|{names}".encode()

    def close(self):
        if not self.closed:
            self.closed = True
            self.manipulator.open_handles -= 1


class FakeManipulator:
    """
    Manipulator that counts concurrently open handles.

    ``delays`` maps a path to the seconds each ``size`` call for that path
    waits, to simulate images that take different amounts of time.
    """

    def __init__(self, image_size=(200, 100), delays=None):
        self.image_size = image_size
        self.delays = delays or {}
        self.handles = []
        self.open_handles = 0
        self.peak_open_handles = 0

    def __call__(self, path):
        handle = FakeHandle(path, self)
        self.handles.append(handle)
        self.open_handles += 1
        self.peak_open_handles = max(self.peak_open_handles, self.open_handles)
        return handle

    @property
    def opened_paths(self):
        return [handle.path for handle in self.handles]


class RecordingOutlet:
    """Outlet returning ``<name>:<variant>`` and remembering every context and discard."""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.calls = []
        self.discarded = []

    async def __call__(self, handle, context):
        await asyncio.sleep(self.delay)
        self.calls.append((handle, context))
        return f"{context.image.name}:{context.variant}"

    async def discard(self, reference):
        self.discarded.append(reference)


class ThreadedWriteHandle:
    """Handle whose write blocks a worker thread for ``delay`` seconds, like an encoder."""

    def __init__(self, path, delay=0.2):
        self.path = path
        self.delay = delay
        self.closed = False

    def apply(self, operation, *args, **kwargs):
        return self

    async def size(self):
        return ImageSize(width=1, height=1)

    async def write(self, destination):
        await asyncio.to_thread(self._write, destination)

    async def to_bytes(self):
        return b"data"

    def _write(self, destination):
        time.sleep(self.delay)
        Path(destination).write_bytes(b"data")

    def close(self):
        self.closed = True


def make_image(path, size=(200, 100), color=(200, 40, 40), image_format=None):
    """Write a solid color image to ``path`` and return the path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    mode = "RGBA" if image_format == "PNG" else "RGB"
    Image.new(mode, size, color).save(path, format=image_format)
    return path


async def pause(handle):
    """Step that yields to the event loop and keeps the handle."""
    await asyncio.sleep(0.01)


@pytest.fixture
def temp_directory():
    """Provide a temporary directory for testing file operations."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir).resolve()


@pytest.fixture
def fake_manipulator():
    """Provide an instrumented FakeManipulator."""
    return FakeManipulator()


@pytest.fixture
def recording_outlet():
    """Provide a RecordingOutlet."""
    return RecordingOutlet()


@pytest.fixture
def imager(fake_manipulator):
    """Provide a CloudImager wired to the fake manipulator."""
    return CloudImager(image_manipulator=fake_manipulator)


@pytest.fixture
def sample_descriptor():
    """Provide a FileDescriptor for a JPEG upload."""
    return FileDescriptor.from_source(
        UploadRecord(path="/uploads/tmp-123", name="cat.jpg", type="image/jpeg")
    )


@pytest.fixture
def sample_jpeg(temp_directory):
    """Provide a real 200x100 JPEG file named cat.jpg."""
    return make_image(temp_directory / "input" / "cat.jpg", image_format="JPEG")


@pytest.fixture
def sample_png(temp_directory):
    """Provide a real 120x80 PNG file named logo.png."""
    return make_image(
        temp_directory / "input" / "logo.png",
        size=(120, 80),
        color=(10, 120, 200, 255),
        image_format="PNG",
    )


@pytest.fixture
def image_factory():
    """Provide the make_image helper."""
    return make_image


@pytest.fixture
def manipulator_factory():
    """Provide the FakeManipulator class for tests needing custom settings."""
    return FakeManipulator


@pytest.fixture
def outlet_factory():
    """Provide the RecordingOutlet class for tests needing custom settings."""
    return RecordingOutlet


@pytest.fixture
def pause_step():
    """Provide an async step that yields to the event loop."""
    return pause


@pytest.fixture
def threaded_write_handle():
    """Provide the ThreadedWriteHandle class."""
    return ThreadedWriteHandle
