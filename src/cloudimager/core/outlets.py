"""
Outlets persist processed image handles and return durable references.

An outlet is any callable ``(handle, context) -> reference`` (sync or
async). The two outlets in this module are usually created through
:meth:`CloudImager.local_directory_outlet` and
:meth:`CloudImager.object_storage_outlet`, which bind them to the
orchestrator whose file name settings and manipulator they use.
"""

import asyncio
import logging
import os
import posixpath
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple, Union

import aiofiles
import aiofiles.os

from ..errors import OutletError
from ..models import ImageSize, OutletContext, SizedReference
from .concurrency import settle
from .formatting import FileNameTemplate
from .manipulators import ImageHandle
from .storage import StorageClient, default_base_url

if TYPE_CHECKING:
    from .imager import CloudImager

logger = logging.getLogger(__name__)

RETURN_TYPES = ("relative", "url", "absolute")


class LocalDirectoryOutlet:
    """
    Writes variants below a local upload directory.

    The file name comes from the orchestrator's formatter. Files are written
    to a hidden sibling first and renamed into place, so a failed write never
    leaves a partial artifact under the final name.

    Args:
        imager: Orchestrator providing file name formatting and defaults
        upload_directory: Target directory, relative paths resolve against cwd;
            falls back to the orchestrator's upload directory
        file_name_format: File name template overriding the orchestrator's
        cwd: Base directory for relative references and relative upload dirs
        return_type: ``relative`` (to cwd), ``url`` (``/`` + relative) or
            ``absolute``
        include_size: Return a SizedReference with the written dimensions
    """

    def __init__(
        self,
        imager: "CloudImager",
        upload_directory: Optional[Union[str, Path]] = None,
        file_name_format: Optional[FileNameTemplate] = None,
        cwd: Optional[Union[str, Path]] = None,
        return_type: str = "relative",
        include_size: bool = False,
    ):
        if return_type not in RETURN_TYPES:
            raise ValueError(
                f"return_type must be one of {', '.join(RETURN_TYPES)}, got '{return_type}'"
            )

        self.imager = imager
        self.upload_directory = upload_directory
        self.file_name_format = file_name_format
        self.cwd = Path(cwd).resolve() if cwd is not None else Path.cwd()
        self.return_type = return_type
        self.include_size = include_size

    def resolve_directory(self) -> Path:
        """Return the absolute upload directory currently in effect."""
        directory = self.upload_directory or self.imager.upload_directory or "."
        return (self.cwd / directory).resolve()

    async def __call__(self, handle: ImageHandle, context: OutletContext) -> Any:
        destination = self.imager.format_file_name(self.file_name_format, context)
        absolute_path = self.resolve_directory() / destination

        await aiofiles.os.makedirs(absolute_path.parent, exist_ok=True)

        temp_path = absolute_path.with_name(f".{context.image.uid}-{absolute_path.name}")

        async def _place() -> None:
            await handle.write(temp_path)
            await aiofiles.os.replace(temp_path, absolute_path)

        placement = asyncio.ensure_future(_place())
        try:
            await settle(placement)
            logger.info(f"Stored variant '{context.variant}' at {absolute_path}")
            reference = self._reference(absolute_path)
            if self.include_size:
                size = await _measure_size(self.imager, absolute_path)
                return SizedReference(url=reference, size=size)
            return reference
        except BaseException:
            await _discard(temp_path)
            if _succeeded(placement):
                await _discard(absolute_path)
            raise

    async def discard(self, reference: Any) -> None:
        """Remove a file previously stored by this outlet."""
        await _discard(self._path_of(reference))

    def _path_of(self, reference: Any) -> Path:
        if isinstance(reference, SizedReference):
            reference = reference.url
        if self.return_type == "absolute":
            return Path(reference)
        return self.cwd / reference.lstrip("/")

    def _reference(self, absolute_path: Path) -> str:
        if self.return_type == "absolute":
            return str(absolute_path)
        relative = Path(os.path.relpath(absolute_path, self.cwd)).as_posix()
        if self.return_type == "url":
            return "/" + relative
        return relative


class ObjectStorageOutlet:
    """
    Uploads variants to a container of a remote object store.

    Args:
        imager: Orchestrator providing file name formatting and defaults
        client: Storage client performing the upload
        container: Bucket or container name
        base_url: Public URL prefix of the container; computed from the client
            when omitted
        headers: Extra upload headers, overriding the defaults
        include_size: Return a SizedReference with the uploaded dimensions
        file_name_format: File name template overriding the orchestrator's
        upload_directory: Key prefix; falls back to the orchestrator's upload
            directory
    """

    def __init__(
        self,
        imager: "CloudImager",
        client: StorageClient,
        container: str,
        base_url: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        include_size: bool = False,
        file_name_format: Optional[FileNameTemplate] = None,
        upload_directory: Optional[Union[str, Path]] = None,
    ):
        if not container:
            raise ValueError("Container name cannot be empty")

        self.imager = imager
        self.client = client
        self.container = container
        self.base_url = base_url or default_base_url(client, container)
        self.headers = dict(headers or {})
        self.include_size = include_size
        self.file_name_format = file_name_format
        self.upload_directory = upload_directory

    def destination_key(self, context: OutletContext) -> str:
        """Return the object key a context is stored under."""
        destination = self.imager.format_file_name(self.file_name_format, context)
        directory = self.upload_directory or self.imager.upload_directory
        if directory:
            destination = posixpath.join(Path(directory).as_posix(), destination)
        return destination

    def upload_headers(self, context: OutletContext) -> Dict[str, str]:
        """Return the default upload headers updated with the configured ones."""
        headers = {"content-type": context.image.type}
        if self.client.provider == "amazon":
            headers["x-amz-acl"] = "public-read"
        headers.update(self.headers)
        return headers

    async def __call__(self, handle: ImageHandle, context: OutletContext) -> Any:
        destination = self.destination_key(context)
        headers = self.upload_headers(context)

        size: Optional[ImageSize] = None
        if self.include_size:
            body, size = await self._materialize(handle, context)
        else:
            body = await settle(handle.to_bytes())

        uploaded = await self.client.upload(
            container=self.container,
            remote=destination,
            body=body,
            headers=headers,
        )
        if not uploaded:
            raise OutletError(
                f"Upload of {destination} to {self.container} was not completed",
                variant=context.variant,
            )

        url = self.base_url + destination
        logger.info(f"Stored variant '{context.variant}' at {url}")
        if size is not None:
            return SizedReference(url=url, size=size)
        return url

    async def discard(self, reference: Any) -> None:
        """Delete an object previously uploaded by this outlet, if the client can."""
        url = reference.url if isinstance(reference, SizedReference) else reference
        if not url.startswith(self.base_url):
            logger.warning(f"Cannot discard {url}: not under {self.base_url}")
            return
        delete = getattr(self.client, "delete", None)
        if delete is None:
            logger.warning(f"Cannot discard {url}: storage client does not support deletion")
            return
        try:
            await delete(container=self.container, remote=url[len(self.base_url):])
        except Exception as e:
            logger.warning(f"Failed to delete {url}: {e}")

    async def _materialize(
        self, handle: ImageHandle, context: OutletContext
    ) -> Tuple[bytes, ImageSize]:
        """Write the handle to a temporary file to measure its final dimensions."""
        temp_fd, temp_name = tempfile.mkstemp(
            suffix=context.image.mime_extension, prefix="cloudimager_"
        )
        os.close(temp_fd)
        temp_path = Path(temp_name)

        try:
            await settle(handle.write(temp_path))
            size = await _measure_size(self.imager, temp_path)
            async with aiofiles.open(temp_path, "rb") as f:
                body = await f.read()
            return body, size
        finally:
            await _discard(temp_path)


async def _measure_size(imager: "CloudImager", path: Path) -> ImageSize:
    handle = imager.image_manipulator(str(path))
    try:
        return await settle(handle.size())
    finally:
        close = getattr(handle, "close", None)
        if close is not None:
            close()


async def _discard(path: Path) -> None:
    if not await aiofiles.os.path.exists(path):
        return
    try:
        await aiofiles.os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")


def _succeeded(task: "asyncio.Future[Any]") -> bool:
    return task.done() and not task.cancelled() and task.exception() is None
