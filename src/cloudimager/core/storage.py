"""
Object storage clients used by the object-storage outlet.

The outlet talks to any object implementing :class:`StorageClient`. The
bundled :class:`S3StorageClient` uploads through aioboto3, which is an
optional dependency (``pip install 'cloudimager[s3]'``).
"""

import logging
from typing import Dict, Optional, Protocol, runtime_checkable
from urllib.parse import urlparse

try:
    import aioboto3
except ImportError:
    aioboto3 = None

logger = logging.getLogger(__name__)

# HTTP style headers understood by S3 put_object
_PUT_OBJECT_HEADERS = {
    "content-type": "ContentType",
    "x-amz-acl": "ACL",
    "cache-control": "CacheControl",
    "content-disposition": "ContentDisposition",
    "content-encoding": "ContentEncoding",
    "content-language": "ContentLanguage",
}
_METADATA_PREFIX = "x-amz-meta-"


@runtime_checkable
class StorageClient(Protocol):
    """
    Minimal interface of a remote object store.

    ``provider``, ``protocol``, ``region`` and ``servers_url`` are only used
    to compute a public base URL when the outlet is not given one. Clients
    may also offer ``async delete(container, remote)``, which the outlet uses
    to remove uploads of an image that failed.
    """

    provider: str
    protocol: str
    region: Optional[str]
    servers_url: str

    async def upload(
        self,
        container: str,
        remote: str,
        body: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> bool:
        """Store ``body`` under ``remote`` and report whether it was stored."""
        ...


def default_base_url(client: StorageClient, container: str) -> str:
    """
    Compute the public URL prefix for objects of a container.

    AWS regions map to ``s3.amazonaws.com`` (``us-standard``) or
    ``s3-<region>.amazonaws.com``; clients without a region use their
    ``servers_url``.
    """
    domain = client.servers_url
    region = getattr(client, "region", None)
    if region:
        domain = ("s3-" + region if region != "us-standard" else "s3") + ".amazonaws.com"
    return f"{client.protocol}{domain}/{container}/"


def put_object_arguments(headers: Optional[Dict[str, str]]) -> Dict[str, object]:
    """Translate HTTP style upload headers into put_object keyword arguments."""
    arguments: Dict[str, object] = {}
    metadata: Dict[str, str] = {}

    for name, value in (headers or {}).items():
        key = name.lower()
        if key in _PUT_OBJECT_HEADERS:
            arguments[_PUT_OBJECT_HEADERS[key]] = value
        elif key.startswith(_METADATA_PREFIX):
            metadata[key[len(_METADATA_PREFIX):]] = value
        else:
            metadata[key] = value

    if metadata:
        arguments["Metadata"] = metadata
    return arguments


class S3StorageClient:
    """
    Amazon S3 (or S3 compatible) storage client built on aioboto3.

    Args:
        region: AWS region, ``us-standard`` is accepted as an alias of us-east-1
        access_key_id: AWS access key id, falls back to the boto credential chain
        secret_access_key: AWS secret access key
        endpoint_url: Custom endpoint for S3 compatible services
        protocol: Scheme prefix used when building public URLs
    """

    provider = "amazon"

    def __init__(
        self,
        region: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        protocol: str = "https://",
    ):
        if aioboto3 is None:
            raise ImportError(
                "AWS S3 support requires 'aioboto3'. "
                "Install with: pip install 'cloudimager[s3]'"
            )

        self.region = region
        self.protocol = protocol
        self.endpoint_url = endpoint_url
        self.servers_url = (
            urlparse(endpoint_url).netloc if endpoint_url else "s3.amazonaws.com"
        )
        self._session = aioboto3.Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name="us-east-1" if region == "us-standard" else region,
        )

    async def upload(
        self,
        container: str,
        remote: str,
        body: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> bool:
        async with self._session.client("s3", endpoint_url=self.endpoint_url) as s3:
            await s3.put_object(
                Bucket=container,
                Key=remote,
                Body=body,
                **put_object_arguments(headers),
            )

        logger.info(f"Uploaded {len(body)} bytes to s3://{container}/{remote}")
        return True

    async def delete(self, container: str, remote: str) -> None:
        """Remove an uploaded object."""
        async with self._session.client("s3", endpoint_url=self.endpoint_url) as s3:
            await s3.delete_object(Bucket=container, Key=remote)

        logger.info(f"Deleted s3://{container}/{remote}")
