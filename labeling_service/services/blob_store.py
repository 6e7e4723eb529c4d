import asyncio
from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging

from google.api_core import exceptions as api_exceptions
from google.cloud import storage

from ..config import Settings
from ..errors import (
    TRANSIENT_API_ERRORS, SourceObjectMissing, StorageError, TransientInfrastructureError
)

logger = logging.getLogger(__name__)

class BlobNamespace(str, Enum):
    RAW = "raw"
    DERIVATIVE = "derivative"

@dataclass
class ObjectInfo:
    name: str
    size: Optional[int] = None
    created_at: Optional[datetime] = None

class BlobStore:
    """Google Cloud Storage access for the raw and derivative image buckets"""

    def __init__(self, settings: Settings, client: Optional[storage.Client] = None):
        self.settings = settings
        self.client = client or storage.Client(project=settings.google_cloud_project)
        self.timeout = settings.storage_timeout_seconds
        self.buckets: Dict[BlobNamespace, str] = {
            BlobNamespace.RAW: settings.raw_bucket,
            BlobNamespace.DERIVATIVE: settings.derivative_bucket,
        }

    def bucket_name(self, namespace: BlobNamespace) -> str:
        return self.buckets[BlobNamespace(namespace)]

    def namespace_for_bucket(self, bucket_name: str) -> Optional[BlobNamespace]:
        for namespace, name in self.buckets.items():
            if name == bucket_name:
                return namespace
        return None

    def _blob(self, namespace: BlobNamespace, key: str) -> storage.Blob:
        return self.client.bucket(self.bucket_name(namespace)).blob(key)

    def _translate(self, error: Exception, namespace: BlobNamespace, key: str) -> Exception:
        bucket = self.bucket_name(namespace)
        if isinstance(error, api_exceptions.NotFound):
            return SourceObjectMissing(bucket, key)
        if isinstance(error, TRANSIENT_API_ERRORS) or isinstance(error, OSError):
            return TransientInfrastructureError(
                f"Storage call on {bucket}/{key} failed: {str(error)}",
                details={'bucket': bucket, 'key': key}
            )
        return StorageError(
            f"Storage call on {bucket}/{key} rejected: {str(error)}",
            details={'bucket': bucket, 'key': key}
        )

    async def read(self, namespace: BlobNamespace, key: str) -> bytes:
        """Download an object; raises SourceObjectMissing when absent"""
        blob = self._blob(namespace, key)
        try:
            return await asyncio.to_thread(blob.download_as_bytes, timeout=self.timeout)
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, namespace, key) from e

    async def write(
        self,
        namespace: BlobNamespace,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream"
    ) -> None:
        blob = self._blob(namespace, key)
        try:
            await asyncio.to_thread(
                blob.upload_from_string, data, content_type=content_type, timeout=self.timeout
            )
            logger.debug(f"Wrote {len(data)} bytes to {self.bucket_name(namespace)}/{key}")
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, namespace, key) from e

    async def exists(self, namespace: BlobNamespace, key: str) -> bool:
        blob = self._blob(namespace, key)
        try:
            return await asyncio.to_thread(blob.exists, timeout=self.timeout)
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, namespace, key) from e

    async def delete(self, namespace: BlobNamespace, key: str) -> bool:
        """Delete an object. Returns False when it was already absent."""
        blob = self._blob(namespace, key)
        try:
            await asyncio.to_thread(blob.delete, timeout=self.timeout)
            return True
        except api_exceptions.NotFound:
            return False
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, namespace, key) from e

    def _fetch_page(
        self,
        namespace: BlobNamespace,
        prefix: str,
        page_size: int,
        page_token: Optional[str]
    ) -> Tuple[List[ObjectInfo], Optional[str]]:
        iterator = self.client.list_blobs(
            self.bucket_name(namespace),
            prefix=prefix,
            max_results=page_size,
            page_token=page_token,
            timeout=self.timeout
        )
        # Iterating the page performs the request
        page = next(iterator.pages, None)
        objects = [
            ObjectInfo(name=blob.name, size=blob.size, created_at=blob.time_created)
            for blob in page
        ] if page is not None else []
        return objects, iterator.next_page_token

    async def list_objects(
        self,
        namespace: BlobNamespace,
        prefix: str,
        page_size: int = 100,
        page_token: Optional[str] = None
    ) -> Tuple[List[ObjectInfo], Optional[str]]:
        """List one page of objects under a prefix"""
        try:
            return await asyncio.to_thread(self._fetch_page, namespace, prefix, page_size, page_token)
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, namespace, prefix) from e

    async def list_page(
        self,
        namespace: BlobNamespace,
        prefix: str,
        page_size: int = 100,
        page_token: Optional[str] = None
    ) -> Tuple[List[str], Optional[str]]:
        """List one page of object names under a prefix"""
        objects, next_token = await self.list_objects(namespace, prefix, page_size, page_token)
        return [obj.name for obj in objects], next_token
