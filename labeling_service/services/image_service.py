import asyncio
import mimetypes
import os
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional
import logging

from ..config import Settings
from ..database.datastore import MetadataStore
from ..errors import InvalidInputError, NotFound, TransientInfrastructureError
from ..models import DeleteOutcome, DeleteResult, ImagePage, ImageRef, ImageSummary
from .access_gateway import AccessGateway, ScopedBlobStore, parse_object_key
from .blob_store import BlobNamespace, BlobStore
from .retry_handler import RetryError, RetryHandler

logger = logging.getLogger(__name__)

PART_RAW = "raw"
PART_DERIVATIVE = "derivative"
PART_RECORD = "record"

class ImageService:
    """List, inspect, upload and delete a principal's images"""

    def __init__(
        self,
        settings: Settings,
        blob_store: BlobStore,
        metadata_store: MetadataStore,
        gateway: AccessGateway,
        retry_handler: RetryHandler
    ):
        self.settings = settings
        self.blob_store = blob_store
        self.metadata_store = metadata_store
        self.gateway = gateway
        self.retry_handler = retry_handler

    def _scoped(self, subject_id: str) -> ScopedBlobStore:
        return ScopedBlobStore(self.gateway, self.blob_store, subject_id)

    async def _summarize(self, scoped: ScopedBlobStore, refs: List[ImageRef]) -> List[ImageSummary]:
        records = await self.metadata_store.get_records(refs)
        derivatives = await asyncio.gather(
            *(scoped.exists(BlobNamespace.DERIVATIVE, ref.object_key) for ref in refs)
        )
        return [
            ImageSummary.build(ref.image_id, records.get(ref.object_key), has_derivative)
            for ref, has_derivative in zip(refs, derivatives)
        ]

    async def iter_pages(
        self,
        subject_id: str,
        page_size: Optional[int] = None,
        page_token: Optional[str] = None
    ) -> AsyncIterator[ImagePage]:
        """
        Yield the principal's images one page at a time.

        Pages follow the raw objects under the principal's prefix in store
        order. Passing a page's ``next_page_token`` back in resumes from the
        following page.
        """
        scoped = self._scoped(subject_id)
        page_size = page_size or self.settings.list_page_size
        if page_size < 1:
            raise InvalidInputError("page_size must be positive", field="page_size")

        token = page_token
        while True:
            names, next_token = await scoped.list_page(BlobNamespace.RAW, page_size, token)
            refs = [parse_object_key(name, self.settings.key_prefix) for name in names]
            items = await self._summarize(scoped, refs) if refs else []

            yield ImagePage(items=items, next_page_token=next_token)

            if not next_token:
                return
            token = next_token

    async def list_images(self, subject_id: str) -> List[ImageSummary]:
        images = []
        async for page in self.iter_pages(subject_id):
            images.extend(page.items)
        return images

    async def get_image(self, subject_id: str, image_key: str) -> ImageSummary:
        ref = self.gateway.resolve(subject_id, image_key)
        scoped = self._scoped(subject_id)

        raw_exists, has_derivative, record = await asyncio.gather(
            scoped.exists(BlobNamespace.RAW, ref.object_key),
            scoped.exists(BlobNamespace.DERIVATIVE, ref.object_key),
            self.metadata_store.get_record(ref)
        )
        if not raw_exists and record is None:
            raise NotFound("Image", ref.image_id)
        return ImageSummary.build(ref.image_id, record, has_derivative)

    async def upload_image(
        self,
        subject_id: str,
        image_id: str,
        data: bytes,
        content_type: Optional[str] = None
    ) -> ImageSummary:
        """Store a raw image under the principal's namespace"""
        ref = self.gateway.resolve(subject_id, image_id)

        extension = os.path.splitext(ref.image_id)[1].lower()
        if extension not in self.settings.accepted_extension_list:
            raise InvalidInputError(f"Unsupported image type: {extension or 'none'}", field="key")
        if not data:
            raise InvalidInputError("Image body is empty", field="body")
        if len(data) > self.settings.max_image_size:
            raise InvalidInputError(
                f"Image is {len(data)} bytes, limit is {self.settings.max_image_size}",
                field="body"
            )

        content_type = content_type or mimetypes.guess_type(ref.image_id)[0] or "application/octet-stream"
        scoped = self._scoped(subject_id)
        try:
            await self.retry_handler.execute_with_retry(
                f"upload:{ref.object_key}",
                scoped.write,
                None,
                BlobNamespace.RAW,
                ref.object_key,
                data,
                content_type
            )
        except RetryError as e:
            raise TransientInfrastructureError(f"Upload of {ref} did not complete: {str(e.last_error)}") from e

        logger.info(f"Uploaded {len(data)} bytes to {ref}")
        return ImageSummary.build(ref.image_id, None, False)

    async def delete_image(self, subject_id: str, image_key: str) -> DeleteResult:
        """
        Delete the raw object, the derivative and the metadata record.

        Returns ``not_found`` when all three are already absent. Each part is
        retried on its own, so a retry only touches what is still present.
        Raises TransientInfrastructureError when a part survives its retries;
        calling again finishes the job.
        """
        ref = self.gateway.resolve(subject_id, image_key)
        scoped = self._scoped(subject_id)

        raw_exists, derivative_exists, record = await asyncio.gather(
            scoped.exists(BlobNamespace.RAW, ref.object_key),
            scoped.exists(BlobNamespace.DERIVATIVE, ref.object_key),
            self.metadata_store.get_record(ref)
        )
        if not raw_exists and not derivative_exists and record is None:
            logger.info(f"Delete of {ref}: nothing to remove")
            return DeleteResult(image_id=ref.image_id, outcome=DeleteOutcome.NOT_FOUND)

        # Raw first, so pipeline stages still in flight see the source as missing
        parts: Dict[str, Callable[[], Awaitable[bool]]] = {}
        if raw_exists:
            parts[PART_RAW] = lambda: scoped.delete(BlobNamespace.RAW, ref.object_key)
        if derivative_exists:
            parts[PART_DERIVATIVE] = lambda: scoped.delete(BlobNamespace.DERIVATIVE, ref.object_key)
        if record is not None:
            parts[PART_RECORD] = lambda: self.metadata_store.delete_record(ref)

        removed = []
        remaining = []
        for part, delete in parts.items():
            try:
                await self.retry_handler.execute_with_retry(f"delete:{part}:{ref.object_key}", delete)
                removed.append(part)
            except (RetryError, TransientInfrastructureError) as e:
                logger.warning(f"Delete of {part} for {ref} did not complete: {str(e)}")
                remaining.append(part)

        if remaining:
            raise TransientInfrastructureError(
                f"Delete of {ref} incomplete",
                details={'removed': removed, 'remaining': remaining}
            )

        logger.info(f"Deleted {ref}: {', '.join(removed)}")
        return DeleteResult(image_id=ref.image_id, outcome=DeleteOutcome.DELETED, removed=removed)
