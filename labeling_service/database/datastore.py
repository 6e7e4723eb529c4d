import asyncio
from typing import Dict, Any, Iterable, List, Optional, Tuple
from datetime import datetime, timezone
import base64
import logging

from google.api_core import exceptions as api_exceptions
from google.cloud import datastore
from google.cloud.datastore.query import PropertyFilter

from ..config import Settings
from ..errors import TRANSIENT_API_ERRORS, StorageError, TransientInfrastructureError
from ..models import ImageRecord, ImageRef, Label, LabelStatus

logger = logging.getLogger(__name__)

class MetadataStore:
    """Google Cloud Datastore persistence for image records and pipeline failures"""

    def __init__(self, settings: Settings, client: Optional[datastore.Client] = None):
        self.settings = settings
        self.client = client or datastore.Client(
            project=settings.google_cloud_project,
            namespace=settings.datastore_namespace
        )
        self.timeout = settings.datastore_timeout_seconds

        # Kind names
        self.IMAGE_KIND = settings.image_record_kind
        self.FAILURE_KIND = settings.failure_kind

    def _translate(self, error: Exception, context: str) -> Exception:
        if isinstance(error, TRANSIENT_API_ERRORS) or isinstance(error, OSError):
            return TransientInfrastructureError(f"Datastore {context} failed: {str(error)}")
        return StorageError(f"Datastore {context} rejected: {str(error)}")

    def _image_key(self, ref: ImageRef) -> datastore.Key:
        return self.client.key(self.IMAGE_KIND, ref.object_key)

    async def get_record(self, ref: ImageRef) -> Optional[ImageRecord]:
        """Get the record for one image"""
        try:
            entity = await asyncio.to_thread(self.client.get, self._image_key(ref), timeout=self.timeout)
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, f"get {ref}") from e
        return self._entity_to_record(entity) if entity else None

    async def get_records(self, refs: List[ImageRef]) -> Dict[str, ImageRecord]:
        """Batch get, keyed by object key. Missing records are left out."""
        if not refs:
            return {}
        keys = [self._image_key(ref) for ref in refs]
        try:
            entities = await asyncio.to_thread(self.client.get_multi, keys, timeout=self.timeout)
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, "batch get") from e

        records = {}
        for entity in entities:
            record = self._entity_to_record(entity)
            if record:
                records[record.object_key] = record
        return records

    async def put_labels(self, ref: ImageRef, labels: List[Label]) -> ImageRecord:
        """Overwrite the label set of an image, creating the record if needed"""
        return await self._update_record(
            ref,
            labels=labels,
            label_status=LabelStatus.COMPLETE,
            label_error=None
        )

    async def mark_labels_failed(self, ref: ImageRef, reason: str) -> ImageRecord:
        """
        Record a permanent labeling failure.

        Labels from an earlier successful extraction are kept; otherwise the
        record is left with an empty label set.
        """
        try:
            entity = await asyncio.to_thread(self._mark_failed_in_transaction, ref, reason)
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, f"mark failed {ref}") from e
        return self._entity_to_record(entity)

    def _mark_failed_in_transaction(self, ref: ImageRef, reason: str) -> datastore.Entity:
        with self.client.transaction():
            entity = self.client.get(self._image_key(ref), timeout=self.timeout)
            if entity and entity.get('label_status') == LabelStatus.COMPLETE.value:
                return entity
            entity = self._prepare_entity(ref, entity)
            entity['labels'] = []
            entity['label_status'] = LabelStatus.FAILED.value
            entity['label_error'] = reason[:1500]
            self.client.put(entity)
        return entity

    async def _update_record(self, ref: ImageRef, labels: List[Label], **fields) -> ImageRecord:
        try:
            entity = await asyncio.to_thread(self._update_in_transaction, ref, labels, fields)
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, f"update {ref}") from e
        return self._entity_to_record(entity)

    def _update_in_transaction(self, ref: ImageRef, labels: List[Label], fields: Dict[str, Any]) -> datastore.Entity:
        with self.client.transaction():
            entity = self.client.get(self._image_key(ref), timeout=self.timeout)
            entity = self._prepare_entity(ref, entity)
            entity['labels'] = [self._label_entity(label) for label in labels]
            for name, value in fields.items():
                entity[name] = value.value if isinstance(value, LabelStatus) else value
            self.client.put(entity)
        return entity

    def _prepare_entity(self, ref: ImageRef, entity: Optional[datastore.Entity]) -> datastore.Entity:
        now = datetime.now(timezone.utc)
        if entity is None:
            entity = datastore.Entity(
                key=self._image_key(ref),
                exclude_from_indexes=('labels', 'label_error')
            )
            entity.update({
                'image_id': ref.image_id,
                'owner_namespace': ref.owner_namespace,
                'object_key': ref.object_key,
                'labels': [],
                'label_status': LabelStatus.PENDING.value,
                'label_error': None,
                'created_at': now,
            })
        else:
            entity.exclude_from_indexes.update(('labels', 'label_error'))
        entity['updated_at'] = now
        return entity

    def _label_entity(self, label: Label) -> datastore.Entity:
        embedded = datastore.Entity()
        embedded.update({'name': label.name, 'confidence': label.confidence})
        return embedded

    async def delete_record(self, ref: ImageRef) -> bool:
        """Delete an image record. Returns False when it was already absent."""
        try:
            return await asyncio.to_thread(self._delete_if_present, self._image_key(ref))
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, f"delete {ref}") from e

    def _delete_if_present(self, key: datastore.Key) -> bool:
        if self.client.get(key, timeout=self.timeout) is None:
            return False
        self.client.delete(key, timeout=self.timeout)
        return True

    def _fetch_records_page(
        self,
        owner_namespace: Optional[str],
        page_size: int,
        start_cursor: Optional[bytes]
    ) -> Tuple[List[datastore.Entity], Optional[bytes]]:
        query = self.client.query(kind=self.IMAGE_KIND)
        if owner_namespace is not None:
            query.add_filter(filter=PropertyFilter('owner_namespace', '=', owner_namespace))

        iterator = query.fetch(limit=page_size, start_cursor=start_cursor, timeout=self.timeout)
        page = next(iterator.pages, None)
        entities = list(page) if page is not None else []
        return entities, iterator.next_page_token

    async def query_records(
        self,
        owner_namespace: Optional[str] = None,
        page_size: int = 100,
        cursor: Optional[str] = None
    ) -> Tuple[List[ImageRecord], Optional[str]]:
        """Query one page of records, optionally for a single namespace"""
        start_cursor = base64.urlsafe_b64decode(cursor) if cursor else None
        try:
            entities, page_token = await asyncio.to_thread(
                self._fetch_records_page, owner_namespace, page_size, start_cursor
            )
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, "query records") from e

        records = [record for record in (self._entity_to_record(e) for e in entities) if record]
        next_cursor = None
        if len(entities) == page_size and page_token:
            next_cursor = base64.urlsafe_b64encode(page_token).decode('ascii')
        return records, next_cursor

    def _entity_to_record(self, entity: datastore.Entity) -> Optional[ImageRecord]:
        """Convert datastore entity to ImageRecord"""
        try:
            data = dict(entity)
            data['labels'] = [Label(**dict(label)) for label in data.get('labels') or []]
            return ImageRecord(**data)
        except Exception as e:
            logger.error(f"Error converting entity {entity.key} to image record: {str(e)}")
            return None

    # Pipeline failure ledger

    def _failure_key(self, entry_id: str) -> datastore.Key:
        return self.client.key(self.FAILURE_KIND, entry_id)

    async def save_failure(self, entry_id: str, data: Dict[str, Any]) -> None:
        entity = datastore.Entity(key=self._failure_key(entry_id), exclude_from_indexes=('error_message',))
        entity.update(data)
        try:
            await asyncio.to_thread(self.client.put, entity, timeout=self.timeout)
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, f"save failure {entry_id}") from e

    async def get_failure(self, entry_id: str) -> Optional[Dict[str, Any]]:
        try:
            entity = await asyncio.to_thread(self.client.get, self._failure_key(entry_id), timeout=self.timeout)
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, f"get failure {entry_id}") from e
        return dict(entity) if entity else None

    def _fetch_failures(self, stage: Optional[str], limit: int) -> List[Dict[str, Any]]:
        query = self.client.query(kind=self.FAILURE_KIND)
        if stage:
            query.add_filter(filter=PropertyFilter('stage', '=', stage))
        return [dict(entity) for entity in query.fetch(limit=limit, timeout=self.timeout)]

    async def query_failures(self, stage: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._fetch_failures, stage, limit)
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, "query failures") from e

    async def delete_failure(self, entry_id: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete, self._failure_key(entry_id), timeout=self.timeout)
        except (api_exceptions.GoogleAPIError, OSError) as e:
            raise self._translate(e, f"delete failure {entry_id}") from e

    async def close(self):
        """Close datastore client"""
        try:
            self.client.close()
        except Exception as e:
            logger.error(f"Error closing datastore client: {str(e)}")
