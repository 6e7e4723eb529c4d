import pytest
import io
from datetime import timedelta
from typing import Dict, List, Optional, Set, Tuple
from unittest.mock import MagicMock, Mock

from google.cloud import datastore

from labeling_service.config import Settings
from labeling_service.errors import (
    SourceObjectMissing, TransientInfrastructureError
)
from labeling_service.models import ImageRecord, ImageRef, Label, LabelStatus, utcnow
from labeling_service.services.access_gateway import AccessGateway
from labeling_service.services.blob_store import BlobNamespace, ObjectInfo
from labeling_service.services.derivative_generator import DerivativeGenerator
from labeling_service.services.failure_ledger import FailureLedger
from labeling_service.services.image_service import ImageService
from labeling_service.services.ingestion_dispatcher import IngestionDispatcher
from labeling_service.services.label_extractor import LabelExtractor
from labeling_service.services.reconciler import Reconciler
from labeling_service.services.retry_handler import RetryHandler

class FakeBlobStore:
    """In-memory stand-in for BlobStore with injectable transient failures"""

    def __init__(self, settings: Settings):
        self.buckets = {
            BlobNamespace.RAW: settings.raw_bucket,
            BlobNamespace.DERIVATIVE: settings.derivative_bucket,
        }
        self.objects: Dict[BlobNamespace, Dict[str, dict]] = {ns: {} for ns in BlobNamespace}
        self.failures: Dict[Tuple[str, BlobNamespace], int] = {}
        self.calls: List[Tuple[str, BlobNamespace, str]] = []

    def bucket_name(self, namespace: BlobNamespace) -> str:
        return self.buckets[BlobNamespace(namespace)]

    def namespace_for_bucket(self, bucket_name: str) -> Optional[BlobNamespace]:
        for namespace, name in self.buckets.items():
            if name == bucket_name:
                return namespace
        return None

    def put(self, namespace: BlobNamespace, key: str, data: bytes = b"data", age_seconds: int = 0):
        self.objects[namespace][key] = {
            'data': data,
            'content_type': 'application/octet-stream',
            'created_at': utcnow() - timedelta(seconds=age_seconds),
        }

    def keys(self, namespace: BlobNamespace) -> Set[str]:
        return set(self.objects[namespace])

    def fail(self, op: str, namespace: BlobNamespace, times: int = 1):
        """Make the next ``times`` calls of ``op`` on ``namespace`` fail transiently"""
        self.failures[(op, namespace)] = times

    def _check(self, op: str, namespace: BlobNamespace, key: str):
        self.calls.append((op, namespace, key))
        remaining = self.failures.get((op, namespace), 0)
        if remaining:
            self.failures[(op, namespace)] = remaining - 1
            raise TransientInfrastructureError(f"{op} on {key} unavailable")

    async def read(self, namespace: BlobNamespace, key: str) -> bytes:
        self._check('read', namespace, key)
        if key not in self.objects[namespace]:
            raise SourceObjectMissing(self.bucket_name(namespace), key)
        return self.objects[namespace][key]['data']

    async def write(self, namespace: BlobNamespace, key: str, data: bytes, content_type: str = "application/octet-stream"):
        self._check('write', namespace, key)
        self.objects[namespace][key] = {'data': data, 'content_type': content_type, 'created_at': utcnow()}

    async def exists(self, namespace: BlobNamespace, key: str) -> bool:
        self._check('exists', namespace, key)
        return key in self.objects[namespace]

    async def delete(self, namespace: BlobNamespace, key: str) -> bool:
        self._check('delete', namespace, key)
        return self.objects[namespace].pop(key, None) is not None

    async def list_objects(self, namespace, prefix, page_size=100, page_token=None):
        self._check('list', namespace, prefix)
        names = sorted(name for name in self.objects[namespace] if name.startswith(prefix))
        start = int(page_token or 0)
        page = names[start:start + page_size]
        next_token = str(start + page_size) if start + page_size < len(names) else None
        objects = [
            ObjectInfo(
                name=name,
                size=len(self.objects[namespace][name]['data']),
                created_at=self.objects[namespace][name]['created_at']
            )
            for name in page
        ]
        return objects, next_token

    async def list_page(self, namespace, prefix, page_size=100, page_token=None):
        objects, next_token = await self.list_objects(namespace, prefix, page_size, page_token)
        return [obj.name for obj in objects], next_token

class FakeMetadataStore:
    """In-memory stand-in for MetadataStore"""

    def __init__(self):
        self.records: Dict[str, ImageRecord] = {}
        self.failures: Dict[str, dict] = {}
        self.fail_ops: Dict[str, int] = {}

    def fail(self, op: str, times: int = 1):
        self.fail_ops[op] = times

    def _check(self, op: str):
        remaining = self.fail_ops.get(op, 0)
        if remaining:
            self.fail_ops[op] = remaining - 1
            raise TransientInfrastructureError(f"datastore {op} unavailable")

    def put_record(self, ref: ImageRef, labels: List[Label] = None,
                   status: LabelStatus = LabelStatus.COMPLETE, age_seconds: int = 0) -> ImageRecord:
        stamp = utcnow() - timedelta(seconds=age_seconds)
        record = ImageRecord(
            image_id=ref.image_id,
            owner_namespace=ref.owner_namespace,
            object_key=ref.object_key,
            labels=labels or [],
            label_status=status,
            created_at=stamp,
            updated_at=stamp
        )
        self.records[ref.object_key] = record
        return record

    async def get_record(self, ref: ImageRef) -> Optional[ImageRecord]:
        self._check('get')
        return self.records.get(ref.object_key)

    async def get_records(self, refs: List[ImageRef]) -> Dict[str, ImageRecord]:
        self._check('get')
        return {ref.object_key: self.records[ref.object_key] for ref in refs if ref.object_key in self.records}

    async def put_labels(self, ref: ImageRef, labels: List[Label]) -> ImageRecord:
        self._check('put')
        existing = self.records.get(ref.object_key)
        record = ImageRecord(
            image_id=ref.image_id,
            owner_namespace=ref.owner_namespace,
            object_key=ref.object_key,
            labels=list(labels),
            label_status=LabelStatus.COMPLETE,
            created_at=existing.created_at if existing else utcnow()
        )
        self.records[ref.object_key] = record
        return record

    async def mark_labels_failed(self, ref: ImageRef, reason: str) -> ImageRecord:
        self._check('put')
        existing = self.records.get(ref.object_key)
        if existing and existing.label_status == LabelStatus.COMPLETE:
            return existing
        record = ImageRecord(
            image_id=ref.image_id,
            owner_namespace=ref.owner_namespace,
            object_key=ref.object_key,
            labels=[],
            label_status=LabelStatus.FAILED,
            label_error=reason,
            created_at=existing.created_at if existing else utcnow()
        )
        self.records[ref.object_key] = record
        return record

    async def delete_record(self, ref: ImageRef) -> bool:
        self._check('delete')
        return self.records.pop(ref.object_key, None) is not None

    async def query_records(self, owner_namespace=None, page_size=100, cursor=None):
        self._check('query')
        records = [
            record for key, record in sorted(self.records.items())
            if owner_namespace is None or record.owner_namespace == owner_namespace
        ]
        start = int(cursor or 0)
        next_cursor = str(start + page_size) if start + page_size < len(records) else None
        return records[start:start + page_size], next_cursor

    async def save_failure(self, entry_id: str, data: dict):
        self.failures[entry_id] = dict(data)

    async def get_failure(self, entry_id: str) -> Optional[dict]:
        data = self.failures.get(entry_id)
        return dict(data) if data else None

    async def query_failures(self, stage=None, limit=100) -> List[dict]:
        rows = [dict(row) for row in self.failures.values() if stage is None or row['stage'] == stage]
        return rows[:limit]

    async def delete_failure(self, entry_id: str):
        self.failures.pop(entry_id, None)

    async def close(self):
        pass

class FakeRecognitionEngine:
    """Returns canned labels, or raises the configured error"""

    def __init__(self, labels: Set[Label] = None):
        self.labels = labels if labels is not None else {Label(name="cat", confidence=0.95)}
        self.error: Optional[Exception] = None
        self.transient_failures = 0
        self.calls = 0

    async def detect_labels(self, image_bytes: bytes) -> Set[Label]:
        self.calls += 1
        if self.transient_failures:
            self.transient_failures -= 1
            raise TransientInfrastructureError("recognition engine unavailable")
        if self.error is not None:
            raise self.error
        return set(self.labels)

@pytest.fixture
def test_settings():
    """Create test settings"""
    return Settings(
        environment="testing",
        google_cloud_project="test-project",
        raw_bucket="raw-bucket",
        derivative_bucket="derivative-bucket",
        key_prefix="",
        retry_max_attempts=3,
        retry_base_delay_seconds=0,
        retry_jitter=False,
        stage_workers=1,
        max_redeliveries=2,
        max_labels=10,
        min_confidence=0.5,
        reconcile_stale_after_seconds=60,
        event_push_token=None,
        allowed_origins="*",
        list_page_size=100
    )

@pytest.fixture
def blob_store(test_settings):
    return FakeBlobStore(test_settings)

@pytest.fixture
def metadata_store():
    return FakeMetadataStore()

@pytest.fixture
def recognition_engine():
    return FakeRecognitionEngine()

@pytest.fixture
def retry_handler(test_settings):
    return RetryHandler(test_settings)

@pytest.fixture
def failure_ledger(metadata_store):
    return FailureLedger(metadata_store)

@pytest.fixture
def derivative_generator(test_settings, blob_store, retry_handler, failure_ledger):
    return DerivativeGenerator(test_settings, blob_store, retry_handler, failure_ledger)

@pytest.fixture
def label_extractor(test_settings, blob_store, metadata_store, recognition_engine, retry_handler, failure_ledger):
    return LabelExtractor(test_settings, blob_store, metadata_store, recognition_engine, retry_handler, failure_ledger)

@pytest.fixture
def dispatcher(test_settings, blob_store, derivative_generator, label_extractor, failure_ledger):
    return IngestionDispatcher(test_settings, blob_store, derivative_generator, label_extractor, failure_ledger)

@pytest.fixture
def gateway(test_settings):
    return AccessGateway(test_settings.key_prefix)

@pytest.fixture
def image_service(test_settings, blob_store, metadata_store, gateway, retry_handler):
    return ImageService(test_settings, blob_store, metadata_store, gateway, retry_handler)

@pytest.fixture
def reconciler(test_settings, blob_store, metadata_store, dispatcher, failure_ledger, retry_handler):
    return Reconciler(test_settings, blob_store, metadata_store, dispatcher, failure_ledger, retry_handler)

@pytest.fixture
def alice_ref():
    return ImageRef(owner_namespace="alice", image_id="img1.jpg")

def make_image_bytes(size=(400, 300), mode='RGB', color='red', fmt='JPEG') -> bytes:
    from PIL import Image

    img = Image.new(mode, size, color=color)
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()

@pytest.fixture
def sample_image_bytes():
    """A 400x300 red JPEG"""
    return make_image_bytes()

@pytest.fixture
def sample_png_bytes():
    """A 300x600 half-transparent PNG"""
    return make_image_bytes(size=(300, 600), mode='RGBA', color=(0, 0, 255, 128), fmt='PNG')

@pytest.fixture
def mock_storage_client():
    """Create a mock google.cloud.storage client"""
    client = Mock()
    bucket = Mock()
    blob = Mock()
    client.bucket.return_value = bucket
    bucket.blob.return_value = blob
    return client

@pytest.fixture
def mock_datastore_client():
    """Create a mock google.cloud.datastore client"""
    client = Mock()
    client.key.side_effect = lambda kind, name: datastore.Key(kind, name, project="test-project")
    client.transaction.return_value = MagicMock()
    return client
