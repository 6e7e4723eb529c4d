import asyncio
from typing import AsyncIterator, Dict, List, Optional, Set
from datetime import timedelta
import logging

from ..config import Settings
from ..database.datastore import MetadataStore
from ..errors import ImageServiceError, InvalidInputError
from ..models import ImageRecord, ImageRef, LabelStatus, ReconcileReport, StageName, utcnow
from .access_gateway import parse_object_key
from .blob_store import BlobNamespace, BlobStore, ObjectInfo
from .failure_ledger import FailureLedger, FailureReason
from .ingestion_dispatcher import IngestionDispatcher
from .retry_handler import RetryHandler

logger = logging.getLogger(__name__)

class Reconciler:
    """
    Periodic sweep that converges blob and metadata state.

    Removes derivatives and records whose raw object is gone, which covers
    pipeline writes that land after a delete. Raw objects that have sat
    without a derivative or with pending labels for longer than the
    staleness threshold are queued for the missing stages again, unless the
    stage already failed on invalid input.
    """

    def __init__(
        self,
        settings: Settings,
        blob_store: BlobStore,
        metadata_store: MetadataStore,
        dispatcher: IngestionDispatcher,
        failure_ledger: FailureLedger,
        retry_handler: Optional[RetryHandler] = None
    ):
        self.settings = settings
        self.blob_store = blob_store
        self.metadata_store = metadata_store
        self.dispatcher = dispatcher
        self.failure_ledger = failure_ledger
        self.retry_handler = retry_handler
        self.page_size = settings.list_page_size
        self.last_report: Optional[ReconcileReport] = None

    async def _iter_objects(self, namespace: BlobNamespace) -> AsyncIterator[ObjectInfo]:
        token = None
        while True:
            objects, token = await self.blob_store.list_objects(
                namespace, self.settings.key_prefix, self.page_size, token
            )
            for obj in objects:
                yield obj
            if not token:
                return

    async def _iter_records(self) -> AsyncIterator[ImageRecord]:
        cursor = None
        while True:
            records, cursor = await self.metadata_store.query_records(page_size=self.page_size, cursor=cursor)
            for record in records:
                yield record
            if not cursor:
                return

    async def run_once(self) -> ReconcileReport:
        report = ReconcileReport()
        cutoff = utcnow() - timedelta(seconds=self.settings.reconcile_stale_after_seconds)

        raw: Dict[str, ObjectInfo] = {}
        async for obj in self._iter_objects(BlobNamespace.RAW):
            raw[obj.name] = obj

        derivatives: Set[str] = set()
        async for obj in self._iter_objects(BlobNamespace.DERIVATIVE):
            if obj.name in raw:
                derivatives.add(obj.name)
            elif obj.created_at is None or obj.created_at <= cutoff:
                try:
                    if await self.blob_store.delete(BlobNamespace.DERIVATIVE, obj.name):
                        report.orphaned_derivatives_deleted += 1
                        logger.info(f"Removed orphaned derivative {obj.name}")
                except ImageServiceError as e:
                    report.errors += 1
                    logger.error(f"Could not remove orphaned derivative {obj.name}: {e.message}")

        records: Dict[str, ImageRecord] = {}
        async for record in self._iter_records():
            if record.object_key in raw:
                records[record.object_key] = record
            elif record.updated_at <= cutoff:
                ref = ImageRef(
                    owner_namespace=record.owner_namespace,
                    image_id=record.image_id,
                    key_prefix=self.settings.key_prefix
                )
                try:
                    if await self.metadata_store.delete_record(ref):
                        report.orphaned_records_deleted += 1
                        logger.info(f"Removed orphaned record {record.object_key}")
                except ImageServiceError as e:
                    report.errors += 1
                    logger.error(f"Could not remove orphaned record {record.object_key}: {e.message}")

        for key, obj in raw.items():
            if obj.created_at is not None and obj.created_at > cutoff:
                continue
            try:
                ref = parse_object_key(key, self.settings.key_prefix)
            except InvalidInputError:
                continue

            stages: List[StageName] = []
            if key not in derivatives:
                stages.append(StageName.DERIVATIVE)
            record = records.get(key)
            if record is None or record.label_status == LabelStatus.PENDING:
                stages.append(StageName.LABELS)

            try:
                stages = [stage for stage in stages if not await self._rejected(stage, ref)]
            except ImageServiceError as e:
                report.errors += 1
                logger.error(f"Could not read failure ledger for {ref}: {e.message}")
                continue

            if stages:
                await self.dispatcher.enqueue_ref(ref, stages)
                report.images_redispatched += 1
                logger.info(f"Requeued {ref} for {', '.join(stage.value for stage in stages)}")

        report.completed_at = utcnow()
        self.last_report = report
        logger.info(
            f"Reconciliation finished: {report.orphaned_derivatives_deleted} derivatives and "
            f"{report.orphaned_records_deleted} records removed, {report.images_redispatched} images requeued, "
            f"{report.errors} errors"
        )
        return report

    async def _rejected(self, stage: StageName, ref: ImageRef) -> bool:
        entry = await self.failure_ledger.get_entry(stage, ref)
        return entry is not None and entry.failure_reason == FailureReason.INVALID_INPUT

    async def run_forever(self, interval_seconds: float):
        """Run reconciliation passes until cancelled"""
        logger.info(f"Reconciler running every {interval_seconds}s")
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Reconciliation pass failed: {str(e)}")
            if self.retry_handler is not None:
                self.retry_handler.clear_old_retry_history(self.settings.retry_history_hours)
            await asyncio.sleep(interval_seconds)
