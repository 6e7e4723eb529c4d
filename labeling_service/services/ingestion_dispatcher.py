import asyncio
from typing import Dict, Any, List, Optional
from dataclasses import dataclass
import logging

from ..config import Settings
from ..errors import InvalidInputError, PartialPipelineFailure, TransientInfrastructureError
from ..models import (
    DispatchResult, ImageRef, ObjectCreatedNotification, StageName, StageOutcome, StageResult
)
from .access_gateway import parse_object_key
from .blob_store import BlobNamespace, BlobStore
from .derivative_generator import DerivativeGenerator
from .failure_ledger import FailureLedger, FailureReason
from .label_extractor import LabelExtractor
from .pipeline_stage import PipelineStage

logger = logging.getLogger(__name__)

@dataclass
class WorkItem:
    ref: ImageRef
    delivery: int = 1

class IngestionDispatcher:
    """Fans object-created notifications out to the derivative and label stages"""

    def __init__(
        self,
        settings: Settings,
        blob_store: BlobStore,
        derivative_generator: DerivativeGenerator,
        label_extractor: LabelExtractor,
        failure_ledger: FailureLedger
    ):
        self.settings = settings
        self.blob_store = blob_store
        self.stages: Dict[StageName, PipelineStage] = {
            StageName.DERIVATIVE: derivative_generator,
            StageName.LABELS: label_extractor,
        }
        self.failure_ledger = failure_ledger
        self.queues: Dict[StageName, asyncio.Queue] = {stage: asyncio.Queue() for stage in self.stages}
        self.worker_tasks: Dict[str, asyncio.Task] = {}
        self.max_redeliveries = settings.max_redeliveries
        self.stats = {
            'dispatched': 0,
            'ignored': 0,
            'redelivered': 0,
            'partial_failures': 0,
            'last_partial_failure': None,
            'outcomes': {},
        }

    def parse(self, notification: ObjectCreatedNotification) -> Optional[ImageRef]:
        """Map a notification to the image it announces, or None to ignore it"""
        if self.blob_store.namespace_for_bucket(notification.bucket) != BlobNamespace.RAW:
            logger.warning(f"Ignoring notification for bucket {notification.bucket}")
            return None
        try:
            return parse_object_key(notification.key, self.settings.key_prefix)
        except InvalidInputError as e:
            logger.warning(f"Ignoring notification for {notification.bucket}/{notification.key}: {e.message}")
            return None

    async def dispatch(self, notification: ObjectCreatedNotification) -> DispatchResult:
        """
        Run both stages for one notification, concurrently and independently.

        A stage that crashes is reported as failed_permanent for that stage
        only; the sibling stage always runs to completion.
        """
        ref = self.parse(notification)
        if ref is None:
            self.stats['ignored'] += 1
            return DispatchResult(object_key=notification.key, results=[
                StageResult(stage=stage, outcome=StageOutcome.IGNORED, object_key=notification.key)
                for stage in self.stages
            ])

        self.stats['dispatched'] += 1
        stage_names = list(self.stages)
        outcomes = await asyncio.gather(
            *(self.stages[stage].run(ref) for stage in stage_names),
            return_exceptions=True
        )

        results = [
            self._as_result(stage, ref, outcome)
            for stage, outcome in zip(stage_names, outcomes)
        ]
        for result in results:
            self._count(result)

        dispatch_result = DispatchResult(object_key=ref.object_key, results=results)
        if dispatch_result.is_partial_failure:
            error = PartialPipelineFailure(
                f"Image {ref} is partially processed",
                details={r.stage.value: r.outcome.value for r in results}
            )
            self.stats['partial_failures'] += 1
            self.stats['last_partial_failure'] = error.to_dict()
            logger.warning(f"{error.message}: {error.details}")
        return dispatch_result

    def _as_result(self, stage: StageName, ref: ImageRef, outcome: Any) -> StageResult:
        if isinstance(outcome, StageResult):
            return outcome
        logger.error(f"{stage.value} crashed for {ref}: {outcome!r}")
        return StageResult(
            stage=stage,
            outcome=StageOutcome.FAILED_PERMANENT,
            object_key=ref.object_key,
            error_message=str(outcome)
        )

    def _count(self, result: StageResult):
        key = f"{result.stage.value}:{result.outcome.value}"
        self.stats['outcomes'][key] = self.stats['outcomes'].get(key, 0) + 1

    # Queue mode

    async def start(self):
        """Start the per-stage worker pools"""
        for stage in self.stages:
            for i in range(self.settings.stage_workers):
                worker_id = f"{stage.value}-worker-{i}"
                self.worker_tasks[worker_id] = asyncio.create_task(self._worker(worker_id, stage))
        logger.info(f"Started {len(self.worker_tasks)} stage workers")

    async def enqueue(self, notification: ObjectCreatedNotification) -> Optional[ImageRef]:
        """Queue a notification for both stages; returns the image it names"""
        ref = self.parse(notification)
        if ref is None:
            self.stats['ignored'] += 1
            return None
        await self.enqueue_ref(ref)
        return ref

    async def enqueue_ref(self, ref: ImageRef, stages: Optional[List[StageName]] = None):
        for stage in stages or list(self.stages):
            await self.queues[stage].put(WorkItem(ref=ref))

    async def _worker(self, worker_id: str, stage: StageName):
        """Worker task that processes one stage's queue"""
        queue = self.queues[stage]

        while True:
            item: WorkItem = await queue.get()
            try:
                try:
                    result = await self.stages[stage].run(item.ref)
                except Exception as e:
                    result = self._as_result(stage, item.ref, e)

                self._count(result)
                if result.outcome == StageOutcome.FAILED_TRANSIENT:
                    await self._redeliver(worker_id, stage, item, result)
            finally:
                queue.task_done()

    async def _redeliver(self, worker_id: str, stage: StageName, item: WorkItem, result: StageResult):
        if item.delivery < self.max_redeliveries:
            self.stats['redelivered'] += 1
            logger.info(f"{worker_id} requeueing {item.ref} (delivery {item.delivery + 1})")
            await self.queues[stage].put(WorkItem(ref=item.ref, delivery=item.delivery + 1))
            return

        await self.failure_ledger.record(
            stage,
            item.ref,
            TransientInfrastructureError(result.error_message or "redeliveries exhausted"),
            result.attempts,
            FailureReason.REDELIVERIES_EXHAUSTED
        )

    async def join(self):
        """Wait until every queued item has been processed"""
        for queue in self.queues.values():
            await queue.join()

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'outcomes': dict(self.stats['outcomes']),
            'queue_sizes': {stage.value: queue.qsize() for stage, queue in self.queues.items()},
            'active_workers': len([t for t in self.worker_tasks.values() if not t.done()]),
        }

    async def close(self):
        """Cancel worker tasks"""
        for task in self.worker_tasks.values():
            if not task.done():
                task.cancel()

        if self.worker_tasks:
            await asyncio.gather(*self.worker_tasks.values(), return_exceptions=True)
        self.worker_tasks.clear()

        logger.info("Ingestion dispatcher closed")
