from typing import Dict, Iterable, List
import logging

from ..config import Settings
from ..database.datastore import MetadataStore
from ..errors import ImageServiceError
from ..models import ImageRef, Label, StageName
from .blob_store import BlobNamespace, BlobStore
from .failure_ledger import FailureLedger
from .pipeline_stage import PermanentStageFailure, PipelineStage
from .recognition import RecognitionEngine
from .retry_handler import RetryError, RetryHandler

logger = logging.getLogger(__name__)

def normalize_labels(labels: Iterable[Label], min_confidence: float = 0.0, max_labels: int = 0) -> List[Label]:
    """
    Deduplicate by name (highest confidence wins), drop labels under
    ``min_confidence``, keep the ``max_labels`` most confident and return
    them sorted by name so equal label sets always store identically.
    """
    best: Dict[str, Label] = {}
    for label in labels:
        if label.confidence < min_confidence:
            continue
        current = best.get(label.name)
        if current is None or label.confidence > current.confidence:
            best[label.name] = label

    kept = sorted(best.values(), key=lambda label: (-label.confidence, label.name))
    if max_labels > 0:
        kept = kept[:max_labels]
    return sorted(kept, key=lambda label: label.name)

class LabelExtractor(PipelineStage):
    """Detects labels for each raw image and overwrites its metadata record"""

    stage = StageName.LABELS

    def __init__(
        self,
        settings: Settings,
        blob_store: BlobStore,
        metadata_store: MetadataStore,
        engine: RecognitionEngine,
        retry_handler: RetryHandler,
        failure_ledger: FailureLedger
    ):
        super().__init__(retry_handler, failure_ledger)
        self.settings = settings
        self.blob_store = blob_store
        self.metadata_store = metadata_store
        self.engine = engine

    async def extract(self, ref: ImageRef):
        """Run the stage for one image; see PipelineStage.run for outcomes"""
        return await self.run(ref)

    async def _process(self, ref: ImageRef) -> None:
        data = await self.retry_handler.execute_with_retry(
            self.operation_id(ref, "read"),
            self.blob_store.read,
            None,
            BlobNamespace.RAW,
            ref.object_key
        )

        try:
            detected = await self.retry_handler.execute_with_retry(
                self.operation_id(ref, "detect"),
                self.engine.detect_labels,
                None,
                data
            )
        except RetryError as e:
            await self._mark_failed(ref, e.last_error)
            raise PermanentStageFailure(e, e.attempts) from e
        except ImageServiceError as e:
            await self._mark_failed(ref, e)
            raise PermanentStageFailure(e) from e

        labels = normalize_labels(detected, self.settings.min_confidence, self.settings.max_labels)

        await self.retry_handler.execute_with_retry(
            self.operation_id(ref, "store"),
            self.metadata_store.put_labels,
            None,
            ref,
            labels
        )
        logger.info(f"Stored {len(labels)} labels for {ref}")

    async def _mark_failed(self, ref: ImageRef, error: Exception) -> None:
        await self.retry_handler.execute_with_retry(
            self.operation_id(ref, "mark-failed"),
            self.metadata_store.mark_labels_failed,
            None,
            ref,
            f"{type(error).__name__}: {str(error)}"
        )
