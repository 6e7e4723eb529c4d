from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from enum import Enum
import logging

from ..database.datastore import MetadataStore
from ..errors import InvalidInputError
from ..models import ImageRef, StageName
from .retry_handler import RetryError

logger = logging.getLogger(__name__)

class FailureReason(str, Enum):
    INVALID_INPUT = "invalid_input"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    REDELIVERIES_EXHAUSTED = "redeliveries_exhausted"
    UNKNOWN = "unknown"

@dataclass
class FailureEntry:
    """A permanently failed pipeline stage for one object"""
    entry_id: str
    stage: str
    object_key: str
    owner_namespace: str
    image_id: str
    failure_reason: FailureReason
    error_type: str
    error_message: str
    attempts: int
    occurrences: int
    first_failed_at: datetime
    last_failed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['failure_reason'] = self.failure_reason.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailureEntry":
        data = dict(data)
        data['failure_reason'] = FailureReason(data['failure_reason'])
        for key, value in data.items():
            if key.endswith('_at') and isinstance(value, str):
                data[key] = datetime.fromisoformat(value)
        return cls(**data)

class FailureLedger:
    """Records permanent pipeline failures so degraded images stay observable"""

    def __init__(self, metadata_store: MetadataStore):
        self.metadata_store = metadata_store
        self.stats = {
            'total_recorded': 0,
            'recorded_by_stage': {},
            'recorded_by_reason': {},
            'cleared': 0,
        }

    @staticmethod
    def entry_id(stage: StageName, ref: ImageRef) -> str:
        return f"{StageName(stage).value}:{ref.object_key}"

    def _classify(self, error: Exception) -> FailureReason:
        if isinstance(error, InvalidInputError):
            return FailureReason.INVALID_INPUT
        if isinstance(error, RetryError):
            return FailureReason.MAX_RETRIES_EXCEEDED
        return FailureReason.UNKNOWN

    async def record(
        self,
        stage: StageName,
        ref: ImageRef,
        error: Exception,
        attempts: int,
        reason: Optional[FailureReason] = None
    ) -> Optional[FailureEntry]:
        """Record or update the failure entry for a stage and object"""
        entry_id = self.entry_id(stage, ref)
        now = datetime.now(timezone.utc)
        cause = error.last_error if isinstance(error, RetryError) else error

        try:
            existing = await self.metadata_store.get_failure(entry_id)
            entry = FailureEntry(
                entry_id=entry_id,
                stage=StageName(stage).value,
                object_key=ref.object_key,
                owner_namespace=ref.owner_namespace,
                image_id=ref.image_id,
                failure_reason=reason or self._classify(error),
                error_type=type(cause).__name__,
                error_message=str(cause)[:1500],
                attempts=attempts,
                occurrences=(existing or {}).get('occurrences', 0) + 1,
                first_failed_at=(existing or {}).get('first_failed_at', now),
                last_failed_at=now
            )
            await self.metadata_store.save_failure(entry_id, entry.to_dict())
        except Exception as e:
            logger.error(f"Error recording {stage} failure for {ref}: {str(e)}")
            return None

        self.stats['total_recorded'] += 1
        by_stage = self.stats['recorded_by_stage']
        by_stage[entry.stage] = by_stage.get(entry.stage, 0) + 1
        by_reason = self.stats['recorded_by_reason']
        by_reason[entry.failure_reason.value] = by_reason.get(entry.failure_reason.value, 0) + 1

        logger.warning(f"Recorded {entry.stage} failure for {ref}: {entry.failure_reason.value}: {entry.error_message}")
        return entry

    async def clear(self, stage: StageName, ref: ImageRef) -> None:
        """Drop the failure entry after a later success"""
        entry_id = self.entry_id(stage, ref)
        try:
            if await self.metadata_store.get_failure(entry_id) is None:
                return
            await self.metadata_store.delete_failure(entry_id)
            self.stats['cleared'] += 1
            logger.info(f"Cleared failure entry {entry_id}")
        except Exception as e:
            logger.error(f"Error clearing failure entry {entry_id}: {str(e)}")

    async def get_entry(self, stage: StageName, ref: ImageRef) -> Optional[FailureEntry]:
        row = await self.metadata_store.get_failure(self.entry_id(stage, ref))
        return FailureEntry.from_dict(row) if row else None

    async def list_entries(self, stage: Optional[StageName] = None, limit: int = 100) -> List[FailureEntry]:
        rows = await self.metadata_store.query_failures(StageName(stage).value if stage else None, limit)
        entries = [FailureEntry.from_dict(row) for row in rows]
        entries.sort(key=lambda e: e.last_failed_at, reverse=True)
        return entries

    def get_statistics(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'recorded_by_stage': dict(self.stats['recorded_by_stage']),
            'recorded_by_reason': dict(self.stats['recorded_by_reason']),
        }
