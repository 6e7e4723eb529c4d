from typing import Optional
import logging

from ..errors import ImageServiceError, SourceObjectMissing
from ..models import ImageRef, StageName, StageOutcome, StageResult
from .failure_ledger import FailureLedger, FailureReason
from .retry_handler import RetryError, RetryHandler

logger = logging.getLogger(__name__)

class PermanentStageFailure(Exception):
    """A stage gave up on its input for good; the cause says why"""

    def __init__(self, cause: Exception, attempts: int = 1):
        super().__init__(str(cause))
        self.cause = cause
        self.attempts = attempts

class PipelineStage:
    """
    Common outcome handling for the stateless pipeline stages.

    Subclasses implement ``_process``. Outcomes map as follows:
    source object missing -> skipped; invalid input or explicit rejection ->
    failed_permanent (recorded); retries exhausted on storage -> failed_transient
    (recorded, left to redelivery); success clears any recorded failure.
    """

    stage: StageName

    def __init__(self, retry_handler: RetryHandler, failure_ledger: FailureLedger):
        self.retry_handler = retry_handler
        self.failure_ledger = failure_ledger

    def operation_id(self, ref: ImageRef, step: str) -> str:
        return f"{self.stage.value}:{step}:{ref.object_key}"

    async def _process(self, ref: ImageRef) -> None:
        raise NotImplementedError

    async def run(self, ref: ImageRef) -> StageResult:
        try:
            await self._process(ref)

        except SourceObjectMissing as e:
            logger.info(f"{self.stage.value} skipped for {ref}: {e.message}")
            return self._result(ref, StageOutcome.SKIPPED, error=e)

        except RetryError as e:
            await self.failure_ledger.record(self.stage, ref, e, e.attempts)
            return self._result(ref, StageOutcome.FAILED_TRANSIENT, attempts=e.attempts, error=e.last_error)

        except PermanentStageFailure as e:
            reason = FailureReason.MAX_RETRIES_EXCEEDED if isinstance(e.cause, RetryError) else None
            await self.failure_ledger.record(self.stage, ref, e.cause, e.attempts, reason)
            return self._result(ref, StageOutcome.FAILED_PERMANENT, attempts=e.attempts, error=e.cause)

        except ImageServiceError as e:
            await self.failure_ledger.record(self.stage, ref, e, 1)
            return self._result(ref, StageOutcome.FAILED_PERMANENT, error=e)

        await self.failure_ledger.clear(self.stage, ref)
        logger.info(f"{self.stage.value} succeeded for {ref}")
        return self._result(ref, StageOutcome.SUCCEEDED)

    def _result(
        self,
        ref: ImageRef,
        outcome: StageOutcome,
        attempts: int = 1,
        error: Optional[Exception] = None
    ) -> StageResult:
        if isinstance(error, RetryError):
            error = error.last_error
        return StageResult(
            stage=self.stage,
            outcome=outcome,
            object_key=ref.object_key,
            attempts=attempts,
            error_message=str(error) if error else None
        )
