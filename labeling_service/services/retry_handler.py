import asyncio
import random
from typing import Dict, Any, List, Optional, Callable, Tuple, Type
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field
from enum import Enum
import logging

from ..config import Settings
from ..errors import (
    TransientInfrastructureError, InvalidInputError, Unauthorized, Forbidden, NotFound, StorageError
)

logger = logging.getLogger(__name__)

class RetryStrategy(str, Enum):
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    LINEAR_BACKOFF = "linear_backoff"
    FIXED_INTERVAL = "fixed_interval"
    IMMEDIATE = "immediate"

class FailureType(str, Enum):
    TRANSIENT = "transient"  # Temporary failures (network, resource constraints)
    PERMANENT = "permanent"  # Permanent failures (invalid data, rejection)
    RATE_LIMIT = "rate_limit"  # Throttling
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

RETRYABLE_FAILURES = (FailureType.TRANSIENT, FailureType.RATE_LIMIT, FailureType.TIMEOUT)

@dataclass
class RetryConfig:
    """Configuration for retry behavior"""
    max_attempts: int = 3
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retry_on: Tuple[Type[BaseException], ...] = field(
        default_factory=lambda: (TransientInfrastructureError, ConnectionError, TimeoutError)
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryConfig":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter=settings.retry_jitter
        )

@dataclass
class RetryAttempt:
    """Information about a retry attempt"""
    attempt_number: int
    timestamp: datetime
    delay_seconds: float
    error_message: str
    error_type: str
    will_retry: bool

class RetryError(Exception):
    """Raised when retries are exhausted; wraps the last error"""

    def __init__(self, operation_id: str, attempts: int, last_error: Exception):
        super().__init__(f"{operation_id} failed after {attempts} attempts: {last_error}")
        self.operation_id = operation_id
        self.attempts = attempts
        self.last_error = last_error

class RetryHandler:
    """Handles retry logic with exponential backoff and failure classification"""

    def __init__(self, settings: Settings, default_config: Optional[RetryConfig] = None):
        self.settings = settings
        self.retry_history: Dict[str, List[RetryAttempt]] = {}
        self.failure_patterns: Dict[str, FailureType] = {}
        self.default_config = default_config or RetryConfig.from_settings(settings)

        self._load_failure_patterns()

    def _load_failure_patterns(self):
        """Message patterns used when the exception type says nothing"""
        self.failure_patterns = {
            # Rate limiting
            "rate limit": FailureType.RATE_LIMIT,
            "too many": FailureType.RATE_LIMIT,
            "throttl": FailureType.RATE_LIMIT,

            # Timeout
            "timed out": FailureType.TIMEOUT,
            "deadline": FailureType.TIMEOUT,

            # Transient failures
            "connection": FailureType.TRANSIENT,
            "unavailable": FailureType.TRANSIENT,
            "temporary": FailureType.TRANSIENT,

            # Permanent failures
            "invalid": FailureType.PERMANENT,
            "corrupt": FailureType.PERMANENT,
            "unsupported": FailureType.PERMANENT,
        }

    def classify_failure(self, error: Exception) -> FailureType:
        """Classify the type of failure based on exception type and message"""
        if isinstance(error, (InvalidInputError, Unauthorized, Forbidden, NotFound, StorageError)):
            return FailureType.PERMANENT
        if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
            return FailureType.TIMEOUT

        error_message = str(error).lower()
        known_transient = isinstance(error, (TransientInfrastructureError, ConnectionError))
        for pattern, failure_type in self.failure_patterns.items():
            if pattern in error_message:
                if known_transient and failure_type not in RETRYABLE_FAILURES:
                    continue
                return failure_type

        if known_transient:
            return FailureType.TRANSIENT
        if isinstance(error, (ValueError, TypeError)):
            return FailureType.PERMANENT

        return FailureType.UNKNOWN

    def should_retry(
        self,
        operation_id: str,
        error: Exception,
        attempt_number: int,
        config: Optional[RetryConfig] = None
    ) -> Tuple[bool, float]:
        """
        Determine if an operation should be retried and calculate delay

        Returns:
            Tuple of (should_retry, delay_seconds)
        """
        retry_config = config or self.default_config

        if attempt_number >= retry_config.max_attempts:
            logger.info(f"{operation_id} exceeded max retry attempts ({retry_config.max_attempts})")
            return False, 0.0

        failure_type = self.classify_failure(error)
        if failure_type not in RETRYABLE_FAILURES:
            logger.info(f"{operation_id} failed with non-retryable {failure_type.value} error: {str(error)}")
            return False, 0.0

        if not isinstance(error, retry_config.retry_on):
            logger.info(f"{operation_id} failed with non-retryable error type: {type(error).__name__}")
            return False, 0.0

        delay = self._calculate_delay(attempt_number, retry_config, failure_type)
        self._record_retry_attempt(operation_id, attempt_number, delay, error, retry_config)

        logger.info(f"{operation_id} will retry in {delay:.2f}s (attempt {attempt_number}/{retry_config.max_attempts})")
        return True, delay

    def _calculate_delay(
        self,
        attempt_count: int,
        config: RetryConfig,
        failure_type: FailureType
    ) -> float:
        """Calculate retry delay based on strategy"""
        if config.strategy == RetryStrategy.IMMEDIATE:
            return 0.0
        elif config.strategy == RetryStrategy.FIXED_INTERVAL:
            delay = config.base_delay_seconds
        elif config.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = config.base_delay_seconds * attempt_count
        else:
            delay = config.base_delay_seconds * (config.backoff_multiplier ** (attempt_count - 1))

        # Longer delays for throttling
        if failure_type == FailureType.RATE_LIMIT:
            delay *= 2.0
        elif failure_type == FailureType.TIMEOUT:
            delay *= 1.5

        delay = min(delay, config.max_delay_seconds)

        if config.jitter and delay > 0:
            jitter_amount = delay * 0.1  # 10% jitter
            delay += random.uniform(-jitter_amount, jitter_amount)

        return max(delay, 0.0)

    def _record_retry_attempt(
        self,
        operation_id: str,
        attempt_number: int,
        delay_seconds: float,
        error: Exception,
        config: RetryConfig
    ):
        # Most recently retried operations sit at the end
        attempts = self.retry_history.pop(operation_id, [])
        self.retry_history[operation_id] = attempts
        attempts.append(RetryAttempt(
            attempt_number=attempt_number,
            timestamp=datetime.now(timezone.utc),
            delay_seconds=delay_seconds,
            error_message=str(error),
            error_type=type(error).__name__,
            will_retry=attempt_number < config.max_attempts
        ))

        # Keep only last 10 attempts per operation
        if len(attempts) > 10:
            self.retry_history[operation_id] = attempts[-10:]

        overflow = len(self.retry_history) - self.settings.retry_history_max_operations
        for stale_id in list(self.retry_history)[:max(overflow, 0)]:
            del self.retry_history[stale_id]

    async def execute_with_retry(
        self,
        operation_id: str,
        operation: Callable,
        config: Optional[RetryConfig] = None,
        *args,
        **kwargs
    ) -> Any:
        """
        Execute a coroutine function with retry logic

        Args:
            operation_id: Identifier for tracking (stage and object key)
            operation: Coroutine function to execute
            config: Retry configuration
            *args, **kwargs: Arguments to pass to operation

        Returns:
            Result of the operation

        Raises:
            The original error for non-retryable failures,
            RetryError once retryable failures exhaust max_attempts
        """
        retry_config = config or self.default_config
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await operation(*args, **kwargs)
                self.retry_history.pop(operation_id, None)
                if attempt > 1:
                    logger.info(f"{operation_id} succeeded on attempt {attempt}")
                return result

            except Exception as e:
                retry, delay = self.should_retry(operation_id, e, attempt, retry_config)
                if not retry:
                    if self.classify_failure(e) in RETRYABLE_FAILURES and isinstance(e, retry_config.retry_on):
                        logger.error(f"{operation_id} failed after {attempt} attempts: {str(e)}")
                        raise RetryError(operation_id, attempt, e) from e
                    raise

                if delay > 0:
                    await asyncio.sleep(delay)

    def get_retry_history(self, operation_id: str) -> List[RetryAttempt]:
        """Get retry history for an operation"""
        return self.retry_history.get(operation_id, [])

    def get_retry_statistics(self) -> Dict[str, Any]:
        """Get retry statistics across all operations"""
        total_retries = sum(len(attempts) for attempts in self.retry_history.values())
        operations_with_retries = len(self.retry_history)

        if operations_with_retries == 0:
            return {
                'total_retries': 0,
                'operations_with_retries': 0,
                'average_retries_per_operation': 0.0,
                'failure_types': {},
                'most_common_errors': []
            }

        failure_types: Dict[str, int] = {}
        error_counts: Dict[str, int] = {}

        for attempts in self.retry_history.values():
            for attempt in attempts:
                failure_types[attempt.error_type] = failure_types.get(attempt.error_type, 0) + 1
                error_message = attempt.error_message[:100]
                error_counts[error_message] = error_counts.get(error_message, 0) + 1

        most_common_errors = sorted(error_counts.items(), key=lambda x: x[1], reverse=True)[:10]

        return {
            'total_retries': total_retries,
            'operations_with_retries': operations_with_retries,
            'average_retries_per_operation': total_retries / operations_with_retries,
            'failure_types': failure_types,
            'most_common_errors': most_common_errors
        }

    def clear_old_retry_history(self, older_than_hours: int = 24):
        """Clear retry history older than specified hours"""
        cutoff_time = datetime.now(timezone.utc) - timedelta(hours=older_than_hours)
        stale = [
            operation_id for operation_id, attempts in self.retry_history.items()
            if all(attempt.timestamp < cutoff_time for attempt in attempts)
        ]
        for operation_id in stale:
            del self.retry_history[operation_id]

        logger.info(f"Cleared retry history for {len(stale)} operations older than {older_than_hours} hours")
