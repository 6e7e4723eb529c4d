from pydantic import BaseModel, Field, field_validator, model_validator
from typing import List, Optional, Dict, Any
from enum import Enum
from datetime import datetime, timezone
import base64
import json

from .errors import InvalidInputError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LabelStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"

class ImageState(str, Enum):
    UPLOADING = "uploading"
    PARTIALLY_PROCESSED = "partially_processed"
    PROCESSED = "processed"

class StageName(str, Enum):
    DERIVATIVE = "derivative"
    LABELS = "labels"

class StageOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"  # source object missing
    IGNORED = "ignored"  # notification did not address an image
    FAILED_PERMANENT = "failed_permanent"
    FAILED_TRANSIENT = "failed_transient"

class DeleteOutcome(str, Enum):
    DELETED = "deleted"
    NOT_FOUND = "not_found"

class Label(BaseModel):
    model_config = {"frozen": True}

    name: str
    confidence: float = Field(ge=0.0, le=1.0)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('Label name must not be empty')
        return v

class ImageRef(BaseModel):
    """Identifies one image by owner namespace and image id"""
    model_config = {"frozen": True}

    owner_namespace: str
    image_id: str
    key_prefix: str = ""

    @property
    def object_key(self) -> str:
        return f"{self.key_prefix}{self.owner_namespace}/{self.image_id}"

    def __str__(self) -> str:
        return self.object_key

class ImageRecord(BaseModel):
    image_id: str
    owner_namespace: str
    object_key: str
    labels: List[Label] = Field(default_factory=list)
    label_status: LabelStatus = LabelStatus.PENDING
    label_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

class ImageSummary(BaseModel):
    image_id: str
    labels: List[Label] = Field(default_factory=list)
    has_derivative: bool = False
    state: ImageState = ImageState.UPLOADING
    created_at: Optional[datetime] = None

    @classmethod
    def build(
        cls,
        image_id: str,
        record: Optional[ImageRecord],
        has_derivative: bool
    ) -> "ImageSummary":
        labels_present = record is not None and record.label_status == LabelStatus.COMPLETE
        if has_derivative and labels_present:
            state = ImageState.PROCESSED
        elif has_derivative or record is not None:
            state = ImageState.PARTIALLY_PROCESSED
        else:
            state = ImageState.UPLOADING
        return cls(
            image_id=image_id,
            labels=list(record.labels) if record else [],
            has_derivative=has_derivative,
            state=state,
            created_at=record.created_at if record else None
        )

class ImagePage(BaseModel):
    items: List[ImageSummary] = Field(default_factory=list)
    next_page_token: Optional[str] = None

class ObjectCreatedNotification(BaseModel):
    bucket: str
    key: str
    size: Optional[int] = None
    generation: Optional[str] = None

    @model_validator(mode='before')
    @classmethod
    def accept_object_name(cls, values):
        # Cloud Storage notifications call the object key "name"
        if isinstance(values, dict) and 'key' not in values and 'name' in values:
            values = dict(values)
            values['key'] = values.pop('name')
        return values

    @field_validator('key')
    @classmethod
    def validate_key(cls, v):
        if not v:
            raise ValueError('Notification key must not be empty')
        return v

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> Optional["ObjectCreatedNotification"]:
        """
        Parse a flat notification or a Pub/Sub push envelope.

        Returns None for storage events other than object creation.
        """
        try:
            message = payload.get('message') if isinstance(payload, dict) else None
            if message is None:
                return cls(**payload)

            attributes = message.get('attributes') or {}
            event_type = attributes.get('eventType')
            if event_type and event_type != 'OBJECT_FINALIZE':
                return None

            data = message.get('data')
            if data:
                body = json.loads(base64.b64decode(data))
            else:
                body = {'bucket': attributes.get('bucketId'), 'name': attributes.get('objectId')}
            return cls(**body)
        except InvalidInputError:
            raise
        except Exception as e:
            raise InvalidInputError(f"Unparsable object-created notification: {str(e)}")

class StageResult(BaseModel):
    stage: StageName
    outcome: StageOutcome
    object_key: str
    attempts: int = 0
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (StageOutcome.SUCCEEDED, StageOutcome.SKIPPED, StageOutcome.IGNORED)

class DispatchResult(BaseModel):
    object_key: str
    results: List[StageResult] = Field(default_factory=list)

    @property
    def should_redeliver(self) -> bool:
        return any(r.outcome == StageOutcome.FAILED_TRANSIENT for r in self.results)

    @property
    def is_partial_failure(self) -> bool:
        outcomes = [r.outcome for r in self.results]
        return StageOutcome.SUCCEEDED in outcomes and StageOutcome.FAILED_PERMANENT in outcomes

class DeleteResult(BaseModel):
    image_id: str
    outcome: DeleteOutcome
    removed: List[str] = Field(default_factory=list)

class ReconcileReport(BaseModel):
    orphaned_derivatives_deleted: int = 0
    orphaned_records_deleted: int = 0
    images_redispatched: int = 0
    errors: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
