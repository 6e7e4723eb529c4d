import pytest

from labeling_service.errors import InvalidInputError
from labeling_service.models import Label, LabelStatus, StageName, StageOutcome
from labeling_service.services.blob_store import BlobNamespace
from labeling_service.services.failure_ledger import FailureReason
from labeling_service.services.label_extractor import normalize_labels

class TestNormalizeLabels:
    """Test cases for label normalization"""

    def test_dedupe_keeps_highest_confidence(self):
        labels = [Label(name="cat", confidence=0.8), Label(name="cat", confidence=0.95)]
        assert normalize_labels(labels) == [Label(name="cat", confidence=0.95)]

    def test_filters_and_caps(self):
        labels = [
            Label(name="dog", confidence=0.6),
            Label(name="cat", confidence=0.99),
            Label(name="pet", confidence=0.9),
            Label(name="blur", confidence=0.2),
        ]

        result = normalize_labels(labels, min_confidence=0.5, max_labels=2)

        assert result == [Label(name="cat", confidence=0.99), Label(name="pet", confidence=0.9)]

    def test_sorted_by_name(self):
        labels = [Label(name="zebra", confidence=0.9), Label(name="ant", confidence=0.8)]
        assert [label.name for label in normalize_labels(labels)] == ["ant", "zebra"]

class TestLabelExtractor:
    """Test cases for LabelExtractor"""

    @pytest.mark.asyncio
    async def test_extract_overwrites_labels(self, label_extractor, blob_store, metadata_store, alice_ref, sample_image_bytes):
        blob_store.put(BlobNamespace.RAW, alice_ref.object_key, sample_image_bytes)
        metadata_store.put_record(alice_ref, [Label(name="stale", confidence=0.9)])

        result = await label_extractor.extract(alice_ref)

        assert result.stage == StageName.LABELS
        assert result.outcome == StageOutcome.SUCCEEDED
        record = metadata_store.records[alice_ref.object_key]
        assert record.labels == [Label(name="cat", confidence=0.95)]
        assert record.label_status == LabelStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_extract_applies_min_confidence(self, label_extractor, blob_store, metadata_store, recognition_engine, alice_ref, sample_image_bytes):
        blob_store.put(BlobNamespace.RAW, alice_ref.object_key, sample_image_bytes)
        recognition_engine.labels = {Label(name="cat", confidence=0.95), Label(name="maybe", confidence=0.1)}

        await label_extractor.extract(alice_ref)

        assert [label.name for label in metadata_store.records[alice_ref.object_key].labels] == ["cat"]

    @pytest.mark.asyncio
    async def test_redelivery_yields_same_record(self, label_extractor, blob_store, metadata_store, alice_ref, sample_image_bytes):
        blob_store.put(BlobNamespace.RAW, alice_ref.object_key, sample_image_bytes)

        await label_extractor.extract(alice_ref)
        first = metadata_store.records[alice_ref.object_key]
        await label_extractor.extract(alice_ref)
        second = metadata_store.records[alice_ref.object_key]

        assert first.labels == second.labels
        assert first.created_at == second.created_at
        assert len(metadata_store.records) == 1

    @pytest.mark.asyncio
    async def test_source_missing_is_skipped(self, label_extractor, metadata_store, recognition_engine, alice_ref):
        result = await label_extractor.extract(alice_ref)

        assert result.outcome == StageOutcome.SKIPPED
        assert recognition_engine.calls == 0
        assert metadata_store.records == {}

    @pytest.mark.asyncio
    async def test_rejected_image_leaves_empty_failed_record(self, label_extractor, blob_store, metadata_store, recognition_engine, failure_ledger, alice_ref, sample_image_bytes):
        blob_store.put(BlobNamespace.RAW, alice_ref.object_key, sample_image_bytes)
        recognition_engine.error = InvalidInputError("unsupported image", field="image")

        result = await label_extractor.extract(alice_ref)

        assert result.outcome == StageOutcome.FAILED_PERMANENT
        assert recognition_engine.calls == 1
        record = metadata_store.records[alice_ref.object_key]
        assert record.labels == []
        assert record.label_status == LabelStatus.FAILED
        entries = await failure_ledger.list_entries(StageName.LABELS)
        assert entries[0].failure_reason == FailureReason.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_failure_keeps_earlier_labels(self, label_extractor, blob_store, metadata_store, recognition_engine, alice_ref, sample_image_bytes):
        blob_store.put(BlobNamespace.RAW, alice_ref.object_key, sample_image_bytes)
        metadata_store.put_record(alice_ref, [Label(name="cat", confidence=0.95)])
        recognition_engine.error = InvalidInputError("unsupported image")

        await label_extractor.extract(alice_ref)

        record = metadata_store.records[alice_ref.object_key]
        assert record.label_status == LabelStatus.COMPLETE
        assert record.labels == [Label(name="cat", confidence=0.95)]

    @pytest.mark.asyncio
    async def test_transient_engine_failure_is_retried(self, label_extractor, blob_store, metadata_store, recognition_engine, alice_ref, sample_image_bytes):
        blob_store.put(BlobNamespace.RAW, alice_ref.object_key, sample_image_bytes)
        recognition_engine.transient_failures = 2

        result = await label_extractor.extract(alice_ref)

        assert result.outcome == StageOutcome.SUCCEEDED
        assert recognition_engine.calls == 3
        assert metadata_store.records[alice_ref.object_key].label_status == LabelStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_engine_never_recovers(self, label_extractor, blob_store, metadata_store, recognition_engine, failure_ledger, alice_ref, sample_image_bytes):
        blob_store.put(BlobNamespace.RAW, alice_ref.object_key, sample_image_bytes)
        recognition_engine.transient_failures = 10

        result = await label_extractor.extract(alice_ref)

        assert result.outcome == StageOutcome.FAILED_PERMANENT
        assert result.attempts == 3
        assert metadata_store.records[alice_ref.object_key].label_status == LabelStatus.FAILED
        entries = await failure_ledger.list_entries(StageName.LABELS)
        assert entries[0].failure_reason == FailureReason.MAX_RETRIES_EXCEEDED

    @pytest.mark.asyncio
    async def test_metadata_outage_is_transient(self, label_extractor, blob_store, metadata_store, alice_ref, sample_image_bytes):
        blob_store.put(BlobNamespace.RAW, alice_ref.object_key, sample_image_bytes)
        metadata_store.fail('put', times=10)

        result = await label_extractor.extract(alice_ref)

        assert result.outcome == StageOutcome.FAILED_TRANSIENT
        assert alice_ref.object_key not in metadata_store.records
