"""
Pipeline and query services for image labeling
"""

from .access_gateway import AccessGateway, ScopedBlobStore
from .blob_store import BlobStore
from .derivative_generator import DerivativeGenerator
from .failure_ledger import FailureLedger
from .identity import HttpIdentityProvider
from .image_service import ImageService
from .ingestion_dispatcher import IngestionDispatcher
from .label_extractor import LabelExtractor
from .recognition import HttpRecognitionEngine
from .reconciler import Reconciler
from .retry_handler import RetryHandler

__all__ = [
    'AccessGateway',
    'ScopedBlobStore',
    'BlobStore',
    'DerivativeGenerator',
    'FailureLedger',
    'HttpIdentityProvider',
    'ImageService',
    'IngestionDispatcher',
    'LabelExtractor',
    'HttpRecognitionEngine',
    'Reconciler',
    'RetryHandler'
]
