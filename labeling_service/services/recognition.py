"""
Recognition Engine Client
"""

from typing import Optional, Protocol, Set
import logging
import httpx

from ..config import Settings
from ..errors import ImageServiceError, InvalidInputError, TransientInfrastructureError
from ..models import Label

logger = logging.getLogger(__name__)

REJECTED_STATUS_CODES = {400, 413, 415, 422}
TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class RecognitionEngine(Protocol):
    async def detect_labels(self, image_bytes: bytes) -> Set[Label]:
        ...


class HttpRecognitionEngine:
    """Label detection over an HTTP recognition endpoint."""

    def __init__(self, settings: Settings, http: Optional[httpx.AsyncClient] = None):
        self.endpoint = settings.recognition_endpoint
        self.max_labels = settings.max_labels
        self.min_confidence = settings.min_confidence
        self._http = http or httpx.AsyncClient(
            timeout=settings.recognition_timeout_seconds,
            headers=self._get_headers(settings.recognition_api_key),
        )

    def _get_headers(self, api_key: Optional[str]) -> dict:
        headers = {"Content-Type": "application/octet-stream"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def detect_labels(self, image_bytes: bytes) -> Set[Label]:
        """Send an image and return the detected (name, confidence) labels."""
        try:
            response = await self._http.post(
                self.endpoint,
                content=image_bytes,
                params={"max_labels": self.max_labels, "min_confidence": self.min_confidence},
            )
        except httpx.TransportError as e:
            raise TransientInfrastructureError(f"Recognition engine unreachable: {str(e)}") from e

        if response.status_code in REJECTED_STATUS_CODES:
            raise InvalidInputError(
                f"Recognition engine rejected image: {response.status_code} {response.text[:200]}",
                field="image",
            )
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientInfrastructureError(f"Recognition engine unavailable: {response.status_code}")
        if response.status_code != 200:
            raise ImageServiceError(
                f"Unexpected recognition engine status: {response.status_code}", "RECOGNITION_ERROR"
            )

        try:
            return self._parse_labels(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise ImageServiceError(f"Malformed recognition response: {str(e)}", "RECOGNITION_ERROR") from e

    def _parse_labels(self, data: dict) -> Set[Label]:
        labels = set()
        for item in data.get("labels", []):
            confidence = float(item["confidence"])
            # Some engines report percentages
            if confidence > 1.0:
                confidence = confidence / 100.0
            labels.add(Label(name=item["name"], confidence=min(max(confidence, 0.0), 1.0)))
        return labels

    async def close(self) -> None:
        await self._http.aclose()
