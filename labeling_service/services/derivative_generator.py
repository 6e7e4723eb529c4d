import io
from typing import Dict, Any, Tuple
from PIL import Image, ImageOps, UnidentifiedImageError
import logging

from ..config import Settings
from ..errors import InvalidInputError
from ..models import ImageRef, StageName
from .blob_store import BlobNamespace, BlobStore
from .failure_ledger import FailureLedger
from .pipeline_stage import PipelineStage
from .retry_handler import RetryHandler

logger = logging.getLogger(__name__)

DERIVATIVE_CONTENT_TYPE = "image/jpeg"

def resize_image_bytes(
    data: bytes,
    width: int,
    height: int,
    quality: int = 85
) -> Tuple[bytes, Dict[str, Any]]:
    """
    Produce a JPEG copy of an image that fits within width x height

    Args:
        data: Encoded source image
        width: Maximum width
        height: Maximum height
        quality: JPEG quality (1-100)

    Returns:
        Tuple of (encoded JPEG bytes, processing metadata)

    Raises:
        InvalidInputError: the bytes are not a decodable image
    """
    try:
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            original_width, original_height = source.size
            img = ImageOps.exif_transpose(source)

            # Flatten transparency onto white for JPEG output
            if img.mode in ('RGBA', 'LA', 'P'):
                if img.mode == 'P':
                    img = img.convert('RGBA')
                background = Image.new('RGB', img.size, (255, 255, 255))
                background.paste(img, mask=img.split()[-1] if img.mode in ('RGBA', 'LA') else None)
                img = background
            elif img.mode != 'RGB':
                img = img.convert('RGB')

            # thumbnail never upscales
            img.thumbnail((width, height), Image.Resampling.LANCZOS)

            output = io.BytesIO()
            img.save(output, format='JPEG', quality=quality, optimize=True)
            encoded = output.getvalue()

            return encoded, {
                'original_dimensions': (original_width, original_height),
                'new_dimensions': img.size,
                'original_size_bytes': len(data),
                'output_size_bytes': len(encoded),
                'source_format': source.format,
            }

    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError) as e:
        raise InvalidInputError(f"Cannot decode image: {str(e)}", field="image") from e

class DerivativeGenerator(PipelineStage):
    """Writes a resized copy of each raw image to the derivative bucket"""

    stage = StageName.DERIVATIVE

    def __init__(
        self,
        settings: Settings,
        blob_store: BlobStore,
        retry_handler: RetryHandler,
        failure_ledger: FailureLedger
    ):
        super().__init__(retry_handler, failure_ledger)
        self.settings = settings
        self.blob_store = blob_store

    async def generate(self, ref: ImageRef):
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

        if len(data) > self.settings.max_image_size:
            raise InvalidInputError(f"Image is {len(data)} bytes, limit is {self.settings.max_image_size}")

        derivative, info = resize_image_bytes(
            data,
            self.settings.derivative_max_width,
            self.settings.derivative_max_height,
            self.settings.derivative_quality
        )

        # Same input always yields the same bytes, so redelivery just rewrites them
        await self.retry_handler.execute_with_retry(
            self.operation_id(ref, "write"),
            self.blob_store.write,
            None,
            BlobNamespace.DERIVATIVE,
            ref.object_key,
            derivative,
            DERIVATIVE_CONTENT_TYPE
        )

        logger.info(
            f"Resized {ref} from {info['original_dimensions']} to {info['new_dimensions']} "
            f"({info['original_size_bytes']} -> {info['output_size_bytes']} bytes)"
        )
