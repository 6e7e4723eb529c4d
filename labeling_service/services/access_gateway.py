"""
Per-principal scoping of blob storage.

Every object lives under ``{key_prefix}{owner_namespace}/{image_id}`` where the
owner namespace is the identity provider's subject id, used verbatim. The
functions here are pure predicates; ``AccessGateway`` only carries the key
prefix so it can be shared freely between concurrent requests.
"""

from typing import List, Optional, Tuple
from enum import Enum
import logging

from ..errors import Forbidden, InvalidInputError
from ..models import ImageRef
from .blob_store import BlobNamespace, BlobStore

logger = logging.getLogger(__name__)

class Action(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    LIST = "list"

def _valid_segment(segment: str) -> bool:
    return bool(segment) and segment not in (".", "..") and "/" not in segment and "\x00" not in segment

def namespace_for(subject_id: str) -> str:
    """Owner namespace for a verified subject id"""
    if not _valid_segment(subject_id or ""):
        raise InvalidInputError("Subject id cannot be used as a namespace", field="subject_id")
    return subject_id

def parse_object_key(key: str, key_prefix: str = "") -> ImageRef:
    """Split ``{key_prefix}{namespace}/{image_id}`` into an ImageRef"""
    if not key or not key.startswith(key_prefix):
        raise InvalidInputError(f"Key outside the image area: {key!r}", field="key")

    parts = key[len(key_prefix):].split("/")
    if len(parts) != 2 or not all(_valid_segment(part) for part in parts):
        raise InvalidInputError(f"Malformed image key: {key!r}", field="key")

    return ImageRef(owner_namespace=parts[0], image_id=parts[1], key_prefix=key_prefix)

def authorize(subject_id: str, requested_key: str, action: Action = Action.READ, key_prefix: str = "") -> bool:
    """True when ``requested_key`` lies in the subject's own namespace"""
    if action == Action.LIST:
        return authorize_list(subject_id, requested_key, key_prefix)
    try:
        ref = parse_object_key(requested_key, key_prefix)
        return ref.owner_namespace == namespace_for(subject_id)
    except InvalidInputError:
        return False

def authorize_list(subject_id: str, prefix: str, key_prefix: str = "") -> bool:
    """True when every key under ``prefix`` belongs to the subject"""
    try:
        own_prefix = f"{key_prefix}{namespace_for(subject_id)}/"
    except InvalidInputError:
        return False
    return prefix.startswith(own_prefix) and ".." not in prefix[len(own_prefix):].split("/")

class AccessGateway:
    """Authorization checks bound to the configured key prefix"""

    def __init__(self, key_prefix: str = ""):
        self.key_prefix = key_prefix

    def list_prefix(self, subject_id: str) -> str:
        return f"{self.key_prefix}{namespace_for(subject_id)}/"

    def resolve(self, subject_id: str, image_key: str) -> ImageRef:
        """
        Resolve a client-supplied image key for a principal.

        Accepts either a bare image id or a full ``{namespace}/{image_id}`` key.
        Raises Forbidden when the key names another principal's namespace.
        """
        namespace = namespace_for(subject_id)
        if not image_key:
            raise InvalidInputError("Image key is required", field="key")

        if "/" not in image_key:
            key = f"{self.key_prefix}{namespace}/{image_key}"
        elif image_key.startswith(self.key_prefix):
            key = image_key
        else:
            key = f"{self.key_prefix}{image_key}"

        ref = parse_object_key(key, self.key_prefix)
        if ref.owner_namespace != namespace:
            logger.warning(f"Denied cross-namespace access by {subject_id} to {key}")
            raise Forbidden(f"Key {image_key} is outside your namespace")
        return ref

    def check(self, subject_id: str, requested_key: str, action: Action) -> None:
        if not authorize(subject_id, requested_key, action, self.key_prefix):
            logger.warning(f"Denied {action.value} by {subject_id} on {requested_key}")
            raise Forbidden(f"{action.value} not permitted on {requested_key}")

class ScopedBlobStore:
    """Blob operations performed on behalf of a single principal"""

    def __init__(self, gateway: AccessGateway, blob_store: BlobStore, subject_id: str):
        self.gateway = gateway
        self.blob_store = blob_store
        self.subject_id = subject_id

    async def read(self, namespace: BlobNamespace, key: str) -> bytes:
        self.gateway.check(self.subject_id, key, Action.READ)
        return await self.blob_store.read(namespace, key)

    async def write(self, namespace: BlobNamespace, key: str, data: bytes, content_type: str) -> None:
        self.gateway.check(self.subject_id, key, Action.WRITE)
        await self.blob_store.write(namespace, key, data, content_type)

    async def exists(self, namespace: BlobNamespace, key: str) -> bool:
        self.gateway.check(self.subject_id, key, Action.READ)
        return await self.blob_store.exists(namespace, key)

    async def delete(self, namespace: BlobNamespace, key: str) -> bool:
        self.gateway.check(self.subject_id, key, Action.DELETE)
        return await self.blob_store.delete(namespace, key)

    async def list_page(
        self,
        namespace: BlobNamespace,
        page_size: int,
        page_token: Optional[str] = None,
        prefix: Optional[str] = None
    ) -> Tuple[List[str], Optional[str]]:
        prefix = prefix or self.gateway.list_prefix(self.subject_id)
        self.gateway.check(self.subject_id, prefix, Action.LIST)
        names, next_token = await self.blob_store.list_page(namespace, prefix, page_size, page_token)
        # Nested keys under the prefix are not images
        return [name for name in names if authorize(self.subject_id, name, Action.READ, self.gateway.key_prefix)], next_token
