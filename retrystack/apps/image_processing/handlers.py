"""ThumbnailHandler: image-processing request -> stored thumbnail."""

from typing import Protocol

from pydantic import BaseModel, Field

from retrystack.core.errors import FatalError, RecoverableError
from retrystack.core.consumer import Handler
from retrystack.core.message import Message

MAX_IMAGE_SIZE = 50 * 1024 * 1024


class ImageProcessingRequest(BaseModel):
    """Payload published when an asset is uploaded."""

    key: str = Field(min_length=1)
    content_type: str
    size: int = Field(ge=0)

    @property
    def thumbnail_key(self) -> str:
        stem, _, _ = self.key.rpartition(".")
        return f"{stem or self.key}_thumbnail.png"


class ThumbnailStore(Protocol):
    async def save(self, key: str, source_key: str) -> None: ...


class InMemoryThumbnailStore:
    """Thumbnail store that can be told to fail transiently.

    Args:
        failures: Number of ConnectionErrors to raise per source key before
            succeeding.
    """

    def __init__(self, failures: dict[str, int] | None = None) -> None:
        self.thumbnails: dict[str, str] = {}
        self._failures = dict(failures or {})

    async def save(self, key: str, source_key: str) -> None:
        remaining = self._failures.get(source_key, 0)
        if remaining > 0:
            self._failures[source_key] = remaining - 1
            raise ConnectionError(f"storage unavailable while saving {key}")
        self.thumbnails[key] = source_key


class ThumbnailHandler(Handler):
    """Creates a thumbnail for every uploaded image.

    Non-image uploads and oversized files are rejected; storage outages are
    retried.
    """

    def __init__(
        self,
        store: ThumbnailStore | None = None,
        max_size: int = MAX_IMAGE_SIZE,
        name: str | None = None,
    ) -> None:
        super().__init__(name=name)
        self.store = store or InMemoryThumbnailStore()
        self.max_size = max_size
        self.processed: list[str] = []

    async def handle(self, message: Message) -> None:
        request = ImageProcessingRequest.model_validate(message.payload)

        if not request.content_type.startswith("image/"):
            raise FatalError(f"{request.key} is {request.content_type}, not an image")
        if request.size > self.max_size:
            raise FatalError(f"{request.key} is {request.size} bytes, limit is {self.max_size}")

        try:
            await self.store.save(request.thumbnail_key, request.key)
        except ConnectionError as e:
            raise RecoverableError(f"could not store thumbnail for {request.key}: {e}") from e

        self.processed.append(request.key)
