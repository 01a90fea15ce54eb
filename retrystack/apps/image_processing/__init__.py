"""Image-processing worker: thumbnails for uploaded assets."""

from retrystack.apps.image_processing.handlers import (
    ImageProcessingRequest,
    InMemoryThumbnailStore,
    ThumbnailHandler,
)

__all__ = ["ImageProcessingRequest", "InMemoryThumbnailStore", "ThumbnailHandler"]
