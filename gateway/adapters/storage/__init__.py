"""Resolution of uploaded image references into inline attachments."""

from gateway.adapters.storage.image_resolver import (
    ImageResolver,
    StorageImageResolver,
    UnconfiguredImageResolver,
)

__all__ = ["ImageResolver", "StorageImageResolver", "UnconfiguredImageResolver"]
