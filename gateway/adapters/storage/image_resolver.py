"""Image reference resolution against the upload object store.

Callers reference uploads by id; the resolver fetches each object from
``<IMAGE_STORE_URL>/<bucket>/<caller>/<id>``, enforces the size cap and
returns base64 payloads ready to embed in a provider request.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from gateway.api.exceptions import ProviderError, ValidationError
from gateway.core.http_utils import ResponseSizeError, bytes_to_mb, read_capped
from gateway.models.llm.llm_models import ImageAttachment

if TYPE_CHECKING:
    from collections.abc import Sequence

    from gateway.config import ImageStoreConfig
    from gateway.utils.retry_utils import RetryOrchestrator

logger = logging.getLogger(__name__)

_SERVICE_NAME = "image_store"
_DEFAULT_MEDIA_TYPE = "image/jpeg"


@runtime_checkable
class ImageResolver(Protocol):
    """Turns image ids owned by a caller into inline attachments."""

    async def resolve(
        self, caller_id: str, image_ids: Sequence[str]
    ) -> tuple[ImageAttachment, ...]:
        """Fetch every referenced image, preserving order."""
        ...

    async def aclose(self) -> None:
        """Release any pooled connections."""
        ...


class UnconfiguredImageResolver:
    """Resolver used when no image store is configured."""

    async def resolve(
        self, caller_id: str, image_ids: Sequence[str]
    ) -> tuple[ImageAttachment, ...]:
        if image_ids:
            raise ValidationError(
                "Image attachments are not supported: no image store is configured",
                details={"image_count": len(image_ids)},
            )
        return ()

    async def aclose(self) -> None:
        return None


class StorageImageResolver:
    """Fetches uploads from an HTTP object store."""

    def __init__(
        self,
        config: ImageStoreConfig,
        retry: RetryOrchestrator,
        *,
        max_image_size_bytes: int,
        timeout_sec: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not config.url:
            msg = "StorageImageResolver requires IMAGE_STORE_URL"
            raise ValueError(msg)
        self._config = config
        self._retry = retry
        self._max_size = max_image_size_bytes
        headers = {}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
            headers["apikey"] = config.api_key
        self._client = httpx.AsyncClient(
            base_url=config.url,
            headers=headers,
            timeout=httpx.Timeout(timeout_sec),
            transport=transport,
        )

    async def resolve(
        self, caller_id: str, image_ids: Sequence[str]
    ) -> tuple[ImageAttachment, ...]:
        if not image_ids:
            return ()
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [
                    group.create_task(
                        self._retry.call(
                            lambda image_id=image_id: self._fetch(caller_id, image_id),
                            operation="image_fetch",
                        )
                    )
                    for image_id in image_ids
                ]
        except ExceptionGroup as failures:
            # Remaining fetches are already cancelled; report the first failure
            raise failures.exceptions[0] from None
        results = [task.result() for task in tasks]
        logger.debug(
            "images_resolved",
            extra={
                "image_count": len(results),
                "total_mb": bytes_to_mb(sum(len(r.data_base64) * 3 // 4 for r in results)),
            },
        )
        return tuple(results)

    async def aclose(self) -> None:
        await self._client.aclose()

    def object_path(self, caller_id: str, image_id: str) -> str:
        return "/" + "/".join(
            quote(segment, safe="") for segment in (self._config.bucket, caller_id, image_id)
        )

    async def _fetch(self, caller_id: str, image_id: str) -> ImageAttachment:
        request = self._client.build_request("GET", self.object_path(caller_id, image_id))
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TransportError as exc:
            msg = f"Image store request failed: {exc}"
            raise ProviderError(_SERVICE_NAME, msg) from exc

        try:
            if response.status_code in (400, 403, 404):
                raise ValidationError(
                    f"Image {image_id} was not found", details={"image_id": image_id}
                )
            if response.status_code >= 400:
                raise ProviderError(
                    _SERVICE_NAME,
                    f"Image store returned HTTP {response.status_code}",
                    upstream_status=response.status_code,
                )

            media_type = (
                response.headers.get("content-type", _DEFAULT_MEDIA_TYPE).split(";")[0].strip()
            )
            if not media_type.startswith("image/"):
                raise ValidationError(
                    f"Attachment {image_id} is not an image",
                    details={"image_id": image_id, "content_type": media_type},
                )

            try:
                body = await read_capped(response, self._max_size, _SERVICE_NAME)
            except ResponseSizeError as exc:
                raise ValidationError(
                    f"Image {image_id} exceeds the {bytes_to_mb(self._max_size)} MB limit",
                    details={"image_id": image_id, "max_size": exc.max_size},
                ) from exc
            except httpx.TransportError as exc:
                msg = f"Image store download interrupted: {exc}"
                raise ProviderError(_SERVICE_NAME, msg) from exc
        finally:
            await response.aclose()

        return ImageAttachment(
            image_id=image_id,
            media_type=media_type,
            data_base64=base64.b64encode(body).decode("ascii"),
        )
