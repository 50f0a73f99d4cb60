"""Search-assist mode collaborator."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Sequence

    from gateway.models.llm.llm_models import ChatMessage

logger = logging.getLogger(__name__)


@runtime_checkable
class SearchHandler(Protocol):
    async def search(
        self,
        query: str,
        *,
        caller_id: str,
        messages: Sequence[ChatMessage],
        conversation_id: str | None = None,
    ) -> dict[str, Any]:
        """Answer a search-assist request with a JSON document."""
        ...


class PlaceholderSearchHandler:
    """Default handler until a search backend is wired in."""

    async def search(
        self,
        query: str,
        *,
        caller_id: str,
        messages: Sequence[ChatMessage],
        conversation_id: str | None = None,
    ) -> dict[str, Any]:
        logger.info(
            "search_query_received",
            extra={"query_length": len(query), "conversation_id": conversation_id},
        )
        return {
            "type": "search_result",
            "query": query,
            "results": [],
            "message": "Search functionality placeholder",
        }
