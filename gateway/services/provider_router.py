"""Provider selection for chat requests.

The router combines three signals: the caller's explicit preference, the task
category of the conversation, and the health of each provider's circuit
breaker. It never talks to the network.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from gateway.api.exceptions import NoProvidersAvailableError
from gateway.config import VALID_PROVIDERS
from gateway.models.llm.llm_models import RouteProfile

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from gateway.config import GatewayConfig
    from gateway.models.llm.llm_models import ChatMessage
    from gateway.utils.circuit_breaker import CircuitBreakerRegistry

logger = logging.getLogger(__name__)

AUTO_PREFERENCE = "auto"


class TaskCategory(str, Enum):
    VISION = "vision"
    CODE = "code"
    GENERAL = "general"


# Candidate order per category. GENERAL is resolved against the configured
# default provider at routing time.
CATEGORY_ORDER: dict[TaskCategory, tuple[str, ...]] = {
    TaskCategory.VISION: ("gemini", "openai", "anthropic"),
    TaskCategory.CODE: ("anthropic", "openai", "gemini"),
}

_CODE_PATTERN = re.compile(
    r"```|\b(?:code|function|class|debug|bug|stack ?trace|traceback|exception|compile|"
    r"refactor|regex|sql|python|javascript|typescript|java|rust|golang|algorithm|api)\b",
    re.IGNORECASE,
)


@runtime_checkable
class TaskClassifier(Protocol):
    """Maps a conversation to a task category."""

    def classify(self, messages: Sequence[ChatMessage], attachment_count: int) -> TaskCategory:
        """Return the category used to order provider candidates."""
        ...


class KeywordTaskClassifier:
    """Ordered rules, first match wins: attachments, code keywords, general."""

    def classify(self, messages: Sequence[ChatMessage], attachment_count: int) -> TaskCategory:
        if attachment_count > 0:
            return TaskCategory.VISION
        last_user = next((m for m in reversed(messages) if m.role == "user"), None)
        if last_user is not None and _CODE_PATTERN.search(last_user.content):
            return TaskCategory.CODE
        return TaskCategory.GENERAL


@dataclass(frozen=True)
class RouteDecision:
    profile: RouteProfile
    reasoning: str
    task: TaskCategory
    candidates: tuple[str, ...] = field(default_factory=tuple)

    @property
    def provider(self) -> str:
        return self.profile.provider

    @property
    def model(self) -> str:
        return self.profile.model


def profiles_from_config(config: GatewayConfig) -> dict[str, RouteProfile]:
    """Build one immutable profile per known provider."""
    profiles: dict[str, RouteProfile] = {}
    for provider in VALID_PROVIDERS:
        provider_config = config.provider_config(provider)
        profiles[provider] = RouteProfile(
            provider=provider,
            model=provider_config.model,
            max_output_tokens=provider_config.max_output_tokens,
            cost_per_1k_input=provider_config.cost_per_1k_input,
            cost_per_1k_output=provider_config.cost_per_1k_output,
            enabled=provider_config.enabled,
        )
    return profiles


class ProviderRouter:
    """Chooses a provider and model for each request."""

    def __init__(
        self,
        profiles: Mapping[str, RouteProfile],
        breakers: CircuitBreakerRegistry,
        *,
        default_provider: str = "gemini",
        classifier: TaskClassifier | None = None,
    ) -> None:
        self._profiles = dict(profiles)
        self._breakers = breakers
        self._default_provider = default_provider
        self._classifier = classifier or KeywordTaskClassifier()

    @property
    def profiles(self) -> dict[str, RouteProfile]:
        return dict(self._profiles)

    def enabled_providers(self) -> list[str]:
        return [name for name, profile in self._profiles.items() if profile.enabled]

    def decide_route(
        self,
        messages: Sequence[ChatMessage],
        attachment_count: int = 0,
        caller_preference: str | None = None,
    ) -> RouteDecision:
        """Pick the first healthy candidate.

        Raises:
            NoProvidersAvailableError: If every configured provider has an open
                circuit, or none is configured at all.
        """
        task = self._classifier.classify(messages, attachment_count)
        candidates = self._candidate_order(task, caller_preference)
        preference = self._normalize_preference(caller_preference)

        skipped: list[str] = []
        for provider in candidates:
            reason = self._skip_reason(provider, task)
            if reason is not None:
                skipped.append(f"{provider} ({reason})")
                continue
            if provider == preference:
                reasoning = f"caller preference {provider}"
            else:
                reasoning = f"{task.value} task routed to {provider}"
            if skipped:
                reasoning += f"; skipped {', '.join(skipped)}"
            return self._decision(provider, reasoning, task, candidates)

        # Scan every configured provider again, dropping only the capability
        # requirement; an open circuit is never routed to.
        for provider in candidates:
            profile = self._profiles.get(provider)
            if profile is None or not profile.enabled:
                continue
            if not self._breakers.get(provider).is_open:
                reasoning = f"fallback to {provider}; no suitable candidate for {task.value} task"
                logger.warning(
                    "router_fallback",
                    extra={"provider": provider, "task": task.value, "skipped": skipped},
                )
                return self._decision(provider, reasoning, task, candidates)

        logger.error("router_no_providers", extra={"task": task.value, "skipped": skipped})
        raise NoProvidersAvailableError

    def _decision(
        self, provider: str, reasoning: str, task: TaskCategory, candidates: tuple[str, ...]
    ) -> RouteDecision:
        decision = RouteDecision(
            profile=self._profiles[provider],
            reasoning=reasoning,
            task=task,
            candidates=candidates,
        )
        logger.debug(
            "route_decided",
            extra={
                "provider": provider,
                "model": decision.model,
                "task": task.value,
                "reasoning": reasoning,
            },
        )
        return decision

    def _candidate_order(
        self, task: TaskCategory, caller_preference: str | None
    ) -> tuple[str, ...]:
        if task in CATEGORY_ORDER:
            base = list(CATEGORY_ORDER[task])
        else:
            others = [p for p in VALID_PROVIDERS if p != self._default_provider]
            base = [self._default_provider, *others]

        preference = self._normalize_preference(caller_preference)
        if preference is not None:
            base = [preference] + [p for p in base if p != preference]

        return tuple(p for p in base if p in self._profiles)

    def _skip_reason(self, provider: str, task: TaskCategory) -> str | None:
        profile = self._profiles[provider]
        if not profile.enabled:
            return "not configured"
        if self._breakers.get(provider).is_open:
            return "circuit open"
        if task is TaskCategory.VISION and not profile.supports_vision:
            return "no vision support"
        return None

    @staticmethod
    def _normalize_preference(caller_preference: str | None) -> str | None:
        if not caller_preference:
            return None
        preference = caller_preference.lower().strip()
        if preference == AUTO_PREFERENCE or preference not in VALID_PROVIDERS:
            return None
        return preference
