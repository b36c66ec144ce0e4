from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ccrouter.config import Provider, RouteClass, RouterConfig
from ccrouter.errors import (
    NoRouteConfiguredError,
    UnknownModelError,
    UnknownProviderError,
)
from ccrouter.model_utils import split_model_ref
from ccrouter.token_utils import estimate_prompt_tokens

LONG_CONTEXT_THRESHOLD_TOKENS = 60_000

logger = logging.getLogger("uvicorn.error")


class Message(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    role: str
    content: Any = None


class IncomingRequest(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    model: str
    messages: list[Message] = Field(default_factory=list)
    max_tokens: int | None = None
    thinking: bool = False
    tools: list[dict[str, Any]] = Field(default_factory=list)
    system: Any = None
    stream: bool = False
    estimated_prompt_tokens: int = 0

    @field_validator("model")
    @classmethod
    def _validate_model(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("'model' must not be empty.")
        return normalized

    @field_validator("thinking", mode="before")
    @classmethod
    def _coerce_thinking(cls, value: Any) -> Any:
        if value is None:
            return False
        if isinstance(value, dict):
            return str(value.get("type", "")).strip().lower() == "enabled"
        return value

    @field_validator("tools", mode="before")
    @classmethod
    def _coerce_tools(cls, value: Any) -> Any:
        return [] if value is None else value

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> IncomingRequest:
        estimated_tokens, method = estimate_prompt_tokens(payload)
        logger.debug(
            "prompt_tokens_estimated tokens=%d method=%s", estimated_tokens, method
        )
        return cls.model_validate(
            {**payload, "estimated_prompt_tokens": estimated_tokens}
        )


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    provider: Provider
    model: str
    route_class: RouteClass

    @property
    def label(self) -> str:
        return f"{self.provider.name},{self.model}"


class ModelRouter:
    """Picks the provider and model for a request.

    A ``provider,model`` value in the request's model field bypasses
    classification entirely. Otherwise the request is classified in a fixed
    priority order (think, longContext, background, default) and the matching
    route is looked up, falling back to the default route when the class has
    no entry of its own.
    """

    def __init__(
        self, *, long_context_threshold: int = LONG_CONTEXT_THRESHOLD_TOKENS
    ) -> None:
        self.long_context_threshold = long_context_threshold

    def select(self, request: IncomingRequest, config: RouterConfig) -> RoutingDecision:
        override = split_model_ref(request.model)
        if override is not None:
            provider_name, model = override
            provider = config.get_provider(provider_name)
            if provider is None:
                raise UnknownProviderError(provider_name)
            if not provider.serves(model):
                raise UnknownModelError(provider_name, model)
            return self._decided(provider, model, RouteClass.DEFAULT, source="override")

        route_class = self.classify(request, config)
        effective_class = route_class
        target = config.get_route(route_class)
        if target is None:
            effective_class = RouteClass.DEFAULT
            target = config.get_route(RouteClass.DEFAULT)
        if target is None:
            raise NoRouteConfiguredError(RouteClass.DEFAULT.value)

        provider = config.get_provider(target.provider)
        if provider is None:
            raise UnknownProviderError(target.provider)
        source = "classified" if effective_class == route_class else "default_fallback"
        return self._decided(provider, target.model, effective_class, source=source)

    def classify(self, request: IncomingRequest, config: RouterConfig) -> RouteClass:
        # Thinking outranks long context even for oversized prompts.
        if request.thinking:
            return RouteClass.THINK
        if request.estimated_prompt_tokens > self.long_context_threshold:
            return RouteClass.LONG_CONTEXT
        if _matches_background_alias(request.model, config.background_models):
            return RouteClass.BACKGROUND
        return RouteClass.DEFAULT

    @staticmethod
    def _decided(
        provider: Provider, model: str, route_class: RouteClass, *, source: str
    ) -> RoutingDecision:
        decision = RoutingDecision(provider=provider, model=model, route_class=route_class)
        logger.debug(
            "route_selected provider=%s model=%s route_class=%s source=%s",
            provider.name,
            model,
            route_class.value,
            source,
        )
        return decision


def _matches_background_alias(model: str, aliases: tuple[str, ...]) -> bool:
    return any(model.startswith(alias) for alias in aliases)


__all__ = [
    "IncomingRequest",
    "LONG_CONTEXT_THRESHOLD_TOKENS",
    "Message",
    "ModelRouter",
    "RoutingDecision",
]
