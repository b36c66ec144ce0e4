from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal, NamedTuple

import json5
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from ccrouter.errors import (
    ConfigParseError,
    ConfigValidationError,
    NoRouteConfiguredError,
)
from ccrouter.model_utils import ROUTE_SEPARATOR, coerce_model_entries, split_model_ref

JSON5_HEADER = (
    "// This config file supports JSON5 format (comments, trailing commas, etc.)"
)
DEFAULT_BACKGROUND_MODELS = ("claude-3-5-haiku",)
DEPLOYMENT_PLACEHOLDER = "{deployment}"
API_VERSION_PLACEHOLDER = "{api_version}"

logger = logging.getLogger("uvicorn.error")


class RouteClass(str, Enum):
    DEFAULT = "default"
    BACKGROUND = "background"
    THINK = "think"
    LONG_CONTEXT = "longContext"


class AuthType(str, Enum):
    STATIC_KEY = "static_key"
    CLOUD_IDENTITY = "cloud_identity"


_AUTH_TYPE_ALIASES = {
    "azure": AuthType.CLOUD_IDENTITY,
    "cloud_identity": AuthType.CLOUD_IDENTITY,
    "api_key": AuthType.STATIC_KEY,
    "static_key": AuthType.STATIC_KEY,
}


class RouteTarget(NamedTuple):
    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}{ROUTE_SEPARATOR}{self.model}"


class Provider(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    api_base_url: str
    auth_type: AuthType = AuthType.STATIC_KEY
    api_key: str | None = None
    models: tuple[str, ...] = ()
    deployments: tuple[tuple[str, str], ...] = ()
    api_version: str | None = None
    auth_header: Literal["authorization", "x-api-key", "api-key"] = "authorization"
    scope: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_raw_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        name = data.get("name")

        raw_auth = data.get("auth_type")
        if raw_auth is None:
            data["auth_type"] = AuthType.STATIC_KEY
        elif not isinstance(raw_auth, AuthType):
            resolved = _AUTH_TYPE_ALIASES.get(str(raw_auth).strip().lower())
            if resolved is None:
                msg = f"Provider '{name}' has unsupported auth_type '{raw_auth}'."
                raise ValueError(msg)
            data["auth_type"] = resolved

        raw_models = data.get("models")
        if not isinstance(raw_models, tuple):
            models, deployments = coerce_model_entries(raw_models)
            explicit = data.get("deployments") or {}
            if not isinstance(explicit, dict):
                msg = f"Provider '{name}' has a non-object 'deployments' field."
                raise ValueError(msg)
            merged = {str(k).strip(): str(v).strip() for k, v in explicit.items()}
            merged.update(deployments)
            data["models"] = tuple(models)
            data["deployments"] = tuple(merged.items())

        raw_header = data.get("auth_header")
        if isinstance(raw_header, str):
            data["auth_header"] = raw_header.strip().lower()
        return data

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Provider name must not be empty.")
        if ROUTE_SEPARATOR in normalized:
            msg = f"Provider name '{normalized}' must not contain '{ROUTE_SEPARATOR}'."
            raise ValueError(msg)
        return normalized

    @model_validator(mode="after")
    def _validate_endpoint_template(self) -> Provider:
        if (
            self.uses_cloud_identity
            and API_VERSION_PLACEHOLDER in self.api_base_url
            and DEPLOYMENT_PLACEHOLDER not in self.api_base_url
        ):
            msg = (
                f"Provider '{self.name}' api_base_url uses '{API_VERSION_PLACEHOLDER}' "
                f"without '{DEPLOYMENT_PLACEHOLDER}'."
            )
            raise ValueError(msg)
        return self

    @property
    def uses_cloud_identity(self) -> bool:
        return self.auth_type == AuthType.CLOUD_IDENTITY

    def serves(self, model: str) -> bool:
        return model in self.models

    def deployment_for(self, model: str) -> str:
        for served_model, deployment in self.deployments:
            if served_model == model:
                return deployment
        return model


class ConfigDocument(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    providers: list[Provider] = Field(
        default_factory=list,
        validation_alias=AliasChoices("Providers", "providers"),
    )
    router: dict[str, str | None] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("Router", "router"),
    )
    api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("APIKEY", "api_key"),
    )
    background_models: list[str] = Field(
        default_factory=lambda: list(DEFAULT_BACKGROUND_MODELS),
        validation_alias=AliasChoices("BackgroundModels", "background_models"),
    )


@dataclass(frozen=True, slots=True)
class RouterConfig:
    providers: tuple[Provider, ...]
    routes: Mapping[RouteClass, RouteTarget]
    api_key: str | None = None
    background_models: tuple[str, ...] = DEFAULT_BACKGROUND_MODELS
    document: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, raw: Mapping[str, Any]) -> RouterConfig:
        try:
            document = ConfigDocument.model_validate(dict(raw))
        except ValidationError as exc:
            raise ConfigValidationError(f"Invalid config document: {exc}") from exc

        by_name: dict[str, Provider] = {}
        for provider in document.providers:
            if provider.name in by_name:
                raise ConfigValidationError(
                    f"Provider '{provider.name}' is configured more than once."
                )
            by_name[provider.name] = provider

        routes = _resolve_routes(document.router, by_name)
        api_key = (document.api_key or "").strip() or None
        background_models = tuple(
            alias.strip() for alias in document.background_models if alias.strip()
        )
        return cls(
            providers=tuple(document.providers),
            routes=MappingProxyType(routes),
            api_key=api_key,
            background_models=background_models,
            document=MappingProxyType(dict(raw)),
        )

    def get_provider(self, name: str) -> Provider | None:
        for provider in self.providers:
            if provider.name == name:
                return provider
        return None

    def get_route(self, route_class: RouteClass) -> RouteTarget | None:
        return self.routes.get(route_class)

    def available_models(self) -> list[str]:
        return [
            f"{provider.name}{ROUTE_SEPARATOR}{model}"
            for provider in self.providers
            for model in provider.models
        ]


def _resolve_routes(
    raw_routes: Mapping[str, str | None],
    providers: Mapping[str, Provider],
) -> dict[RouteClass, RouteTarget]:
    routes: dict[RouteClass, RouteTarget] = {}
    for key, raw_value in raw_routes.items():
        try:
            route_class = RouteClass(key)
        except ValueError:
            logger.warning("router_route_ignored route_class=%s reason=unrecognized", key)
            continue
        if raw_value is None or not raw_value.strip():
            continue

        parsed = split_model_ref(raw_value)
        if parsed is None:
            raise ConfigValidationError(
                f"Route '{key}' must be of the form 'provider,model', got '{raw_value}'."
            )
        provider_name, model = parsed
        provider = providers.get(provider_name)
        if provider is None:
            raise ConfigValidationError(
                f"Route '{key}' references unknown provider '{provider_name}'."
            )
        if not provider.serves(model):
            raise ConfigValidationError(
                f"Route '{key}' references model '{model}' which provider "
                f"'{provider_name}' does not list."
            )
        routes[route_class] = RouteTarget(provider_name, model)

    if RouteClass.DEFAULT not in routes:
        raise NoRouteConfiguredError(RouteClass.DEFAULT.value)
    return routes


class ConfigStore:
    def __init__(self, config_path: str | Path) -> None:
        self._path = Path(config_path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> RouterConfig:
        raw = self._load_document()
        config = RouterConfig.from_document(raw)
        logger.info(
            "config_loaded path=%s providers=%d routes=%s",
            self._path,
            len(config.providers),
            ",".join(route_class.value for route_class in config.routes),
        )
        return config

    def save(self, document: Mapping[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        body = json5.dumps(dict(document), indent=2)
        self._path.write_text(f"{JSON5_HEADER}\n{body}\n", encoding="utf-8")

    def _load_document(self) -> dict[str, Any]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConfigParseError(
                f"Config file not found at '{self._path}'. "
                "Create it or set CONFIG_PATH."
            ) from exc
        except OSError as exc:
            raise ConfigParseError(
                f"Failed to read config file at '{self._path}': {exc}"
            ) from exc

        try:
            payload = json5.loads(text)
        except ValueError as exc:
            raise ConfigParseError(
                f"Failed to parse config file at '{self._path}': {exc}"
            ) from exc
        if not isinstance(payload, dict):
            raise ConfigParseError(f"Expected a JSON object in '{self._path}'.")
        return payload


def export_environment(
    config: RouterConfig,
    environ: MutableMapping[str, str] | None = None,
) -> None:
    target = os.environ if environ is None else environ
    for key, value in config.document.items():
        if value is None:
            continue
        if isinstance(value, str):
            target[key] = value
        elif isinstance(value, (bool, int, float)):
            target[key] = json.dumps(value)
        else:
            target[key] = json.dumps(value, separators=(",", ":"))


def load_router_config(config_path: str | Path) -> RouterConfig:
    return ConfigStore(config_path).load()
