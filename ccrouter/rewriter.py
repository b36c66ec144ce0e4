from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from urllib.parse import quote

import httpx

from ccrouter.config import API_VERSION_PLACEHOLDER, DEPLOYMENT_PLACEHOLDER, Provider
from ccrouter.credentials import CredentialCache
from ccrouter.router_engine import IncomingRequest, RoutingDecision

API_KEY_HEADERS = frozenset({"authorization", "x-api-key", "api-key"})

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class OutboundAuth:
    url: str
    headers: Mapping[str, str]
    drop_headers: frozenset[str]
    upstream_model: str

    def apply(self, headers: Mapping[str, str]) -> dict[str, str]:
        merged = {
            name: value
            for name, value in headers.items()
            if name.lower() not in self.drop_headers
        }
        merged.update(self.headers)
        return merged


class RequestRewriter:
    """Builds per-request auth headers and endpoint for a routing decision.

    Cloud-identity providers get a bearer token from the credential cache and
    an endpoint with the deployment id and API version embedded in the URL.
    Static-key providers get their configured key and their base URL as is.
    The shared ``Provider`` is only read.
    """

    def __init__(
        self,
        credentials: CredentialCache,
        *,
        default_scope: str,
        default_api_version: str,
    ) -> None:
        self._credentials = credentials
        self._default_scope = default_scope
        self._default_api_version = default_api_version

    def scope_for(self, provider: Provider) -> str:
        return provider.scope or self._default_scope

    async def prepare(
        self, decision: RoutingDecision, request: IncomingRequest
    ) -> OutboundAuth:
        provider = decision.provider
        if provider.uses_cloud_identity:
            outbound = await self._prepare_cloud_identity(decision)
        else:
            outbound = self._prepare_static_key(decision)
        logger.debug(
            "outbound_prepared provider=%s requested_model=%s upstream_model=%s url=%s",
            provider.name,
            request.model,
            outbound.upstream_model,
            outbound.url,
        )
        return outbound

    async def _prepare_cloud_identity(self, decision: RoutingDecision) -> OutboundAuth:
        provider = decision.provider
        token = await self._credentials.get_token(self.scope_for(provider))
        deployment = provider.deployment_for(decision.model)
        api_version = provider.api_version or self._default_api_version
        return OutboundAuth(
            url=build_deployment_url(provider.api_base_url, deployment, api_version),
            headers=MappingProxyType({"Authorization": f"Bearer {token}"}),
            drop_headers=API_KEY_HEADERS,
            upstream_model=decision.model,
        )

    @staticmethod
    def _prepare_static_key(decision: RoutingDecision) -> OutboundAuth:
        provider = decision.provider
        headers: dict[str, str] = {}
        if provider.api_key:
            if provider.auth_header == "authorization":
                headers["Authorization"] = f"Bearer {provider.api_key}"
            else:
                headers[provider.auth_header] = provider.api_key
        return OutboundAuth(
            url=provider.api_base_url,
            headers=MappingProxyType(headers),
            drop_headers=API_KEY_HEADERS,
            upstream_model=decision.model,
        )


def build_deployment_url(base_url: str, deployment: str, api_version: str) -> str:
    encoded_deployment = quote(deployment, safe="")
    if API_VERSION_PLACEHOLDER in base_url:
        if DEPLOYMENT_PLACEHOLDER not in base_url:
            msg = f"Endpoint template '{base_url}' has no '{DEPLOYMENT_PLACEHOLDER}'."
            raise ValueError(msg)
        return base_url.replace(DEPLOYMENT_PLACEHOLDER, encoded_deployment).replace(
            API_VERSION_PLACEHOLDER, quote(api_version, safe="")
        )
    if DEPLOYMENT_PLACEHOLDER in base_url:
        url = base_url.replace(DEPLOYMENT_PLACEHOLDER, encoded_deployment)
    else:
        url = (
            f"{base_url.rstrip('/')}/openai/deployments/"
            f"{encoded_deployment}/chat/completions"
        )
    return str(httpx.URL(url).copy_merge_params({"api-version": api_version}))
