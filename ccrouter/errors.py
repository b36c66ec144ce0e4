from __future__ import annotations


class RouterError(Exception):
    """Base class for every error raised by the routing core."""

    error_type = "router_error"


class ConfigParseError(RouterError):
    error_type = "config_parse_error"


class ConfigValidationError(RouterError):
    error_type = "config_validation_error"


class NoRouteConfiguredError(ConfigValidationError):
    error_type = "no_route_configured"

    def __init__(self, route_class: str = "default") -> None:
        self.route_class = route_class
        super().__init__(
            f"Router has no '{route_class}' route configured; "
            "a 'default' entry of the form 'provider,model' is required."
        )


class UnknownProviderError(RouterError):
    error_type = "unknown_provider"

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Provider '{provider}' is not configured.")


class UnknownModelError(RouterError):
    error_type = "unknown_model"

    def __init__(self, provider: str, model: str) -> None:
        self.provider = provider
        self.model = model
        super().__init__(f"Provider '{provider}' does not serve model '{model}'.")


class CredentialAcquisitionError(RouterError):
    error_type = "credential_acquisition_error"

    def __init__(self, scope: str, reason: str) -> None:
        self.scope = scope
        self.reason = reason
        super().__init__(f"Failed to acquire token for scope '{scope}': {reason}")


__all__ = [
    "ConfigParseError",
    "ConfigValidationError",
    "CredentialAcquisitionError",
    "NoRouteConfiguredError",
    "RouterError",
    "UnknownModelError",
    "UnknownProviderError",
]
