from __future__ import annotations

from typing import Any

ROUTE_SEPARATOR = ","


def split_model_ref(value: str) -> tuple[str, str] | None:
    normalized = value.strip()
    if ROUTE_SEPARATOR not in normalized:
        return None
    parts = normalized.split(ROUTE_SEPARATOR)
    if len(parts) != 2:
        return None
    provider, model = parts[0].strip(), parts[1].strip()
    if not provider or not model:
        return None
    return provider, model


def coerce_model_entries(value: Any) -> tuple[list[str], dict[str, str]]:
    """Normalize a provider ``models`` list.

    Entries are either bare model names or objects with a ``name`` field and an
    optional ``deployment`` (or ``deployment_name``). Returns the ordered,
    de-duplicated model names and the model to deployment mapping.
    """
    if value is None:
        return [], {}
    if not isinstance(value, list):
        msg = "Expected 'models' to be a list of names or objects with a 'name' field."
        raise ValueError(msg)

    models: list[str] = []
    deployments: dict[str, str] = {}
    seen: set[str] = set()
    for item in value:
        deployment: str | None = None
        if isinstance(item, str):
            name = item.strip()
        elif isinstance(item, dict):
            raw_name = item.get("name")
            if not isinstance(raw_name, str) or not raw_name.strip():
                msg = f"Model entry {item!r} must define a non-empty 'name'."
                raise ValueError(msg)
            name = raw_name.strip()
            raw_deployment = item.get("deployment") or item.get("deployment_name")
            if isinstance(raw_deployment, str) and raw_deployment.strip():
                deployment = raw_deployment.strip()
        else:
            msg = f"Unsupported model entry {item!r}."
            raise ValueError(msg)

        if not name:
            continue
        if name not in seen:
            seen.add(name)
            models.append(name)
        if deployment:
            deployments.setdefault(name, deployment)
    return models, deployments
