"""OpenAPI customization for the key service.

Enriches the generated schema with:
- the ``X-API-Key`` security scheme applied to every operation,
- tag metadata,
- auth exemptions for the liveness endpoints.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

_LIVENESS_SUFFIXES = ("/health", "/keepalive")

_TAGS = [
    {
        "name": "Keys",
        "description": "Key issuance, HWID rebinding, revocation, import and export.",
    },
    {
        "name": "Health",
        "description": "Liveness checks (no authentication).",
    },
]


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add security metadata."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        schema = original_openapi()

        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {}).setdefault(
            "ApiKeyAuth",
            {
                "type": "apiKey",
                "in": "header",
                "name": "X-API-Key",
                "description": "Caller or admin API key.",
            },
        )
        schema.setdefault("security", [{"ApiKeyAuth": []}])

        tags = schema.setdefault("tags", [])
        known = {t.get("name") for t in tags}
        tags.extend(tag for tag in _TAGS if tag["name"] not in known)

        for path, methods in schema.get("paths", {}).items():
            for operation in methods.values():
                if not isinstance(operation, dict):
                    continue
                if path.endswith(_LIVENESS_SUFFIXES):
                    operation["security"] = []

        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
