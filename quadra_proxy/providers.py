from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from quadra_proxy.errors import MissingCredential, UnknownProvider

logger = logging.getLogger("uvicorn.error")

OPENROUTER_CHAT_COMPLETIONS_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_PROVIDER_ID = "openrouter"


class ProviderSpec(BaseModel):
    credential_env: str
    endpoint: str = OPENROUTER_CHAT_COMPLETIONS_URL
    model: str
    extra_headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("credential_env", "endpoint", "model")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must not be empty")
        return normalized


class ProviderRegistryConfig(BaseModel):
    default_provider: str = DEFAULT_PROVIDER_ID
    providers: dict[str, ProviderSpec] = Field(default_factory=dict)


BUILTIN_PROVIDERS: dict[str, ProviderSpec] = {
    "openrouter": ProviderSpec(
        credential_env="OPENROUTER_API_KEY",
        endpoint=OPENROUTER_CHAT_COMPLETIONS_URL,
        model="openai/gpt-3.5-turbo",
    ),
    "gpt5-nano": ProviderSpec(
        credential_env="OPENAI_GPT5_NANO_KEY",
        endpoint=OPENROUTER_CHAT_COMPLETIONS_URL,
        model="openai/gpt-5-nano",
    ),
}


@dataclass(slots=True)
class ResolvedProvider:
    provider_id: str
    credential: str
    endpoint: str
    model: str
    headers: dict[str, str] = field(default_factory=dict)
    requested_provider_id: str | None = None

    @property
    def is_fallback(self) -> bool:
        return (
            self.requested_provider_id is not None
            and self.requested_provider_id != self.provider_id
        )


class ProviderRegistry:
    """Maps provider ids to credentials, endpoints and model ids.

    Credentials are looked up in the environment on every ``resolve`` call so
    a rotated or removed key takes effect without a restart.
    """

    def __init__(
        self,
        providers: dict[str, ProviderSpec] | None = None,
        *,
        default_provider: str = DEFAULT_PROVIDER_ID,
        fallback_enabled: bool = True,
        default_headers: dict[str, str] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._providers = dict(BUILTIN_PROVIDERS if providers is None else providers)
        if default_provider not in self._providers:
            raise ValueError(
                f"Default provider '{default_provider}' is not in the registry."
            )
        self.default_provider = default_provider
        self.fallback_enabled = fallback_enabled
        self._default_headers = dict(default_headers or {})
        self._environ = environ

    def provider_ids(self) -> list[str]:
        return sorted(self._providers)

    def resolve(self, provider_id: str | None) -> ResolvedProvider:
        requested = (provider_id or "").strip() or self.default_provider
        spec = self._providers.get(requested)
        selected = requested
        if spec is None:
            if not self.fallback_enabled:
                raise UnknownProvider(requested, self.provider_ids())
            selected = self.default_provider
            spec = self._providers[selected]
            logger.warning(
                "provider_fallback requested_provider=%s selected_provider=%s",
                requested,
                selected,
            )

        environ = self._environ if self._environ is not None else os.environ
        credential = (environ.get(spec.credential_env) or "").strip()
        if not credential:
            raise MissingCredential(selected, spec.credential_env)

        return ResolvedProvider(
            provider_id=selected,
            credential=credential,
            endpoint=spec.endpoint,
            model=spec.model,
            headers={**self._default_headers, **spec.extra_headers},
            requested_provider_id=requested,
        )


def load_provider_registry_config(path: str | Path) -> ProviderRegistryConfig:
    resolved = Path(path)
    with resolved.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Expected YAML object in '{resolved}'.")
    return ProviderRegistryConfig.model_validate(payload)


def build_provider_registry(
    *,
    config_path: str | None,
    default_provider: str,
    fallback_enabled: bool,
    referer: str | None = None,
    title: str | None = None,
) -> ProviderRegistry:
    providers: dict[str, ProviderSpec] = dict(BUILTIN_PROVIDERS)
    if config_path:
        loaded = load_provider_registry_config(config_path)
        providers.update(loaded.providers)
        if loaded.default_provider != DEFAULT_PROVIDER_ID:
            default_provider = loaded.default_provider

    default_headers: dict[str, str] = {}
    if referer:
        default_headers["HTTP-Referer"] = referer
    if title:
        default_headers["X-Title"] = title

    return ProviderRegistry(
        providers,
        default_provider=default_provider,
        fallback_enabled=fallback_enabled,
        default_headers=default_headers,
    )
