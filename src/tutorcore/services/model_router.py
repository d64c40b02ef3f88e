"""Routing helpers for selecting the generation backend.

The router does not couple directly to concrete SDK clients; instead it
selects a provider configuration that :mod:`generation` uses to build the
matching backend. This keeps the selection policy unit-testable and avoids
importing heavyweight SDKs when they are not required.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Optional, Iterable, Mapping, Set


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider that should handle a task."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url_env: Optional[str] = None
    default_base_url: Optional[str] = None
    requires_api_key: bool = True


class ModelRouter:
    """Policy-based router: one capability interface, backends chosen by configuration."""

    PROVIDER_CONFIG: Dict[str, Dict[str, Optional[str] | bool]] = {
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "model_env": "OPENAI_MODEL",
            "default_model": "gpt-4o-mini",
            "default_base_url": "https://api.openai.com/v1",
        },
        "gemini": {
            "api_key_env": "GEMINI_API_KEY",
            "base_url_env": "GEMINI_BASE_URL",
            "model_env": "GEMINI_MODEL",
            "default_model": "gemini-2.5-flash",
            "default_base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        },
        "xai": {
            "api_key_env": "XAI_API_KEY",
            "base_url_env": "XAI_BASE_URL",
            "model_env": "XAI_MODEL",
            "default_model": "grok-2-latest",
            "default_base_url": "https://api.x.ai/v1",
        },
        "local": {
            "api_key_env": "LOCAL_API_KEY",
            "base_url_env": "LOCAL_BASE_URL",
            "model_env": "LOCAL_MODEL",
            "default_model": "llama3.2:latest",
            "default_base_url": "http://127.0.0.1:11434",
            "requires_api_key": False,
        },
    }

    ROUTING_POLICY: Dict[str, tuple[str, ...]] = {
        # Live tutoring streams to the learner, so latency matters most.
        "tutoring_chat": ("openai", "gemini", "xai", "local"),
        # Structured JSON outputs go to providers with a reliable json mode first.
        "curriculum_structure": ("openai", "xai", "gemini", "local"),
        "follow_up_questions": ("openai", "xai", "gemini", "local"),
        "unit_elaboration": ("gemini", "openai", "xai", "local"),
    }

    def __init__(
        self,
        env: Optional[Dict[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._allowed: Optional[Set[str]] = set(allowed_providers) if allowed_providers else None
        preferred = (self._env.get("TUTOR_MODEL_PROVIDER") or "").strip().lower()
        self._preferred_provider = preferred if preferred in self.PROVIDER_CONFIG else None

    @property
    def env(self) -> Mapping[str, str]:
        return self._env

    # ------------------------------------------------------------------
    # Provider resolution helpers
    # ------------------------------------------------------------------
    def provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if self._allowed is not None and provider not in self._allowed:
            return False
        if bool(cfg.get("requires_api_key", True)):
            api_key_env = cfg.get("api_key_env")
            return bool(api_key_env and self._env.get(str(api_key_env)))

        # Keyless providers (local) must be switched on explicitly.
        enabled_flag = (self._env.get("TUTOR_ENABLE_LOCAL_PROVIDER") or "").strip() == "1"
        if not enabled_flag and self._preferred_provider != provider:
            return False
        base_url_env = cfg.get("base_url_env")
        return bool((base_url_env and self._env.get(str(base_url_env))) or cfg.get("default_base_url"))

    def resolve_provider(self, provider: str) -> ProviderSelection:
        """Return the selection for ``provider`` regardless of availability.

        Raises
        ------
        KeyError
            If the provider name is unknown.
        """

        cfg = self.PROVIDER_CONFIG[provider]
        model_env = cfg.get("model_env") or ""
        model = self._env.get(str(model_env)) or str(cfg.get("default_model") or "")
        return ProviderSelection(
            name=provider,
            model=model,
            api_key_env=cfg.get("api_key_env"),  # type: ignore[arg-type]
            base_url_env=cfg.get("base_url_env"),  # type: ignore[arg-type]
            default_base_url=cfg.get("default_base_url"),  # type: ignore[arg-type]
            requires_api_key=bool(cfg.get("requires_api_key", True)),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def select_provider(self, purpose: str) -> ProviderSelection:
        """Return the provider selected for the supplied purpose.

        Raises
        ------
        RuntimeError
            If no providers configured for the requested purpose are
            currently available.
        """

        priority = list(self.ROUTING_POLICY.get(purpose, self.ROUTING_POLICY["tutoring_chat"]))
        if self._preferred_provider:
            priority = [self._preferred_provider] + [p for p in priority if p != self._preferred_provider]
        for provider in priority:
            if self.provider_available(provider):
                return self.resolve_provider(provider)
        raise RuntimeError("No active model provider available for this task.")

