"""
Provider-agnostic LLM client for MindOps answer generation.

Gemini is the default provider; Anthropic and OpenAI are interchangeable
behind the same ``generate()`` call.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .config import LLMConfig

logger = logging.getLogger("mindops.common.llm_client")

SUPPORTED_PROVIDERS = ("google", "anthropic", "openai")


class LLMClient:
    """Single-shot text generation over one configured provider."""

    def __init__(
        self,
        provider: str = "google",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
    ) -> None:
        self.provider = (provider or "google").lower()
        self.model = model
        self._client = None
        self._google_models: Dict[str, object] = {}  # keyed by system prompt

        keys = {
            "google": google_api_key,
            "anthropic": anthropic_api_key,
            "openai": openai_api_key,
        }
        if self.provider not in SUPPORTED_PROVIDERS:
            logger.warning("Unsupported LLM provider: %s", self.provider)
            return

        api_key = keys[self.provider]
        if not api_key:
            logger.info("%s API key not provided, LLM client unavailable", self.provider)
            return

        try:
            self._client = getattr(self, f"_connect_{self.provider}")(api_key)
        except Exception as e:
            logger.warning("Could not initialize %s client: %s", self.provider, e)

    @staticmethod
    def _connect_google(api_key: str):
        import google.generativeai as genai

        genai.configure(api_key=api_key)
        return genai

    @staticmethod
    def _connect_anthropic(api_key: str):
        import anthropic

        return anthropic.Anthropic(api_key=api_key)

    @staticmethod
    def _connect_openai(api_key: str):
        from openai import OpenAI

        return OpenAI(api_key=api_key)

    @classmethod
    def from_config(cls, config: LLMConfig) -> "LLMClient":
        provider = (config.provider or "google").lower()
        model = getattr(config, f"{provider}_model", "")
        return cls(
            provider=provider,
            model=model,
            anthropic_api_key=config.anthropic_api_key,
            openai_api_key=config.openai_api_key,
            google_api_key=config.google_api_key,
        )

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 1024,
        timeout: float = 30.0,
    ) -> str:
        """
        Generate one completion for ``prompt``.

        Raises:
            RuntimeError: client not configured
            Exception: whatever the provider SDK raises
        """
        if not self.is_available:
            raise RuntimeError("LLM client is not available")
        call = getattr(self, f"_generate_{self.provider}")
        return call(prompt, system, max_tokens, timeout).strip()

    def _generate_google(self, prompt, system, max_tokens, timeout) -> str:
        key = system or ""
        model = self._google_models.get(key)
        if model is None:
            options = {"model_name": self.model}
            if system:
                options["system_instruction"] = system
            model = self._google_models[key] = self._client.GenerativeModel(**options)
        response = model.generate_content(
            prompt,
            generation_config={"max_output_tokens": max_tokens},
            request_options={"timeout": timeout},
        )
        return response.text

    def _generate_anthropic(self, prompt, system, max_tokens, timeout) -> str:
        extra = {"system": system} if system else {}
        response = self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
            **extra,
        )
        return response.content[0].text

    def _generate_openai(self, prompt, system, max_tokens, timeout) -> str:
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        response = self._client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=messages,
            timeout=timeout,
        )
        return response.choices[0].message.content or ""
