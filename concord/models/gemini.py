"""Native Gemini API adapter."""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict

import httpx

from ..errors import ModelUnavailableError
from .adapter import ModelAdapter, ModelOutput

logger = logging.getLogger(__name__)


@dataclass
class GeminiResult:
    """Result from a Gemini API call."""
    text: str = ""
    ok: bool = True
    error: str | None = None
    duration_ms: float = 0.0
    usage: Dict[str, Any] | None = None


class GeminiAdapter(ModelAdapter):
    """Gemini generateContent over httpx."""

    MODEL_MAP = {
        "2.5-flash": "gemini-2.5-flash",
        "2.5-pro": "gemini-2.5-pro",
        "2.0-flash": "gemini-2.0-flash",
    }

    def __init__(
        self,
        model_id: str = "gemini",
        model: str = "2.5-flash",
        api_key: str | None = None,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        temperature: float = 0.2,
        timeout: float = 120.0,
        system: str | None = None,
    ) -> None:
        self.model_id = model_id
        self.model = model
        self.api_key = api_key if api_key is not None else os.environ.get("GEMINI_API_KEY", "")
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.timeout = timeout
        self.system = system

    def is_available(self) -> bool:
        return bool(self.api_key)

    def generate(self, prompt: str) -> GeminiResult:
        if not self.api_key:
            return GeminiResult(ok=False, error="GEMINI_API_KEY not set")

        model_name = self.MODEL_MAP.get(self.model, self.model)
        url = f"{self.base_url}/models/{model_name}:generateContent?key={self.api_key}"
        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": self.temperature},
        }
        if self.system:
            body["systemInstruction"] = {"parts": [{"text": self.system}]}

        start = time.perf_counter()
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=body)
            duration_ms = (time.perf_counter() - start) * 1000

            if response.status_code != 200:
                return GeminiResult(
                    ok=False,
                    error=f"HTTP {response.status_code}: {response.text[:500]}",
                    duration_ms=duration_ms,
                )

            data = response.json()
            candidates = data.get("candidates", [])
            if not candidates:
                return GeminiResult(ok=False, error="No candidates in response", duration_ms=duration_ms)

            parts = candidates[0].get("content", {}).get("parts", [])
            usage_meta = data.get("usageMetadata", {})
            return GeminiResult(
                text="".join(p.get("text", "") for p in parts),
                ok=True,
                duration_ms=duration_ms,
                usage={
                    "prompt_tokens": usage_meta.get("promptTokenCount", 0),
                    "completion_tokens": usage_meta.get("candidatesTokenCount", 0),
                    "total_tokens": usage_meta.get("totalTokenCount", 0),
                },
            )
        except httpx.TimeoutException:
            duration_ms = (time.perf_counter() - start) * 1000
            return GeminiResult(ok=False, error=f"Gemini API timeout after {self.timeout}s", duration_ms=duration_ms)
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            return GeminiResult(ok=False, error=str(e), duration_ms=duration_ms)

    def call(self, prompt: str, session_id: str | None = None) -> ModelOutput:
        result = self.generate(prompt)
        if not result.ok:
            logger.info("Gemini call failed for %s: %s", self.model_id, result.error)
            raise ModelUnavailableError(self.model_id, result.error or "gemini error")
        return result.text
