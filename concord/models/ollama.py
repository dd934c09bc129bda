"""Ollama adapter for local inference."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional
import json
import logging
import time

import httpx

from ..errors import ModelTimeoutError, ModelUnavailableError
from .adapter import ModelAdapter, ModelOutput

logger = logging.getLogger(__name__)


@dataclass
class OllamaResult:
    text: str
    duration_ms: float
    ok: bool
    error: Optional[str] = None


class OllamaAdapter(ModelAdapter):
    def __init__(
        self,
        model_id: str,
        model: str,
        base_url: str = "http://localhost:11434",
        temperature: float = 0.2,
        timeout: float = 120.0,
        stream: bool = True,
        system: Optional[str] = None,
    ) -> None:
        self.model_id = model_id
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.timeout = timeout
        self.supports_streaming = stream
        self.system = system

    def list_models(self) -> list[dict]:
        try:
            with httpx.Client(timeout=5.0) as client:
                resp = client.get(f"{self.base_url}/api/tags")
                resp.raise_for_status()
                data = resp.json()
                return data.get("models", [])
        except Exception:
            logger.debug("Ollama tag listing failed at %s", self.base_url, exc_info=True)
            return []

    def is_available(self) -> bool:
        names = {m.get("name") for m in self.list_models()}
        return self.model in names or f"{self.model}:latest" in names

    def _payload(self, prompt: str, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": stream,
            "options": {"temperature": self.temperature},
        }
        if self.system:
            payload["system"] = self.system
        return payload

    def generate(self, prompt: str) -> OllamaResult:
        start = time.perf_counter()
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(f"{self.base_url}/api/generate", json=self._payload(prompt, False))
                resp.raise_for_status()
                data = resp.json()
                duration = (time.perf_counter() - start) * 1000
                return OllamaResult(text=data.get("response", ""), duration_ms=duration, ok=True)
        except Exception as exc:
            duration = (time.perf_counter() - start) * 1000
            return OllamaResult(text="", duration_ms=duration, ok=False, error=str(exc))

    def call(self, prompt: str, session_id: str | None = None) -> ModelOutput:
        if self.supports_streaming:
            return self._stream(prompt)
        result = self.generate(prompt)
        if not result.ok:
            raise ModelUnavailableError(self.model_id, result.error or "ollama error")
        return result.text

    def _stream(self, prompt: str) -> Iterator[str]:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                with client.stream("POST", f"{self.base_url}/api/generate", json=self._payload(prompt, True)) as resp:
                    resp.raise_for_status()
                    for line in resp.iter_lines():
                        if not line.strip():
                            continue
                        data = json.loads(line)
                        if data.get("error"):
                            raise ModelUnavailableError(self.model_id, str(data["error"]))
                        chunk = data.get("response", "")
                        if chunk:
                            yield chunk
                        if data.get("done"):
                            return
        except httpx.TimeoutException as exc:
            raise ModelTimeoutError(self.model_id, self.timeout) from exc
        except httpx.HTTPError as exc:
            raise ModelUnavailableError(self.model_id, str(exc)) from exc
