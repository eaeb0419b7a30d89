"""Utilities for calling a locally hosted model server (Ollama).

Provides chat completion for the inference responder and embeddings for the
retrieval store. Requests are blocking ``urllib`` calls pushed to a worker
thread so they never stall the event loop.
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, List
from urllib import error, request

DEFAULT_OLLAMA_BASE_URL = "http://127.0.0.1:11434"
DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"
_CHAT_ENDPOINT = "/api/chat"
_EMBEDDINGS_ENDPOINT = "/api/embeddings"


class LocalLLMError(RuntimeError):
    """Raised when a local model invocation fails."""


def _resolve_base_url(base_url: str | None) -> str:
    return (base_url or os.getenv("OLLAMA_BASE_URL") or DEFAULT_OLLAMA_BASE_URL).rstrip("/")


def _perform_ollama_request(
    endpoint: str,
    payload: dict[str, Any],
    base_url: str,
    timeout: float,
) -> dict[str, Any]:
    """Execute the blocking HTTP request against the Ollama REST API."""

    url = f"{base_url.rstrip('/')}{endpoint}"
    data = json.dumps(payload).encode("utf-8")
    req = request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST",
    )

    try:
        with request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
    except error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore") if exc.fp else ""
        message = body or exc.reason
        raise LocalLLMError(
            f"Ollama request to {endpoint} failed with status {exc.code}: {message}"
        ) from exc
    except error.URLError as exc:
        raise LocalLLMError(
            f"Could not reach Ollama at {url} (connection error): {exc.reason}"
        ) from exc

    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LocalLLMError("Ollama returned non-JSON response.") from exc


async def call_ollama_chat(
    *,
    system_prompt: str,
    user_prompt: str,
    llm_model: str,
    base_url: str | None = None,
    timeout: float = 120.0,
) -> str:
    """Invoke a local Ollama model and return the assistant text."""

    system_prompt = system_prompt.strip()
    user_prompt = user_prompt.strip()
    if not user_prompt:
        raise LocalLLMError("Cannot call Ollama with an empty user prompt.")

    messages: list[dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": user_prompt})

    payload = {
        "model": llm_model,
        "messages": messages,
        "stream": False,
    }

    parsed = await asyncio.to_thread(
        _perform_ollama_request,
        _CHAT_ENDPOINT,
        payload,
        _resolve_base_url(base_url),
        timeout,
    )
    content = (parsed.get("message") or {}).get("content")
    if not content:
        raise LocalLLMError("Ollama response did not include assistant content.")
    return content


async def call_ollama_embeddings(
    text: str,
    *,
    model: str = DEFAULT_EMBEDDING_MODEL,
    base_url: str | None = None,
    timeout: float = 60.0,
) -> List[float]:
    """Return the embedding vector Ollama computes for ``text``."""

    parsed = await asyncio.to_thread(
        _perform_ollama_request,
        _EMBEDDINGS_ENDPOINT,
        {"model": model, "prompt": text},
        _resolve_base_url(base_url),
        timeout,
    )
    embedding = parsed.get("embedding")
    if not isinstance(embedding, list) or not embedding:
        raise LocalLLMError("Ollama response did not include an embedding.")
    return [float(value) for value in embedding]


class OllamaEmbedder:
    """``EmbeddingProvider`` backed by the Ollama embeddings endpoint."""

    def __init__(
        self,
        model: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.model = model or os.getenv("EMBEDDING_MODEL") or DEFAULT_EMBEDDING_MODEL
        self.base_url = base_url
        self.timeout = timeout

    async def embed(self, text: str) -> List[float]:
        return await call_ollama_embeddings(
            text,
            model=self.model,
            base_url=self.base_url,
            timeout=self.timeout,
        )


__all__ = [
    "LocalLLMError",
    "call_ollama_chat",
    "call_ollama_embeddings",
    "OllamaEmbedder",
    "DEFAULT_OLLAMA_BASE_URL",
]
