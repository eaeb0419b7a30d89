"""Inference helpers: schema-validated LLM calls and the step responder.

``call_llm_with_retries`` is the single entry point for structured model
output. Hosted providers go through mirascope; ``ollama`` goes to the local
server. A response that fails pydantic validation is retried with the
validation errors appended to the prompt.
"""

from __future__ import annotations

import asyncio
from typing import List, TypeVar

from mirascope import llm
from pydantic import BaseModel, Field, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .config import Config
from .local_llm import LocalLLMError, call_ollama_chat
from .logging_utils import log_error, log_tool
from .schemas import ContextWindow


ModelT = TypeVar("ModelT", bound=BaseModel)
LLM_TIMEOUT_SECONDS = 120.0
RESPONSE_FORMAT_HINT = 'Respond with JSON of the form {"content": "<answer>"}.'


class StepOutput(BaseModel):
    """Structured answer the model returns for one step or chat turn."""

    content: str = Field(..., description="Answer text for the current instruction")


def validation_feedback(error: ValidationError) -> str:
    """Corrective note listing each schema violation as ``- <field>: <message>``."""

    issues: List[str] = []
    for err in error.errors(include_url=False):
        field = ".".join(str(part) for part in err.get("loc", ())) or "root"
        issues.append(f"- {field}: {err.get('msg', 'invalid value')}")

    lines = [
        "The previous answer did not match the required JSON schema.",
        "Return only the corrected JSON object, without prose or code fences.",
    ]
    return "\n".join(lines + (issues or ["- root: unexpected response shape"]))


async def call_llm_with_retries(
    *,
    system_prompt: str,
    user_prompt: str,
    llm_provider: str,
    llm_model: str,
    response_model: type[ModelT],
    max_attempts: int = 3,
) -> ModelT:
    """Ask the model for a ``response_model`` instance.

    Raises:
        ValidationError: No attempt produced a valid response
        asyncio.TimeoutError: A call exceeded ``LLM_TIMEOUT_SECONDS``
        LocalLLMError: The local model server failed
    """

    system_prompt = system_prompt.strip()
    base_prompt = user_prompt.strip()
    prompt = base_prompt
    use_local = llm_provider.lower() == "ollama"

    if not use_local:

        @llm.call(provider=llm_provider, model=llm_model, response_model=response_model)
        async def remote(text: str) -> str:
            return text

    async def invoke(text: str) -> ModelT:
        if use_local:
            raw = await call_ollama_chat(
                system_prompt=system_prompt, user_prompt=text, llm_model=llm_model
            )
            return response_model.model_validate_json(raw)
        return await remote("\n\n".join(part for part in (system_prompt, text) if part))

    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(ValidationError),
        stop=stop_after_attempt(max_attempts),
        reraise=True,
    ):
        with attempt:
            number = attempt.retry_state.attempt_number
            if number > 1:
                log_tool(f"[LLM] Attempt {number}/{max_attempts} for {response_model.__name__}")
            try:
                return await asyncio.wait_for(invoke(prompt), timeout=LLM_TIMEOUT_SECONDS)
            except ValidationError as exc:
                log_error(f"[LLM] {response_model.__name__} failed validation: {exc.error_count()} issue(s)")
                prompt = f"{base_prompt}\n\n{validation_feedback(exc)}"
                raise
            except LocalLLMError as exc:
                raise LocalLLMError(f"Local LLM provider error ({llm_provider}): {exc}") from exc

    raise RuntimeError("LLM retry loop ended without a result")


def build_user_prompt(instruction: str, window: ContextWindow) -> str:
    """Combine the context window sections with the current instruction."""

    sections = [
        window.relevant_memory,
        window.tool_results,
        f"Conversation so far:\n{window.recent_history}" if window.recent_history else "",
        instruction,
        RESPONSE_FORMAT_HINT,
    ]
    return "\n\n".join(section for section in sections if section)


class LLMResponder:
    """Responder backed by ``call_llm_with_retries``.

    Called as ``await responder(instruction, window)`` by the executor for
    tool-less steps and by the orchestrator for plain chat turns.
    """

    def __init__(
        self,
        *,
        llm_provider: str | None = None,
        llm_model: str | None = None,
        max_attempts: int = 3,
    ) -> None:
        self.llm_provider = llm_provider or Config.LLM_PROVIDER
        self.llm_model = llm_model or Config.LLM_MODEL
        self.max_attempts = max_attempts

    async def __call__(self, instruction: str, window: ContextWindow) -> str:
        log_tool(f"[LLM] {self.llm_provider}/{self.llm_model}: {instruction[:60]}")
        output = await call_llm_with_retries(
            system_prompt=window.system_context,
            user_prompt=build_user_prompt(instruction, window),
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            response_model=StepOutput,
            max_attempts=self.max_attempts,
        )
        return output.content


__all__ = [
    "StepOutput",
    "validation_feedback",
    "call_llm_with_retries",
    "build_user_prompt",
    "LLMResponder",
]
