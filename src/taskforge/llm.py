from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3


class SupportsAsyncInvoke(Protocol):
    """Any LangChain runnable; only ``ainvoke`` is used by the engine."""

    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


class StructuredOutputError(RuntimeError):
    """Model output could not be coerced into the requested schema."""


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Schema-bound runnable returning validated pydantic instances."""

    schema: type[ModelT]
    runnable: SupportsAsyncInvoke

    async def ainvoke(self, prompt: str) -> ModelT:
        """Send ``prompt`` and validate the reply.

        Raises:
            StructuredOutputError: If the reply is unparseable or fails validation.
        """
        raw_output = await self.runnable.ainvoke(prompt)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return ``OPENAI_API_KEY``, loading ``<repo_root>/.env`` first when present.

    Raises:
        RuntimeError: If the key is still unavailable.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for LLM-backed capabilities")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ``ChatOpenAI`` client after checking the API key.

    Args:
        model_name: OpenAI model identifier (e.g. 'gpt-4o-mini').
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Retry attempts on transient failures.
        repo_root: Directory searched for a ``.env`` file; defaults to cwd.

    Returns:
        Configured ``ChatOpenAI`` instance.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If ``OPENAI_API_KEY`` is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
    )


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Coerce a structured-output reply into ``schema``.

    Accepts an ``include_raw=True`` envelope (``{"parsed", "parsing_error", "raw"}``),
    a pydantic instance of any model, or a plain dict.

    Args:
        raw_output: Whatever the structured runnable returned.
        schema: Target pydantic model class.

    Returns:
        A validated instance of ``schema``.

    Raises:
        StructuredOutputError: If the reply cannot be parsed or validated.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise StructuredOutputError(
                f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}"
            )
        payload = payload.get("parsed")
        if payload is None:
            raise StructuredOutputError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise StructuredOutputError(
            f"Structured output for {schema.__name__} returned unsupported payload type {type(payload).__name__}"
        )
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise StructuredOutputError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    method: StructuredOutputMethod = "function_calling",
    strict: bool = True,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Bind ``schema`` to a ``ChatOpenAI`` model via ``with_structured_output``.

    Raises:
        ValueError: If ``strict`` is combined with ``method='json_mode'``.
        RuntimeError: If ``OPENAI_API_KEY`` is not available.
    """
    if method == "json_mode" and strict:
        raise ValueError("strict=True is not valid for method='json_mode'")
    model = get_chat_model(
        model_name=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        repo_root=repo_root,
    )
    runnable = model.with_structured_output(
        schema,
        method=method,
        strict=strict if method != "json_mode" else None,
    )
    logger.debug("Bound schema %s to model %s", schema.__name__, model_name)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)
