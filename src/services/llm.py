"""
Judge transport: OpenRouter chat completions (OpenAI-compatible API).

One request per call. Retries and fail-open handling belong to the judge,
so the SDK's own retry loop is switched off.
"""

import json
import re
import time
from typing import Type, TypeVar

from openai import OpenAI
from pydantic import BaseModel, ValidationError

from src.config.settings import settings
from src.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


def extract_json(raw: str) -> dict:
    """Parse a JSON object, tolerating a markdown code fence around it."""
    cleaned = _FENCE.sub("", raw.strip())
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ValueError(f"LLM returned invalid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"LLM returned {type(parsed).__name__}, expected an object")
    return parsed


class LLMClient:
    def __init__(self, timeout: float | None = None, model: str | None = None):
        self.model = model or settings.llm_model
        self.timeout = timeout or settings.judge_timeout_seconds
        self.client = OpenAI(
            base_url=settings.openrouter_base_url,
            api_key=settings.openrouter_api_key,
            timeout=self.timeout,
            max_retries=0,
        )

    def call_structured(
        self,
        prompt: str,
        response_model: Type[T],
        system: str | None = None,
    ) -> T:
        """
        Ask for a JSON object and validate it into `response_model`.

        :raises openai.APIError: transport failure or timeout
        :raises ValueError: reply is not a JSON object
        :raises pydantic.ValidationError: object does not fit the model
        """
        messages = [{"role": "user", "content": prompt}]
        if system:
            messages.insert(0, {"role": "system", "content": system})

        started = time.monotonic()
        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=settings.llm_temperature,
            response_format={"type": "json_object"},
        )
        usage = response.usage
        logger.debug(
            "llm_call",
            model=self.model,
            latency_ms=int((time.monotonic() - started) * 1000),
            prompt_tokens=usage.prompt_tokens if usage else None,
            completion_tokens=usage.completion_tokens if usage else None,
        )

        raw = response.choices[0].message.content or ""
        try:
            parsed = extract_json(raw)
        except ValueError as e:
            logger.error("json_parse_failed", raw=raw[:300], error=str(e))
            raise

        try:
            return response_model.model_validate(parsed)
        except ValidationError:
            logger.error(
                "response_validation_failed",
                model=response_model.__name__,
                parsed=parsed,
            )
            raise
