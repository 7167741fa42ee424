"""Job category suggestions from a text-completion model.

The model is asked to pick one of the known category names or propose a new
one, replying with ``{"name": ..., "isNew": ...}``. Anything else it says
(markdown fences, prose around the object) is stripped before parsing.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Protocol

import httpx
from common.utils import normalize_whitespace
from openai import AsyncOpenAI
from pydantic import ValidationError

from marketplace.models import UNCATEGORIZED, CategorySuggestion

LOGGER = logging.getLogger("jkit.marketplace.classifier")

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_GEMINI_MODEL = "gemini-2.0-flash-lite"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"

_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)

CATEGORY_PROMPT = """
You are an intelligent categorization assistant for a job platform called J-KIT.
Your task is to analyze a new job posting and place it into the most appropriate category.
You can either use one of the existing categories or, if none are suitable, create a new,
sensible category name.

Here is the list of existing categories:
{categories}

Here is the new job posting:
- Title: "{title}"
- Description: "{description}"

Instructions:
1. Read the title and description carefully to understand the job's core function.
2. Compare this understanding against the list of existing categories.
3. If a suitable category exists, choose it. The match doesn't have to be exact, but it
   should be logical (e.g., "House painter" fits into "Skilled trades, Building and Maintenance").
4. If NO existing category is a good fit, create a concise and professional new category
   name (e.g., "Event Management", "Animal Care", "Data Science"). Do not create a new
   category if a reasonable one already exists.
5. Your response MUST be a single, valid JSON object with two keys:
   - "name": The chosen or newly created category name (string).
   - "isNew": true if you created a new category, false otherwise.

Example (existing): {{"name": "Domestic work", "isNew": false}}
Example (new): {{"name": "Data Science", "isNew": true}}

Now, analyze the provided job posting and return the JSON object.
"""


class ClassificationError(Exception):
    pass


class CompletionClient(Protocol):
    async def complete(self, prompt: str) -> str: ...


class GeminiCompletionClient:
    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_GEMINI_MODEL,
        base_url: str = GEMINI_BASE_URL,
        timeout: float | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("GEMINI_API_KEY is required for the gemini provider")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def complete(self, prompt: str) -> str:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/models/{self.model}:generateContent",
                params={"key": self.api_key},
                json={"contents": [{"parts": [{"text": prompt}]}]},
            )
        response.raise_for_status()
        payload = response.json()
        candidates = payload.get("candidates") or []
        if not candidates:
            raise ClassificationError("Completion response contained no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(str(part.get("text", "")) for part in parts)


class OpenAICompletionClient:
    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_OPENAI_MODEL,
        timeout: float | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("OPENAI_API_KEY is required for the openai provider")
        self.model = model
        self.client = AsyncOpenAI(api_key=api_key, timeout=timeout)

    async def complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": "Reply with a single JSON object and nothing else."},
                {"role": "user", "content": prompt},
            ],
            temperature=0.2,
        )
        return (response.choices[0].message.content or "").strip()


def build_completion_client(
    provider: str | None = None,
    *,
    env: dict[str, str] | None = None,
) -> CompletionClient | None:
    values: Any = env if env is not None else os.environ
    resolved = (provider or values.get("CLASSIFIER_PROVIDER", "gemini")).strip().lower()
    raw_timeout = str(values.get("CLASSIFIER_TIMEOUT_SECONDS", "")).strip()
    timeout = float(raw_timeout) if raw_timeout else None
    try:
        if resolved == "gemini":
            return GeminiCompletionClient(
                values.get("GEMINI_API_KEY", ""),
                model=values.get("GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
                timeout=timeout,
            )
        if resolved == "openai":
            return OpenAICompletionClient(
                values.get("OPENAI_API_KEY", ""),
                model=values.get("OPENAI_MODEL", DEFAULT_OPENAI_MODEL),
                timeout=timeout,
            )
    except ValueError as exc:
        LOGGER.warning("category classifier disabled: %s", exc)
        return None
    if resolved not in ("none", ""):
        LOGGER.warning("unknown classifier provider %r, categorization disabled", resolved)
    return None


def build_category_prompt(title: str, description: str, known_names: list[str]) -> str:
    categories = ", ".join(known_names) if known_names else "None (this will be the first category)"
    return CATEGORY_PROMPT.format(
        categories=categories,
        title=normalize_whitespace(title),
        description=normalize_whitespace(description) or "No description provided",
    )


def parse_category_suggestion(text: str) -> CategorySuggestion:
    cleaned = _FENCE_PATTERN.sub("", text or "").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end < start:
        raise ClassificationError(f"No JSON object in completion: {text!r}")
    try:
        data = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ClassificationError(f"Malformed JSON in completion: {text!r}") from exc
    if not isinstance(data, dict):
        raise ClassificationError(f"Expected a JSON object, got {type(data).__name__}")
    if isinstance(data.get("name"), str):
        data["name"] = normalize_whitespace(data["name"])
    try:
        return CategorySuggestion.model_validate(data)
    except ValidationError as exc:
        raise ClassificationError(f"Unexpected completion shape: {data!r}") from exc


class CategoryClassifier:
    def __init__(self, client: CompletionClient | None) -> None:
        self.client = client

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def suggest(self, title: str, description: str, known_names: list[str]) -> CategorySuggestion:
        if self.client is None:
            raise ClassificationError("No completion client is configured")
        if not title.strip():
            raise ClassificationError("A job title is required for categorization")

        prompt = build_category_prompt(title, description, known_names)
        try:
            text = await self.client.complete(prompt)
        except ClassificationError:
            raise
        except Exception as exc:
            raise ClassificationError(f"Completion request failed: {exc}") from exc

        suggestion = parse_category_suggestion(text)
        if suggestion.name.casefold() == UNCATEGORIZED.casefold():
            raise ClassificationError("Classifier declined to pick a category")
        return suggestion
