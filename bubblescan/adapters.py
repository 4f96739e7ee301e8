"""
Inference tiers: vision-capable backends that read the canonical raster and return
an answer map. Tiers are tried in order; the chain itself is the retry policy.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import asyncio
import base64
import json
import re

from google import genai
from google.genai import types as genai_types
import httpx
import numpy as np

from .config import Settings, logger
from .errors import BackendUnavailable, ValidationError
from .layout import option_labels
from .models import AnswerMap, SourceResult
from .preprocess import encode_jpeg_base64

NO_MARK_CODES = frozenset({"MULTIPLE", "EMPTY", "NO MARK", "NO_MARK", "NONE", "BLANK", "-", ""})

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def build_prompt(total_questions: int, options_per_question: int) -> str:
    letters = ", ".join(option_labels(options_per_question))
    return f"""You are an expert OMR (Optical Mark Recognition) sheet analyzer. Detect filled bubbles with maximum precision.

**Sheet details:**
- Questions: 1 to {total_questions}
- Options per question: {options_per_question} ({letters})
- A filled bubble is a darkened circle; faint pencil marks that are clearly darker than the paper count as filled.
- Ignore erased marks that are lighter than a valid mark when another bubble is clearly filled.

**Rules:**
1. Exactly one bubble filled: record its letter.
2. More than one bubble filled: record "MULTIPLE".
3. No bubble filled: record "EMPTY".

**Output:** return ONLY a JSON object, no markdown, no explanation:
{{"1": "A", "2": "MULTIPLE", "3": "EMPTY", ..., "{total_questions}": "D"}}
"""


def _extract_json_object(text: str) -> Any:
    cleaned = _FENCE_RE.sub("", text or "").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start < 0 or end <= start:
        raise ValueError("response contains no JSON object")
    return json.loads(cleaned[start : end + 1])


def parse_answer_payload(text: str, total_questions: int, options_per_question: int) -> AnswerMap:
    """
    Turn a backend's JSON answer object into an AnswerMap.

    Raises ValueError when the response is not a JSON object. Entries coded as
    MULTIPLE / EMPTY, unknown letters and out-of-range questions are dropped.
    """
    payload = _extract_json_object(text)
    if isinstance(payload, dict) and isinstance(payload.get("answers"), dict):
        payload = payload["answers"]
    if not isinstance(payload, dict):
        raise ValueError("response JSON is not an object")

    labels = set(option_labels(options_per_question))
    answers: AnswerMap = {}
    for key, value in payload.items():
        try:
            question = int(str(key).strip())
        except ValueError:
            continue
        if not 1 <= question <= total_questions:
            continue
        if not isinstance(value, str):
            continue
        answer = value.strip().upper()
        if answer in NO_MARK_CODES or answer not in labels:
            continue
        answers[question] = answer
    return dict(sorted(answers.items()))


class InferenceAdapter:
    """
    One tier. Subclasses implement _complete(prompt, image_b64) -> response text.

    The semaphore lives on the instance, so one adapter shared by every request
    bounds the concurrent calls made to its backend.
    """

    def __init__(self, name: str, timeout: float = 60.0, max_concurrency: int = 4):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.name = name
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def _complete(self, prompt: str, image_b64: str) -> str:
        raise NotImplementedError

    async def analyze(
        self, image: np.ndarray, total_questions: int, options_per_question: int
    ) -> SourceResult:
        prompt = build_prompt(total_questions, options_per_question)
        image_b64 = await asyncio.to_thread(encode_jpeg_base64, image)

        async with self._semaphore:
            try:
                text = await asyncio.wait_for(self._complete(prompt, image_b64), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                raise BackendUnavailable(self.name, f"timed out after {self.timeout:g}s") from exc
            except BackendUnavailable:
                raise
            except Exception as exc:
                raise BackendUnavailable(self.name, str(exc) or type(exc).__name__) from exc

        if not text or not text.strip():
            raise BackendUnavailable(self.name, "empty response")
        try:
            answers = parse_answer_payload(text, total_questions, options_per_question)
        except ValueError as exc:
            raise BackendUnavailable(self.name, f"unparsable response: {exc}") from exc

        confidence = len(answers) / float(total_questions)
        logger.info("%s success: %d/%d answers detected", self.name, len(answers), total_questions)
        return SourceResult(answers=answers, confidence=confidence, method=self.name)


class GeminiAdapter(InferenceAdapter):
    def __init__(
        self,
        api_key: str,
        model_name: str = "gemini-2.5-flash",
        name: str = "gemini-ai",
        timeout: float = 60.0,
        max_concurrency: int = 4,
        client: Optional[genai.Client] = None,
    ):
        super().__init__(name, timeout=timeout, max_concurrency=max_concurrency)
        if not api_key:
            raise ValueError("GEMINI_API_KEY not configured")
        self._client = client or genai.Client(api_key=api_key)
        self._model_name = model_name
        self._config = genai_types.GenerateContentConfig(temperature=0.1)

    async def _complete(self, prompt: str, image_b64: str) -> str:
        image = genai_types.Part.from_bytes(data=base64.b64decode(image_b64), mime_type="image/jpeg")
        # wait_for cancels this call, so no backend request outlives its semaphore slot.
        response = await self._client.aio.models.generate_content(
            model=self._model_name,
            contents=[prompt, image],
            config=self._config,
        )
        return response.text


class OpenAICompatibleAdapter(InferenceAdapter):
    """Chat-completions backends (Groq, OpenRouter, ...) over httpx."""

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = 60.0,
        max_concurrency: int = 4,
        extra_headers: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(name, timeout=timeout, max_concurrency=max_concurrency)
        if not api_key:
            raise ValueError(f"{name}: API key not configured")
        self._base_url = base_url
        self._api_key = api_key
        self._model = model
        self._extra_headers = dict(extra_headers or {})
        self._transport = transport

    def _payload(self, prompt: str, image_b64: str) -> Dict[str, Any]:
        return {
            "model": self._model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{image_b64}"}},
                    ],
                }
            ],
            "temperature": 0.1,
            "max_tokens": 2048,
        }

    async def _complete(self, prompt: str, image_b64: str) -> str:
        headers = {"Authorization": f"Bearer {self._api_key}", **self._extra_headers}
        async with httpx.AsyncClient(
            base_url=self._base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            response = await client.post("/chat/completions", json=self._payload(prompt, image_b64), headers=headers)

        if response.status_code >= 400:
            raise BackendUnavailable(self.name, f"HTTP {response.status_code}: {response.text[:200]}")
        data = response.json()
        choices = data.get("choices") or []
        content = (choices[0].get("message") or {}).get("content") if choices else None
        if not content:
            raise BackendUnavailable(self.name, "empty response")
        return content


def groq_adapter(api_key: str, model: str, **kwargs: Any) -> OpenAICompatibleAdapter:
    return OpenAICompatibleAdapter(
        "groq-ai", "https://api.groq.com/openai/v1", api_key, model, **kwargs
    )


def openrouter_adapter(
    api_key: str, model: str, site_url: str = "http://localhost:3000", **kwargs: Any
) -> OpenAICompatibleAdapter:
    return OpenAICompatibleAdapter(
        "openrouter-ai",
        "https://openrouter.ai/api/v1",
        api_key,
        model,
        extra_headers={"HTTP-Referer": site_url, "X-Title": "bubblescan"},
        **kwargs,
    )


@dataclass(frozen=True)
class ChainOutcome:
    result: Optional[SourceResult]
    failures: Tuple[Tuple[str, str], ...] = ()


class InferenceChain:
    def __init__(self, adapters: Sequence[InferenceAdapter] = ()):
        names = [adapter.name for adapter in adapters]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate tier names: {names}")
        self._adapters = list(adapters)

    @property
    def names(self) -> List[str]:
        return [adapter.name for adapter in self._adapters]

    def __len__(self) -> int:
        return len(self._adapters)

    def get(self, name: str) -> InferenceAdapter:
        for adapter in self._adapters:
            if adapter.name == name:
                return adapter
        raise ValidationError(f"Unknown inference tier '{name}'. Configured: {', '.join(self.names) or 'none'}")

    async def run(self, image: np.ndarray, total_questions: int, options_per_question: int) -> ChainOutcome:
        """First tier to answer wins; every failure is logged and the next tier tried."""
        failures: List[Tuple[str, str]] = []
        for adapter in self._adapters:
            try:
                result = await adapter.analyze(image, total_questions, options_per_question)
            except BackendUnavailable as exc:
                logger.warning("Tier %s failed, trying next: %s", adapter.name, exc.message)
                failures.append((adapter.name, exc.message))
                continue
            except Exception as exc:
                logger.exception("Tier %s raised unexpectedly", adapter.name)
                failures.append((adapter.name, str(exc) or type(exc).__name__))
                continue
            return ChainOutcome(result=result, failures=tuple(failures))

        if self._adapters:
            logger.error("All %d inference tiers failed", len(self._adapters))
        return ChainOutcome(result=None, failures=tuple(failures))

    async def run_single(
        self, name: str, image: np.ndarray, total_questions: int, options_per_question: int
    ) -> SourceResult:
        return await self.get(name).analyze(image, total_questions, options_per_question)


def build_chain(settings: Settings) -> InferenceChain:
    adapters: List[InferenceAdapter] = []
    common = {"timeout": settings.inference_timeout, "max_concurrency": settings.backend_concurrency}
    for backend in settings.inference_order:
        if backend == "groq":
            if settings.groq_api_key:
                adapters.append(groq_adapter(settings.groq_api_key, settings.groq_model, **common))
                continue
        elif backend == "gemini":
            if settings.gemini_api_key:
                adapters.append(GeminiAdapter(settings.gemini_api_key, settings.gemini_model, **common))
                continue
        elif backend == "openrouter":
            if settings.openrouter_api_key:
                adapters.append(
                    openrouter_adapter(
                        settings.openrouter_api_key, settings.openrouter_model, settings.site_url, **common
                    )
                )
                continue
        else:
            logger.warning("Unknown inference backend '%s' in OMR_INFERENCE_ORDER, skipping", backend)
            continue
        logger.warning("No API key for %s, tier disabled", backend)

    logger.info("Inference chain: %s", [adapter.name for adapter in adapters] or "empty")
    return InferenceChain(adapters)
