"""Provider-agnostic async LLM client: the oracle behind every analysis stage."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import re
import time
from dataclasses import dataclass

from papercheck.json_parser import parse_json_response

log = logging.getLogger(__name__)


class LLMServiceError(RuntimeError):
    """Raised when an LLM call fails after retries."""


class OracleTimeoutError(LLMServiceError):
    """The provider did not answer in time."""


class OracleAuthError(LLMServiceError):
    """Credentials are missing or rejected."""


class EmptyResponseError(LLMServiceError):
    """The provider answered with no content."""


@dataclass(frozen=True)
class LLMResponse:
    text: str
    input_tokens: int
    output_tokens: int


class LLMClient:
    """Abstract base class for LLM providers."""

    provider: str = "base"
    _last_call_ts: float = 0.0

    async def _throttle(self) -> None:
        from papercheck.config import LLM_MIN_CALL_INTERVAL_S

        if LLM_MIN_CALL_INTERVAL_S <= 0:
            return
        elapsed = time.time() - self._last_call_ts
        if elapsed < LLM_MIN_CALL_INTERVAL_S:
            await asyncio.sleep(LLM_MIN_CALL_INTERVAL_S - elapsed)

    async def _sleep_backoff(self, attempt: int) -> None:
        from papercheck.config import LLM_BACKOFF_BASE_S, LLM_BACKOFF_MAX_S

        base = max(0.1, LLM_BACKOFF_BASE_S)
        max_wait = max(base, LLM_BACKOFF_MAX_S)
        wait = min(max_wait, base * (2**attempt))
        jitter = random.uniform(0.0, base)  # nosec B311
        await asyncio.sleep(wait + jitter)

    def _is_retryable_error(self, exc: Exception) -> tuple[bool, str]:
        name = exc.__class__.__name__
        status_code = getattr(exc, "status_code", None)
        body = str(exc).lower()
        retryable_status = {408, 409, 429, 500, 502, 503, 504}
        retryable_name_markers = (
            "RateLimitError",
            "APITimeoutError",
            "APIConnectionError",
            "InternalServerError",
        )

        if status_code in retryable_status:
            return True, f"status={status_code}"
        if any(marker in name for marker in retryable_name_markers):
            return True, name
        if "rate limit" in body or "too many requests" in body or "timeout" in body:
            return True, name
        return False, name

    def _classify_failure(self, exc: Exception, message: str) -> LLMServiceError:
        name = exc.__class__.__name__
        status_code = getattr(exc, "status_code", None)
        if status_code in {401, 403} or "Authentication" in name or "PermissionDenied" in name:
            return OracleAuthError(message)
        if "Timeout" in name or isinstance(exc, asyncio.TimeoutError):
            return OracleTimeoutError(message)
        return LLMServiceError(message)

    async def _chat_completion_with_retry(self, client, kwargs: dict):
        from papercheck.config import LLM_MAX_RETRIES

        attempts = max(1, LLM_MAX_RETRIES + 1)
        for attempt in range(attempts):
            try:
                await self._throttle()
                resp = await client.chat.completions.create(**kwargs)
                self._last_call_ts = time.time()
                return resp
            except Exception as exc:
                retryable, reason = self._is_retryable_error(exc)
                is_last = attempt == attempts - 1
                if not retryable or is_last:
                    msg = (
                        f"{self.__class__.__name__} failed after "
                        f"{attempt + 1}/{attempts} attempts: {exc}"
                    )
                    raise self._classify_failure(exc, msg) from exc
                log.warning(
                    "%s transient error (attempt %d/%d, reason=%s). Retrying...",
                    self.__class__.__name__,
                    attempt + 1,
                    attempts,
                    reason,
                )
                await self._sleep_backoff(attempt)

        raise LLMServiceError(f"{self.__class__.__name__} failed unexpectedly.")

    async def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        raise NotImplementedError

    async def complete(
        self,
        prompt: str,
        *,
        system: str = "",
        max_tokens: int | None = None,
    ) -> str:
        """Returns the reply text; fails with an LLMServiceError subclass."""
        response = await self.generate(prompt=prompt, system=system, max_tokens=max_tokens)
        text = (response.text or "").strip()
        if not text:
            raise EmptyResponseError(f"{self.__class__.__name__} returned an empty reply.")
        return text

    async def generate_json(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict:
        response = await self.generate(
            prompt=prompt,
            system=system,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        text = (response.text or "").strip()
        if not text:
            raise EmptyResponseError(f"{self.__class__.__name__} returned an empty reply.")
        return parse_json_response(text)


def _messages(prompt: str, system: str) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    return messages


def _to_response(resp) -> LLMResponse:
    usage = resp.usage
    choices = resp.choices or []
    text = (choices[0].message.content or "") if choices else ""
    return LLMResponse(
        text=text,
        input_tokens=getattr(usage, "prompt_tokens", 0) if usage else 0,
        output_tokens=getattr(usage, "completion_tokens", 0) if usage else 0,
    )


class OpenAIClient(LLMClient):
    provider = "openai"

    def __init__(self) -> None:
        from openai import AsyncOpenAI

        from papercheck.config import LLM_REQUEST_TIMEOUT_S, OPENAI_API_KEY, OPENAI_BASE_URL

        if not OPENAI_API_KEY:
            raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=openai.")
        self._client = AsyncOpenAI(
            api_key=OPENAI_API_KEY,
            base_url=OPENAI_BASE_URL,
            timeout=LLM_REQUEST_TIMEOUT_S,
            max_retries=0,
        )

    async def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        from papercheck.config import GENERATION_TEMPERATURE, OPENAI_MODEL

        kwargs: dict = {
            "model": model or OPENAI_MODEL,
            "messages": _messages(prompt, system),
            "temperature": temperature if temperature is not None else GENERATION_TEMPERATURE,
            "response_format": {"type": "json_object"},
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        resp = await self._chat_completion_with_retry(self._client, kwargs)
        return _to_response(resp)


class AzureOpenAIClient(LLMClient):
    provider = "azure_openai"

    def __init__(self) -> None:
        from openai import AsyncAzureOpenAI

        from papercheck.config import (
            AZURE_API_KEY,
            AZURE_API_VERSION,
            AZURE_ENDPOINT,
            LLM_REQUEST_TIMEOUT_S,
        )

        if not AZURE_API_KEY:
            raise ValueError("AZURE_API_KEY is required when LLM_PROVIDER=azure_openai.")
        if not AZURE_ENDPOINT:
            raise ValueError("AZURE_ENDPOINT is required when LLM_PROVIDER=azure_openai.")

        self._client = AsyncAzureOpenAI(
            api_version=AZURE_API_VERSION,
            azure_endpoint=AZURE_ENDPOINT,
            api_key=AZURE_API_KEY,
            timeout=LLM_REQUEST_TIMEOUT_S,
            max_retries=0,
        )

    async def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        from papercheck.config import AZURE_MODEL, GENERATION_TEMPERATURE

        deploy = model or AZURE_MODEL
        kwargs: dict = {
            "model": deploy,
            "messages": _messages(prompt, system),
            "response_format": {"type": "json_object"},
        }
        if deploy.startswith("o"):
            if max_tokens is not None:
                kwargs["max_completion_tokens"] = max_tokens
        else:
            kwargs["temperature"] = (
                temperature if temperature is not None else GENERATION_TEMPERATURE
            )
            if max_tokens is not None:
                kwargs["max_tokens"] = max_tokens

        resp = await self._chat_completion_with_retry(self._client, kwargs)
        return _to_response(resp)


class UnconfiguredClient(LLMClient):
    """Stands in when no credentials are configured; every call fails fast."""

    provider = "unconfigured"

    def __init__(self, reason: str) -> None:
        self._reason = reason

    async def generate(self, prompt: str, **kwargs) -> LLMResponse:
        del prompt, kwargs
        raise OracleAuthError(self._reason)


_UNIT_PATTERN = re.compile(
    r"<<<UNIT (?P<index>\d+)>>>\n(?P<text>.*?)\n<<<END UNIT \d+>>>",
    re.DOTALL,
)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def _between(prompt: str, start: str, end: str) -> str:
    head, sep, rest = prompt.partition(start)
    if not sep:
        return ""
    return rest.partition(end)[0].strip()


class MockOfflineClient(LLMClient):
    """Deterministic heuristic oracle for offline runs and demonstrations."""

    provider = "mock"

    def _structure_payload(self, prompt: str) -> dict:
        from papercheck.structure import fallback_structure

        text = _between(prompt, "--- START PAPER TEXT ---", "--- END PAPER TEXT ---")
        structure = fallback_structure(text)
        return {
            "title": structure.title,
            "abstract": structure.abstract,
            "sections": [
                {"name": section.name, "paragraphs": list(section.paragraphs)}
                for section in structure.sections
            ],
        }

    def _evaluate_unit(self, index: int, text: str) -> dict:
        sentences = [s for s in _SENTENCE_SPLIT.split(" ".join(text.split())) if s.strip()]
        lengths = [len(s.split()) for s in sentences] or [0]
        words = sum(lengths)
        avg = words / max(1, len(sentences))
        flags = {
            "cccStructure": len(sentences) >= 3 or words < 20,
            "sentenceQuality": max(lengths) <= 40 and avg <= 25,
            "topicContinuity": True,
            "terminologyConsistency": True,
            "structuralParallelism": True,
        }
        issues = []
        if not flags["cccStructure"]:
            issues.append(
                {
                    "issue": "Paragraph lacks a distinct context, content, and conclusion sequence.",
                    "rule": "cccStructure",
                    "severity": "major",
                    "recommendation": "Open with context, develop the point, and close with a conclusion.",
                }
            )
        if not flags["sentenceQuality"]:
            issues.append(
                {
                    "issue": f"Sentences are long (longest {max(lengths)} words, average {avg:.0f}).",
                    "rule": "sentenceQuality",
                    "severity": "minor",
                    "recommendation": "Split sentences so each carries one idea and stays under 25 words.",
                }
            )
        summary = sentences[0] if sentences else ""
        return {
            "index": index,
            "text": text,
            "summary": summary[:160],
            "evaluations": flags,
            "issues": issues,
        }

    def _paragraph_payload(self, prompt: str) -> dict:
        units = [
            self._evaluate_unit(int(match.group("index")), match.group("text").strip())
            for match in _UNIT_PATTERN.finditer(prompt)
        ]
        return {"paragraphs": units}

    def _document_payload(self, prompt: str) -> dict:
        from papercheck.prompts import NO_ABSTRACT

        title = _between(prompt, "TITLE:", "\n").strip()
        abstract = _between(prompt, "ABSTRACT:\n", "\nSECTION DIGEST:").strip()
        if abstract == NO_ABSTRACT:
            abstract = ""
        digest = _between(prompt, "SECTION DIGEST:\n", "\nDOCUMENT RULES:").lower()
        section_names = re.findall(r"^section: (.+?) \(\d+ paragraphs?\)$", digest, re.MULTILINE)

        def has(*names: str) -> bool:
            return any(any(n in section for n in names) for section in section_names)

        title_words = len(title.split())
        abstract_sentences = len([s for s in _SENTENCE_SPLIT.split(abstract) if s.strip()])

        def criterion(ok: bool, good: str, bad: str, fix: str) -> dict:
            return {
                "score": 8 if ok else 4,
                "assessment": good if ok else bad,
                "recommendation": "None." if ok else fix,
            }

        assessment = {
            "titleQuality": criterion(
                0 < title_words <= 20,
                "Title is concise.",
                "Title length makes the central message hard to identify.",
                "State the central finding in a title of under 20 words.",
            ),
            "abstractCompleteness": criterion(
                abstract_sentences > 0,
                "Abstract is present.",
                "No abstract was found.",
                "Add an abstract covering context, approach, results, and significance.",
            ),
            "introductionStructure": criterion(
                has("introduction", "background"),
                "An introduction section is present.",
                "No introduction section was detected.",
                "Add an introduction that moves from context to the gap and the aim.",
            ),
            "resultsOrganization": criterion(
                has("result"),
                "A results section is present.",
                "No results section was detected.",
                "Present results in a dedicated section ordered by the argument.",
            ),
            "discussionQuality": criterion(
                has("discussion", "conclusion"),
                "A discussion or conclusion section is present.",
                "No discussion section was detected.",
                "Close with a discussion of findings, limitations, and implications.",
            ),
            "messageFocus": criterion(True, "Offline heuristic: not assessed in depth.", "", ""),
            "topicOrganization": criterion(True, "Offline heuristic: not assessed in depth.", "", ""),
        }
        major_issues = []
        if abstract_sentences == 0:
            major_issues.append(
                {
                    "issue": "The manuscript has no abstract.",
                    "location": "Abstract",
                    "severity": "major",
                    "recommendation": "Add an abstract that summarizes the whole paper.",
                }
            )
        recommendations = [
            value["recommendation"]
            for value in assessment.values()
            if value["recommendation"] not in {"None.", ""}
        ]
        return {
            "documentAssessment": assessment,
            "majorIssues": major_issues,
            "overallRecommendations": recommendations
            or ["Review each paragraph for a clear context, content, and conclusion."],
        }

    def _build_payload(self, prompt: str) -> dict:
        if "TASK: STRUCTURE_EXTRACTION" in prompt:
            return self._structure_payload(prompt)
        if "TASK: PARAGRAPH_EVALUATION" in prompt:
            return self._paragraph_payload(prompt)
        if "TASK: DOCUMENT_ASSESSMENT" in prompt:
            return self._document_payload(prompt)
        return {}

    async def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        del system, model, temperature, max_tokens
        payload = self._build_payload(prompt)
        return LLMResponse(text=json.dumps(payload), input_tokens=0, output_tokens=0)


def get_llm_client() -> LLMClient:
    from papercheck.config import LLM_PROVIDER, OFFLINE_MODE

    provider = os.getenv("LLM_PROVIDER", LLM_PROVIDER).strip().lower()
    offline = os.getenv("OFFLINE_MODE", "1" if OFFLINE_MODE else "0").strip().lower() in {
        "1",
        "true",
        "yes",
    }
    if offline:
        return MockOfflineClient()

    if provider == "openai":
        from papercheck.config import OPENAI_API_KEY

        if not OPENAI_API_KEY:
            raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=openai.")
        return OpenAIClient()
    if provider == "azure_openai":
        return AzureOpenAIClient()
    if provider == "mock":
        return MockOfflineClient()
    raise ValueError(f"Unknown LLM_PROVIDER={provider!r}")
