from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterator, List, Mapping, Optional, Protocol

import requests
from langchain_openai import ChatOpenAI
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..domain.errors import GenerationFailure
from .model_router import ModelRouter, ProviderSelection
from .streaming import iter_as_async


logger = logging.getLogger(__name__)
LOG = logging.getLogger("tutorcore.llm")

Message = Dict[str, str]

_BREAKER_STATE = {"fails": 0, "opened_at": 0.0}
_BREAKER_THRESHOLD = int(os.getenv("TUTOR_LLM_BREAKER_THRESHOLD", "3"))
_BREAKER_COOLDOWN = float(os.getenv("TUTOR_LLM_BREAKER_COOLDOWN", "60.0"))
_STREAM_TIMEOUT = (int(os.getenv("TUTOR_LLM_CONNECT_TIMEOUT", "3")), int(os.getenv("TUTOR_LLM_READ_TIMEOUT", "60")))


@dataclass(frozen=True)
class GenerationOptions:
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    # Strict-JSON output mode.
    structured: bool = False


class GenerationProvider(Protocol):
    async def complete(self, messages: List[Message], options: GenerationOptions) -> str: ...

    def stream(self, messages: List[Message], options: GenerationOptions) -> AsyncIterator[str]: ...


def _breaker_open() -> bool:
    opened = _BREAKER_STATE["opened_at"]
    if opened == 0.0:
        return False
    if time.time() - opened < _BREAKER_COOLDOWN:
        return True
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0
    return False


def _record_fail() -> None:
    _BREAKER_STATE["fails"] += 1
    if _BREAKER_STATE["fails"] >= _BREAKER_THRESHOLD and _BREAKER_STATE["opened_at"] == 0.0:
        _BREAKER_STATE["opened_at"] = time.time()
        LOG.warning(
            "llm_breaker_opened",
            extra={"fails": _BREAKER_STATE["fails"], "cooldown_s": _BREAKER_COOLDOWN},
        )


def _record_success() -> None:
    if _BREAKER_STATE["fails"] or _BREAKER_STATE["opened_at"]:
        LOG.info("llm_breaker_closed")
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0


def clean_json_response(content: str) -> str:
    """Strip a markdown code fence (```json ... ```) wrapped around a JSON payload."""
    cleaned = (content or "").strip()
    match = re.match(r"^```(?:json)?\s*\n?([\s\S]*?)\n?```$", cleaned)
    if match:
        cleaned = match.group(1).strip()
    return cleaned


def parse_json_object(content: str) -> Dict[str, Any]:
    """Parse a structured response, tolerating fences and leading chatter.

    Raises ``ValueError`` when no JSON object can be recovered.
    """
    text = clean_json_response(content)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        m = re.search(r"\{[\s\S]*\}", text)
        if not m:
            raise ValueError("response is not JSON")
        data = json.loads(m.group(0))
    if not isinstance(data, dict):
        raise ValueError("response JSON is not an object")
    return data


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class LocalLLMProvider:
    """Self-hosted model speaking the OpenAI chat wire format or Ollama's generate API."""

    def __init__(self, base_url: str, model: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._timeout = _STREAM_TIMEOUT
        self._session = _build_session()
        self.api_style = (os.getenv("TUTOR_LOCAL_API") or "auto").lower()

    async def complete(self, messages: List[Message], options: GenerationOptions) -> str:
        return await asyncio.to_thread(self.invoke, messages, options)

    def stream(self, messages: List[Message], options: GenerationOptions) -> AsyncIterator[str]:
        return iter_as_async(self.iter_tokens(messages, options))

    def invoke(self, messages: List[Message], options: GenerationOptions) -> str:
        if self.api_style == "ollama":
            return self._invoke_ollama(messages, options)
        if self.api_style == "openai":
            return self._invoke_openai(messages, options)
        try:
            return self._invoke_openai(messages, options)
        except requests.exceptions.RequestException as exc:
            LOG.warning(
                "local_llm_openai_failed_switching_to_ollama",
                extra={"base_url": self.base_url, "model": self.model, "err": str(exc)},
            )
            self.api_style = "ollama"
            return self._invoke_ollama(messages, options)

    def iter_tokens(self, messages: List[Message], options: GenerationOptions) -> Iterator[str]:
        if self.api_style == "ollama":
            yield from self._stream_ollama(messages, options)
            return
        if self.api_style == "openai":
            yield from self._stream_openai(messages, options)
            return
        yielded = False
        try:
            for token in self._stream_openai(messages, options):
                yielded = True
                yield token
        except requests.exceptions.RequestException as exc:
            # Fall back only before the first token went out.
            if yielded:
                raise
            LOG.warning(
                "local_llm_stream_openai_failed_switching_to_ollama",
                extra={"base_url": self.base_url, "model": self.model, "err": str(exc)},
            )
            self.api_style = "ollama"
            yield from self._stream_ollama(messages, options)

    def _openai_payload(self, messages: List[Message], options: GenerationOptions, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": stream,
            "temperature": options.temperature,
        }
        if options.max_tokens:
            payload["max_tokens"] = options.max_tokens
        if options.structured:
            payload["response_format"] = {"type": "json_object"}
        return payload

    def _ollama_payload(self, messages: List[Message], options: GenerationOptions, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": self._messages_to_prompt(messages),
            "stream": stream,
            "options": {"temperature": options.temperature},
        }
        if options.max_tokens:
            payload["options"]["num_predict"] = options.max_tokens
        if options.structured:
            payload["format"] = "json"
        return payload

    def _invoke_openai(self, messages: List[Message], options: GenerationOptions) -> str:
        LOG.debug("local_llm_invoke", extra={"model": self.model, "base_url": self.base_url})
        resp = self._session.post(
            f"{self.base_url}/v1/chat/completions",
            json=self._openai_payload(messages, options, stream=False),
            timeout=(self._timeout[0], 90),
        )
        resp.raise_for_status()
        data = resp.json()
        choices = data.get("choices") or []
        if choices:
            message = choices[0].get("message") or {}
            content = message.get("content")
            if content:
                return content
        return data.get("response") or data.get("text") or ""

    def _stream_openai(self, messages: List[Message], options: GenerationOptions) -> Iterator[str]:
        LOG.debug(
            "local_llm_stream",
            extra={"model": self.model, "base_url": self.base_url, "timeout": self._timeout},
        )
        with self._session.post(
            f"{self.base_url}/v1/chat/completions",
            json=self._openai_payload(messages, options, stream=True),
            timeout=self._timeout,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                if not line.startswith("data: "):
                    continue
                data = line[6:].strip()
                if data == "[DONE]":
                    break
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                token = delta.get("content") or ""
                if token:
                    yield token

    def _invoke_ollama(self, messages: List[Message], options: GenerationOptions) -> str:
        resp = self._session.post(
            f"{self.base_url}/api/generate",
            json=self._ollama_payload(messages, options, stream=False),
            timeout=(self._timeout[0], 90),
        )
        resp.raise_for_status()
        data = resp.json()
        return data.get("response") or data.get("text") or ""

    def _stream_ollama(self, messages: List[Message], options: GenerationOptions) -> Iterator[str]:
        LOG.debug("local_llm_stream_ollama", extra={"model": self.model, "base_url": self.base_url})
        with self._session.post(
            f"{self.base_url}/api/generate",
            json=self._ollama_payload(messages, options, stream=True),
            timeout=(self._timeout[0], 120),
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                try:
                    data = json.loads(raw_line.decode("utf-8"))
                except json.JSONDecodeError:
                    continue
                token = data.get("response") or ""
                if token:
                    yield token
                if data.get("done"):
                    break

    @staticmethod
    def _messages_to_prompt(messages: List[Message]) -> str:
        parts: List[str] = []
        for msg in messages:
            role = (msg.get("role") or "user").strip().upper()
            content = msg.get("content") or ""
            parts.append(f"{role}: {content}")
        parts.append("ASSISTANT:")
        return "\n".join(parts)


class HostedChatProvider:
    """OpenAI-compatible hosted endpoint (OpenAI, Gemini, xAI) via langchain-openai."""

    def __init__(self, api_key: Optional[str], base_url: Optional[str], model: str) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.model = model

    def _client(self, options: GenerationOptions) -> Any:
        kwargs: Dict[str, Any] = {
            "api_key": self.api_key,
            "base_url": self.base_url,
            "model": self.model,
            "temperature": options.temperature,
        }
        if options.max_tokens:
            kwargs["max_tokens"] = options.max_tokens
        llm = ChatOpenAI(**kwargs)
        if options.structured:
            return llm.bind(response_format={"type": "json_object"})
        return llm

    async def complete(self, messages: List[Message], options: GenerationOptions) -> str:
        res = await self._client(options).ainvoke(messages)
        return res.content if hasattr(res, "content") else str(res)

    async def stream(self, messages: List[Message], options: GenerationOptions) -> AsyncIterator[str]:
        async for chunk in self._client(options).astream(messages):
            token = chunk.content if hasattr(chunk, "content") else str(chunk)
            if token:
                yield token


class GuardedCapability:
    """Wraps a provider with the circuit breaker and the failure taxonomy.

    Every backend error leaves here as :class:`GenerationFailure`; task
    cancellation passes through untouched.
    """

    def __init__(self, provider: GenerationProvider, name: str = "custom", model: str = "") -> None:
        self.provider = provider
        self.name = name
        self.model = model

    async def complete(self, messages: List[Message], options: GenerationOptions) -> str:
        if _breaker_open():
            LOG.info("llm_skipped_due_to_breaker", extra={"cooldown_s": _BREAKER_COOLDOWN})
            raise GenerationFailure("llm_circuit_open")
        try:
            text = await self.provider.complete(messages, options)
        except GenerationFailure:
            _record_fail()
            raise
        except Exception as exc:
            _record_fail()
            LOG.warning("llm_complete_failed", extra={"provider": self.name, "err": str(exc)})
            raise GenerationFailure(f"Generation failed: {exc}") from exc
        if not (text or "").strip():
            _record_fail()
            raise GenerationFailure("llm_empty_response")
        _record_success()
        return text

    async def stream(self, messages: List[Message], options: GenerationOptions) -> AsyncIterator[str]:
        if _breaker_open():
            LOG.info("llm_skipped_due_to_breaker", extra={"cooldown_s": _BREAKER_COOLDOWN})
            raise GenerationFailure("llm_circuit_open")
        source = self.provider.stream(messages, options)
        try:
            async for token in source:
                yield token
        except GenerationFailure:
            _record_fail()
            raise
        except Exception as exc:
            _record_fail()
            LOG.warning("llm_stream_failed", extra={"provider": self.name, "err": str(exc)})
            raise GenerationFailure(f"Generation failed: {exc}") from exc
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()
        _record_success()


def _build_provider(selection: ProviderSelection, env: Optional[Mapping[str, str]] = None) -> GenerationProvider:
    env = env if env is not None else os.environ
    base_url = selection.default_base_url
    if selection.base_url_env:
        base_url = env.get(selection.base_url_env) or base_url

    if selection.name == "local":
        logger.info("Using local LLM provider base_url=%s model=%s", base_url, selection.model)
        return LocalLLMProvider(base_url=base_url or "http://127.0.0.1:11434", model=selection.model)

    api_key = env.get(selection.api_key_env) if selection.api_key_env else None
    if selection.requires_api_key and not api_key:
        raise GenerationFailure("LLM not configured")
    logger.info(
        "Using remote LLM provider name=%s model=%s base_url=%s",
        selection.name,
        selection.model,
        base_url,
    )
    return HostedChatProvider(api_key=api_key, base_url=base_url, model=selection.model)


def get_capability(purpose: str, router: Optional[ModelRouter] = None) -> GuardedCapability:
    """Resolve the configured backend for ``purpose``.

    Raises :class:`GenerationFailure` when no provider is configured, so
    callers handle "no model" exactly like "model failed".
    """
    router = router or ModelRouter()
    try:
        selection = router.select_provider(purpose)
    except RuntimeError as exc:
        raise GenerationFailure(str(exc)) from exc
    provider = _build_provider(selection, router.env)
    return GuardedCapability(provider, name=selection.name, model=selection.model)
