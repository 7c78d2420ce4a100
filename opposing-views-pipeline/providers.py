"""Inference provider adapters that classify an article's register and political lean."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple, Type

import orjson
import requests
import tiktoken

from config import Config
from errors import ProviderError
from models import DEFAULT_CONTENT_TYPE, Article, Classification
from pipeline_utils import load_prompt_template, parse_json_response, render_prompt, schema_text

logging.getLogger("urllib3").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)
SYSTEM_PROMPT = (
    "You are a meticulous media-bias analyst. Always emit valid JSON that matches the requested schema. "
    "Follow the schema exactly, but do NOT repeat the schema text."
)
PROMPT_KEY = "classify_article"
_CHARS_PER_TOKEN = 4

_PROVIDER_REGISTRY: Dict[str, Type["AnalysisProvider"]] = {}


def register_provider(name: str) -> Callable[[Type["AnalysisProvider"]], Type["AnalysisProvider"]]:
    """Class decorator adding a provider to the registry under ``name``."""

    def decorator(cls: Type["AnalysisProvider"]) -> Type["AnalysisProvider"]:
        key = name.strip().lower()
        if key in _PROVIDER_REGISTRY and _PROVIDER_REGISTRY[key] is not cls:
            raise ValueError(f"Provider '{key}' is already registered")
        cls.name = key
        _PROVIDER_REGISTRY[key] = cls
        return cls

    return decorator


def available_providers() -> List[str]:
    return sorted(_PROVIDER_REGISTRY)


def build_provider(name: str, config: Config, session: Optional[requests.Session] = None) -> "AnalysisProvider":
    key = (name or "").strip().lower()
    try:
        provider_cls = _PROVIDER_REGISTRY[key]
    except KeyError:
        raise ValueError(
            f"Unknown provider '{name}'. Registered providers: {', '.join(available_providers())}"
        ) from None
    return provider_cls(config, session=session)


class AnalysisProvider(ABC):
    """Anything that can turn an article into a Classification."""

    name: str = ""

    @abstractmethod
    def classify(self, article: Article) -> Classification:
        raise NotImplementedError

    def close(self) -> None:
        """Release held resources; a no-op by default."""


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring non-numeric provider value %r", value)
        return None


def _as_indicators(value: Any) -> FrozenSet[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set)):
        return frozenset()
    return frozenset(item.strip() for item in value if isinstance(item, str) and item.strip())


def classification_from_payload(
    payload: Any,
    provider: str,
    model_version: Optional[str] = None,
) -> Classification:
    """Map a decoded model response onto a Classification."""
    if not isinstance(payload, dict):
        raise ProviderError(ProviderError.MALFORMED, f"expected a JSON object, got {type(payload).__name__}", provider)
    if payload.get("refused") is True:
        reason = payload.get("reason") or "model declined to classify"
        raise ProviderError(ProviderError.REFUSED, str(reason), provider)

    content_type = payload.get("content_type")
    if not isinstance(content_type, str) or not content_type.strip():
        content_type = DEFAULT_CONTENT_TYPE
    topic_summary = payload.get("topic_summary")
    if not isinstance(topic_summary, str):
        topic_summary = None

    return Classification(
        provider=provider,
        content_type=content_type.strip().lower(),
        bias_score=_as_float(payload.get("bias_score")),
        bias_confidence=_as_float(payload.get("bias_confidence")),
        bias_indicators=_as_indicators(payload.get("bias_indicators")),
        topic_summary=topic_summary,
        model_version=model_version,
    )


class HTTPAnalysisProvider(AnalysisProvider):
    """Shared request/response handling for providers reached over HTTP.

    Instances hold a ``requests.Session`` and immutable settings only, so one
    adapter can serve concurrent workers.
    """

    def __init__(self, config: Config, session: Optional[requests.Session] = None):
        self.config = config
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.timeout = config.provider_timeout_seconds
        self.tokenizer = tiktoken.get_encoding(config.tiktoken_encoding) if config.tiktoken_encoding else None

    @property
    @abstractmethod
    def model(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def _request(self, prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        """Return (url, headers, payload) for one classification call."""

    @abstractmethod
    def _extract_content(self, data: Any) -> str:
        """Pull the model's text out of a decoded response body."""

    def _truncate_body(self, text: str) -> str:
        budget = max(0, self.config.max_input_tokens)
        if self.tokenizer is not None:
            tokens = self.tokenizer.encode(text)
            if len(tokens) > budget:
                logger.debug("Truncating article body from %d to %d tokens", len(tokens), budget)
                return self.tokenizer.decode(tokens[:budget])
            return text
        char_budget = budget * _CHARS_PER_TOKEN
        return text[:char_budget]

    def render_article_prompt(self, article: Article) -> str:
        title = (article.title or "").strip()
        if not title:
            raise ValueError(f"Article {article.id} has an empty title and cannot be classified")
        body = self._truncate_body(article.body) or "(no article text available; classify from the title alone)"
        return render_prompt(
            load_prompt_template(PROMPT_KEY),
            {"title": title, "body": body, "schema": schema_text(PROMPT_KEY)},
        )

    def _dump_payload_for_logging(self, payload: Dict[str, Any]) -> str:
        try:
            return orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode("utf-8")
        except orjson.JSONEncodeError:
            return str(payload)

    def _post(self, url: str, headers: Dict[str, str], payload: Dict[str, Any]) -> Any:
        try:
            response = self.session.post(url, headers=headers, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.Timeout as exc:
            raise ProviderError(ProviderError.TIMEOUT, f"no response within {self.timeout}s", self.name) from exc
        except requests.HTTPError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            response_text: Optional[str] = None
            if exc.response is not None:
                try:
                    response_text = exc.response.text
                except Exception:
                    response_text = None
            if response_text:
                logger.debug("Response body from %s (status %s):\n%s", self.name, status_code, response_text)
            logger.debug("Request payload for %s:\n%s", self.name, self._dump_payload_for_logging(payload))
            raise ProviderError(ProviderError.NETWORK, f"HTTP status {status_code}", self.name) from exc
        except requests.RequestException as exc:
            raise ProviderError(ProviderError.NETWORK, str(exc), self.name) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(ProviderError.MALFORMED, "response body is not JSON", self.name) from exc

    def _model_version(self, data: Any) -> Optional[str]:
        if isinstance(data, dict) and isinstance(data.get("model"), str):
            return data["model"]
        return self.model

    def classify(self, article: Article) -> Classification:
        prompt = self.render_article_prompt(article)
        url, headers, payload = self._request(prompt)
        data = self._post(url, headers, payload)
        content = self._extract_content(data)
        try:
            parsed = parse_json_response(content)
        except (TypeError, ValueError) as exc:
            logger.debug("Unparseable %s output for article %s: %r", self.name, article.id, content[:500])
            raise ProviderError(ProviderError.MALFORMED, str(exc), self.name) from exc
        classification = classification_from_payload(parsed, self.name, self._model_version(data))
        logger.debug(
            "%s classified article %s as %s (bias=%s)",
            self.name,
            article.id,
            classification.content_type,
            classification.bias_score,
        )
        return classification

    def close(self) -> None:
        if not self._owns_session:
            return
        try:
            self.session.close()
        except Exception:
            logger.debug("Failed to close HTTP session cleanly")


@register_provider("ollama")
class OllamaProvider(HTTPAnalysisProvider):
    """Locally hosted model served by Ollama's chat endpoint."""

    @property
    def model(self) -> str:
        return self.config.ollama_model

    def _request(self, prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        url = (self.config.ollama_api_base or "http://localhost:11434").rstrip("/") + "/api/chat"
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "stream": False,
            "format": "json",
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.max_tokens,
            },
        }
        return url, {"Content-Type": "application/json"}, payload

    def _extract_content(self, data: Any) -> str:
        content = None
        if isinstance(data, dict):
            if isinstance(data.get("message"), dict):
                content = data["message"].get("content")
            else:
                content = data.get("response")
        if not isinstance(content, str) or not content.strip():
            raise ProviderError(ProviderError.MALFORMED, "Ollama response missing content", self.name)
        return content


@register_provider("claude")
class ClaudeProvider(HTTPAnalysisProvider):
    """Hosted Anthropic model reached through the Messages API."""

    API_VERSION = "2023-06-01"

    def __init__(self, config: Config, session: Optional[requests.Session] = None):
        if not config.anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY is not set; the claude provider is unavailable.")
        super().__init__(config, session=session)

    @property
    def model(self) -> str:
        return self.config.claude_model

    def _request(self, prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        url = self.config.claude_api_base.rstrip("/") + "/v1/messages"
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.config.anthropic_api_key or "",
            "anthropic-version": self.API_VERSION,
        }
        payload = {
            "model": self.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        }
        return url, headers, payload

    def _extract_content(self, data: Any) -> str:
        if not isinstance(data, dict):
            raise ProviderError(ProviderError.MALFORMED, "Claude response is not an object", self.name)
        if data.get("stop_reason") == "refusal":
            raise ProviderError(ProviderError.REFUSED, "stop_reason=refusal", self.name)
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProviderError(ProviderError.MALFORMED, "Claude response content is not a list", self.name)
        text = "".join(
            block["text"]
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        )
        if not text.strip():
            raise ProviderError(ProviderError.MALFORMED, "Claude response missing text content", self.name)
        return text


@register_provider("grok")
class GrokProvider(HTTPAnalysisProvider):
    """Hosted model behind an OpenAI-compatible chat completions endpoint."""

    def __init__(self, config: Config, session: Optional[requests.Session] = None):
        if not config.grok_api_key:
            raise ValueError("GROK_API_KEY is not set; the grok provider is unavailable.")
        super().__init__(config, session=session)

    @property
    def model(self) -> str:
        return self.config.grok_model

    def _request(self, prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        url = self.config.grok_api_base.rstrip("/") + "/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.grok_api_key}",
        }
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "response_format": {"type": "json_object"},
        }
        return url, headers, payload

    def _extract_content(self, data: Any) -> str:
        try:
            choice = data["choices"][0]
            message = choice["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(ProviderError.MALFORMED, "response missing choices", self.name) from exc
        if not isinstance(choice, dict) or not isinstance(message, dict):
            raise ProviderError(ProviderError.MALFORMED, "choice message is not an object", self.name)
        if message.get("refusal") or choice.get("finish_reason") == "content_filter":
            raise ProviderError(ProviderError.REFUSED, str(message.get("refusal") or "content_filter"), self.name)
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ProviderError(ProviderError.MALFORMED, "response missing content", self.name)
        return content
