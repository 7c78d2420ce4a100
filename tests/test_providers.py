import dataclasses

import orjson
import pytest
import requests

from conftest import FakeProvider  # type: ignore
from errors import ProviderError  # type: ignore
from models import Article, Classification  # type: ignore
from orchestrator import AnalysisOrchestrator  # type: ignore
from providers import (  # type: ignore
    AnalysisProvider,
    ClaudeProvider,
    GrokProvider,
    OllamaProvider,
    available_providers,
    build_provider,
    classification_from_payload,
    register_provider,
)


class FakeResponse:
    def __init__(self, body, status_code: int = 200):
        self._body = body
        self.status_code = status_code
        self.text = body if isinstance(body, str) else orjson.dumps(body).decode("utf-8")

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        if isinstance(self._body, str):
            return orjson.loads(self._body)
        return self._body


class FakeSession:
    def __init__(self, outcome):
        self.outcome = outcome
        self.requests = []
        self.closed = False

    def post(self, url, headers=None, json=None, timeout=None):
        self.requests.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    def close(self) -> None:
        self.closed = True


ARTICLE = Article(
    id="a1",
    feed_id="f1",
    title="Senate passes border security bill",
    url="http://example.com/a1",
    summary="Lawmakers approved new enforcement funding.",
)

CLASSIFICATION_JSON = orjson.dumps(
    {
        "content_type": "Opinion",
        "bias_score": 0.6,
        "bias_confidence": 0.9,
        "bias_indicators": ["illegal immigrants", "border security", ""],
        "topic_summary": "Senate border bill",
    }
).decode("utf-8")


def _ollama(config, outcome):
    session = FakeSession(outcome)
    return OllamaProvider(config, session=session), session


def test_ollama_request_and_parse(config) -> None:
    provider, session = _ollama(config, FakeResponse({"model": "llama3:8b", "message": {"content": CLASSIFICATION_JSON}}))

    result = provider.classify(ARTICLE)

    sent = session.requests[0]
    assert sent["url"] == "http://localhost:11434/api/chat"
    assert sent["json"]["format"] == "json"
    assert sent["json"]["stream"] is False
    assert "Senate passes border security bill" in sent["json"]["messages"][1]["content"]
    assert result.provider == "ollama"
    assert result.content_type == "opinion"
    assert result.bias_score == pytest.approx(0.6)
    assert result.bias_indicators == frozenset({"illegal immigrants", "border security"})
    assert result.model_version == "llama3:8b"


def test_ollama_extracts_json_wrapped_in_prose(config) -> None:
    content = "Sure, here is the analysis:\n" + CLASSIFICATION_JSON + "\nHope that helps."
    provider, _ = _ollama(config, FakeResponse({"response": content}))

    result = provider.classify(ARTICLE)

    assert result.topic_summary == "Senate border bill"
    assert result.model_version == config.ollama_model


@pytest.mark.parametrize(
    "outcome, kind",
    [
        (requests.Timeout("slow"), ProviderError.TIMEOUT),
        (requests.ConnectionError("refused"), ProviderError.NETWORK),
        (FakeResponse("upstream exploded", status_code=503), ProviderError.NETWORK),
        (FakeResponse({"message": {"content": "no json here"}}), ProviderError.MALFORMED),
        (FakeResponse({"message": {"content": ""}}), ProviderError.MALFORMED),
        (FakeResponse({"message": {"content": '{"refused": true, "reason": "unsafe"}'}}), ProviderError.REFUSED),
    ],
)
def test_ollama_failures_map_to_provider_error_kinds(config, outcome, kind) -> None:
    provider, _ = _ollama(config, outcome)

    with pytest.raises(ProviderError) as excinfo:
        provider.classify(ARTICLE)

    assert excinfo.value.kind == kind
    assert excinfo.value.provider == "ollama"


def test_empty_title_is_rejected_before_any_request(config) -> None:
    provider, session = _ollama(config, FakeResponse({"response": CLASSIFICATION_JSON}))

    with pytest.raises(ValueError):
        provider.classify(dataclasses.replace(ARTICLE, title="   "))

    assert session.requests == []


def test_long_body_is_truncated_to_token_budget(config) -> None:
    config.max_input_tokens = 10
    provider, session = _ollama(config, FakeResponse({"response": CLASSIFICATION_JSON}))

    provider.classify(dataclasses.replace(ARTICLE, content="x" * 1000, summary=None))

    prompt = session.requests[0]["json"]["messages"][1]["content"]
    assert "x" * 40 in prompt
    assert "x" * 41 not in prompt


def test_claude_requires_api_key(config) -> None:
    config.anthropic_api_key = None
    with pytest.raises(ValueError):
        ClaudeProvider(config, session=FakeSession(None))


def test_claude_request_and_refusal(config) -> None:
    config.anthropic_api_key = "sk-test"
    body = {"model": "claude-x", "stop_reason": "end_turn", "content": [{"type": "text", "text": CLASSIFICATION_JSON}]}
    session = FakeSession(FakeResponse(body))
    provider = ClaudeProvider(config, session=session)

    result = provider.classify(ARTICLE)

    sent = session.requests[0]
    assert sent["url"] == "https://api.anthropic.com/v1/messages"
    assert sent["headers"]["x-api-key"] == "sk-test"
    assert sent["headers"]["anthropic-version"] == "2023-06-01"
    assert result.provider == "claude"
    assert result.model_version == "claude-x"

    session.outcome = FakeResponse({"stop_reason": "refusal", "content": []})
    with pytest.raises(ProviderError) as excinfo:
        provider.classify(ARTICLE)
    assert excinfo.value.kind == ProviderError.REFUSED


def test_grok_request_and_content_filter(config) -> None:
    config.grok_api_key = "xai-test"
    body = {"choices": [{"message": {"content": CLASSIFICATION_JSON}, "finish_reason": "stop"}]}
    session = FakeSession(FakeResponse(body))
    provider = GrokProvider(config, session=session)

    result = provider.classify(ARTICLE)

    sent = session.requests[0]
    assert sent["url"] == "https://api.x.ai/v1/chat/completions"
    assert sent["headers"]["Authorization"] == "Bearer xai-test"
    assert sent["json"]["response_format"] == {"type": "json_object"}
    assert result.provider == "grok"

    session.outcome = FakeResponse({"choices": [{"message": {"content": ""}, "finish_reason": "content_filter"}]})
    with pytest.raises(ProviderError) as excinfo:
        provider.classify(ARTICLE)
    assert excinfo.value.kind == ProviderError.REFUSED


def test_classification_from_payload_coerces_fields() -> None:
    result = classification_from_payload(
        {"bias_score": "0.25", "bias_confidence": True, "bias_indicators": "loaded term", "topic_summary": 7},
        "ollama",
    )

    assert result.content_type == "neutral"
    assert result.bias_score == pytest.approx(0.25)
    assert result.bias_confidence is None
    assert result.bias_indicators == frozenset({"loaded term"})
    assert result.topic_summary is None

    with pytest.raises(ProviderError) as excinfo:
        classification_from_payload(["not", "an", "object"], "ollama")
    assert excinfo.value.kind == ProviderError.MALFORMED


def test_registry_is_open_to_new_providers(config) -> None:
    @register_provider("static-test")
    class StaticProvider(AnalysisProvider):
        def __init__(self, config, session=None):
            self.config = config

        def classify(self, article):
            return classification_from_payload({"bias_score": 0.0}, self.name)

    assert "static-test" in available_providers()
    assert {"ollama", "claude", "grok"} <= set(available_providers())
    provider = build_provider("Static-Test", config)
    assert isinstance(provider, StaticProvider)
    assert provider.classify(ARTICLE).provider == "static-test"

    with pytest.raises(ValueError):
        register_provider("static-test")(OllamaProvider)
    with pytest.raises(ValueError):
        build_provider("nope", config)


def test_close_only_closes_owned_session(config) -> None:
    provider, session = _ollama(config, FakeResponse({}))
    provider.close()
    assert session.closed is False


@pytest.mark.parametrize(
    "provider_cls, body",
    [
        (OllamaProvider, {"message": {"content": 5}}),
        (OllamaProvider, {"message": None, "response": None}),
        (ClaudeProvider, {"stop_reason": "end_turn", "content": [{"type": "text", "text": None}]}),
        (ClaudeProvider, {"stop_reason": "end_turn", "content": "not a list"}),
        (GrokProvider, {"choices": [{"message": None}]}),
        (GrokProvider, {"choices": [{"message": {"content": ["x"]}, "finish_reason": "stop"}]}),
    ],
)
def test_odd_response_shapes_are_malformed_and_fall_back(store, config, make_article, provider_cls, body) -> None:
    config.anthropic_api_key = "sk-test"
    config.grok_api_key = "xai-test"
    article = make_article("Senate passes border security bill")
    primary = provider_cls(config, session=FakeSession(FakeResponse(body)))
    fallback = FakeProvider("claude", [Classification(provider="claude", content_type="opinion", bias_score=0.6)])
    orchestrator = AnalysisOrchestrator(store, [primary, fallback], config)

    with pytest.raises(ProviderError) as excinfo:
        primary.classify(ARTICLE)
    assert excinfo.value.kind == ProviderError.MALFORMED

    analysis = orchestrator.analyze(article.id)

    assert analysis.provider == "claude"
    assert fallback.calls == 1
