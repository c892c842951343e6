from unittest.mock import MagicMock

import numpy as np
import pytest
import requests

from codeindex.embed import (
    CustomOpenAIBackend,
    EmbeddingProvider,
    GoogleBackend,
    OllamaBackend,
    OpenAIBackend,
    TASK_QUERY,
    create_backend,
    estimate_cost,
    get_model_spec,
    resolve_target_dimensions,
)
from codeindex.errors import ConfigurationError, ProviderPermanentFailure, ProviderTransientFailure


def fake_response(status=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.json.return_value = payload if payload is not None else {}
    return response


def openai_payload(vectors, tokens=10):
    return {
        "data": [{"index": i, "embedding": list(v)} for i, v in enumerate(vectors)],
        "usage": {"total_tokens": tokens},
    }


def test_get_model_spec_defaults_and_errors():
    assert get_model_spec("openai").model == "text-embedding-3-small"
    assert get_model_spec("ollama").dimensions == 768
    with pytest.raises(ConfigurationError):
        get_model_spec("nope")
    with pytest.raises(ConfigurationError):
        get_model_spec("openai", "text-embedding-9")
    with pytest.raises(ConfigurationError):
        get_model_spec("custom", "my-model", {})

    custom = get_model_spec("custom", "my-model", {"DIMENSIONS": 64, "COST_PER_1M_TOKENS": 1.5})
    assert (custom.dimensions, custom.cost_per_1m_tokens, custom.truncation_safe) == (64, 1.5, False)


def test_resolve_target_dimensions():
    large = get_model_spec("openai", "text-embedding-3-large")
    assert resolve_target_dimensions(large, None) == 3072
    assert resolve_target_dimensions(large, 1536) == 1536
    with pytest.raises(ConfigurationError):
        resolve_target_dimensions(large, 4096)

    # not truncation-safe: only native width is allowed
    gecko = get_model_spec("google", "text-embedding-005")
    with pytest.raises(ConfigurationError):
        resolve_target_dimensions(gecko, 256)

    gemini = get_model_spec("google", "gemini-embedding-001")
    assert resolve_target_dimensions(gemini, 0) == 1536


def test_truncation_keeps_leading_components_without_renormalizing():
    spec = get_model_spec("openai", "text-embedding-3-large")
    backend = OpenAIBackend(spec, api_key="sk-test")
    raw = np.linspace(-1.0, 1.0, 3072, dtype=np.float32)
    backend.session.request = MagicMock(return_value=fake_response(payload=openai_payload([raw], tokens=7)))

    provider = EmbeddingProvider(backend, 1536)
    batch = provider.embed(["def f(): pass"])

    assert batch.vectors.shape == (1, 1536)
    np.testing.assert_allclose(batch.vectors[0], raw[:1536])
    assert batch.tokens == 7
    assert batch.cost == pytest.approx(7 / 1_000_000 * 0.13)

    _, kwargs = backend.session.request.call_args
    assert kwargs["json"] == {"model": "text-embedding-3-large", "input": ["def f(): pass"]}
    assert kwargs["headers"]["Authorization"] == "Bearer sk-test"


def test_provider_rejects_wrong_vector_count_and_width():
    spec = get_model_spec("openai", "text-embedding-3-small")
    backend = OpenAIBackend(spec)
    provider = EmbeddingProvider(backend)

    backend.session.request = MagicMock(return_value=fake_response(payload=openai_payload([np.zeros(1536)])))
    with pytest.raises(ProviderPermanentFailure):
        provider.embed(["a", "b"])

    backend.session.request = MagicMock(return_value=fake_response(payload=openai_payload([np.zeros(8)])))
    with pytest.raises(ProviderPermanentFailure):
        provider.embed(["a"])


@pytest.mark.parametrize(
    "status, error",
    [
        (429, ProviderTransientFailure),
        (503, ProviderTransientFailure),
        (400, ProviderPermanentFailure),
        (401, ProviderPermanentFailure),
    ],
)
def test_http_status_classification(status, error):
    backend = OpenAIBackend(get_model_spec("openai"))
    backend.session.request = MagicMock(return_value=fake_response(status=status, text="nope"))
    with pytest.raises(error) as excinfo:
        backend.embed(["x"])
    assert excinfo.value.status_code == status


def test_network_errors_are_transient():
    backend = OpenAIBackend(get_model_spec("openai"))
    backend.session.request = MagicMock(side_effect=requests.Timeout("slow"))
    with pytest.raises(ProviderTransientFailure):
        backend.embed(["x"])

    backend.session.request = MagicMock(side_effect=requests.ConnectionError("refused"))
    with pytest.raises(ProviderTransientFailure):
        backend.embed(["x"])


def test_malformed_payload_is_permanent():
    backend = OpenAIBackend(get_model_spec("openai"))
    backend.session.request = MagicMock(return_value=fake_response(payload={"unexpected": True}))
    with pytest.raises(ProviderPermanentFailure):
        backend.embed(["x"])


def test_google_task_hint_only_for_task_able_models():
    gemini = GoogleBackend(get_model_spec("google", "gemini-embedding-001"), api_key="g")
    gemini.session.request = MagicMock(return_value=fake_response(payload={"embedding": {"values": [0.1] * 3072}}))
    EmbeddingProvider(gemini).embed(["find retries"], task=TASK_QUERY)
    _, kwargs = gemini.session.request.call_args
    assert kwargs["json"]["taskType"] == "RETRIEVAL_QUERY"
    assert kwargs["params"] == {"key": "g"}

    gecko = GoogleBackend(get_model_spec("google", "text-embedding-005"), api_key="g")
    gecko.session.request = MagicMock(return_value=fake_response(payload={"embedding": {"values": [0.1] * 768}}))
    EmbeddingProvider(gecko).embed(["find retries"], task=TASK_QUERY)
    _, kwargs = gecko.session.request.call_args
    assert "taskType" not in kwargs["json"]


def test_ollama_posts_one_prompt_per_text():
    backend = OllamaBackend(get_model_spec("ollama"))
    backend.session.request = MagicMock(return_value=fake_response(payload={"embedding": [0.5] * 768}))
    vectors, tokens = backend.embed(["a", "bb"])
    assert len(vectors) == 2
    assert backend.session.request.call_count == 2
    assert backend.session.request.call_args[0][1] == "http://localhost:11434/api/embeddings"
    assert tokens == 2


def test_create_backend():
    custom = get_model_spec("custom", "m", {"DIMENSIONS": 8})
    with pytest.raises(ConfigurationError):
        create_backend(custom)
    backend = create_backend(custom, base_url="http://embed.local/v1/")
    assert isinstance(backend, CustomOpenAIBackend)
    assert backend.embeddings_url() == "http://embed.local/v1/embeddings"
    # no key configured, no Authorization header
    assert "Authorization" not in backend.headers()


def test_estimate_cost():
    spec = get_model_spec("openai", "text-embedding-3-small")
    estimate = estimate_cost([0, 400, 401], spec)
    assert estimate.files == 3
    assert estimate.total_bytes == 801
    assert estimate.chunks == 4
    assert estimate.tokens == 600
    assert estimate.cost == pytest.approx(600 / 1_000_000 * 0.02)
    assert not estimate.is_free

    assert estimate_cost([100], get_model_spec("ollama")).is_free
