"""
Embedding provider registry.

Every backend declares its capabilities through a ModelSpec. The backend is
picked once from configuration by ``create_provider`` and wrapped in an
EmbeddingProvider, which applies the configured target dimensionality and
cost accounting uniformly.
"""
from __future__ import annotations

import logging
import math
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import psutil
import requests
from requests.adapters import HTTPAdapter

from .chunker import estimate_tokens
from .errors import ConfigurationError, ProviderPermanentFailure, ProviderTransientFailure

logger = logging.getLogger(__name__)

TASK_DOCUMENT = "document"
TASK_QUERY = "query"

TRANSIENT_STATUS = {408, 425, 429}


@dataclass(frozen=True)
class ModelSpec:
    provider: str
    model: str
    dimensions: int
    max_tokens: int
    cost_per_1m_tokens: float
    task_able: bool = False
    # leading N components form a valid lower-dimensional embedding
    truncation_safe: bool = False
    # stored dimensionality when none is configured (0 = native)
    default_dimensions: int = 0

    @property
    def is_free(self) -> bool:
        return self.cost_per_1m_tokens == 0


def _catalog(*specs: ModelSpec) -> Dict[str, Dict[str, ModelSpec]]:
    catalog: Dict[str, Dict[str, ModelSpec]] = {}
    for spec in specs:
        catalog.setdefault(spec.provider, {})[spec.model] = spec
    return catalog


MODEL_CATALOG: Dict[str, Dict[str, ModelSpec]] = _catalog(
    ModelSpec("openai", "text-embedding-3-small", 1536, 8191, 0.02, truncation_safe=True),
    ModelSpec("openai", "text-embedding-3-large", 3072, 8191, 0.13, truncation_safe=True),
    ModelSpec("google", "text-embedding-005", 768, 2048, 0.025),
    ModelSpec(
        "google", "gemini-embedding-001", 3072, 2048, 0.15, task_able=True, truncation_safe=True, default_dimensions=1536
    ),
    ModelSpec("ollama", "nomic-embed-text", 768, 8192, 0.0),
    ModelSpec("ollama", "mxbai-embed-large", 1024, 512, 0.0),
    ModelSpec("github-copilot", "text-embedding-3-small", 1536, 8191, 0.0, truncation_safe=True),
    ModelSpec("local", "BAAI/bge-small-en-v1.5", 384, 512, 0.0),
    ModelSpec("local", "microsoft/codebert-base", 768, 512, 0.0),
)

DEFAULT_MODELS = {
    "openai": "text-embedding-3-small",
    "github-copilot": "text-embedding-3-small",
    "google": "text-embedding-005",
    "ollama": "nomic-embed-text",
    "local": "BAAI/bge-small-en-v1.5",
}

PROVIDERS = ("openai", "google", "ollama", "github-copilot", "custom", "local")


def get_model_spec(provider: str, model: Optional[str] = None, custom: Optional[dict] = None) -> ModelSpec:
    """Look up the capabilities of a provider/model pair, applying provider defaults."""
    if provider not in PROVIDERS:
        raise ConfigurationError(
            f"Unknown embedding provider '{provider}'. Expected one of: {', '.join(PROVIDERS)}"
        )
    if provider == "custom":
        custom = custom or {}
        dims = int(custom.get("DIMENSIONS") or 0)
        if not model or dims <= 0:
            raise ConfigurationError("The custom provider needs EMBEDDING.MODEL and EMBEDDING.CUSTOM.DIMENSIONS")
        return ModelSpec(
            "custom",
            model,
            dims,
            int(custom.get("MAX_TOKENS") or 8191),
            float(custom.get("COST_PER_1M_TOKENS") or 0.0),
            truncation_safe=bool(custom.get("TRUNCATION_SAFE", False)),
        )

    model = model or DEFAULT_MODELS[provider]
    try:
        return MODEL_CATALOG[provider][model]
    except KeyError as exc:
        known = ", ".join(sorted(MODEL_CATALOG.get(provider, {})))
        raise ConfigurationError(f"Unknown model '{model}' for provider '{provider}'. Known models: {known}") from exc


def resolve_target_dimensions(spec: ModelSpec, requested: Optional[int]) -> int:
    """Validate a requested dimensionality against the model; 0/None means native."""
    if not requested:
        return spec.default_dimensions or spec.dimensions
    if requested < 0:
        raise ConfigurationError(f"Embedding dimensions must be positive, got {requested}")
    if requested > spec.dimensions:
        raise ConfigurationError(
            f"{spec.provider}/{spec.model} produces {spec.dimensions} dimensions; cannot serve {requested}"
        )
    if requested < spec.dimensions and not spec.truncation_safe:
        raise ConfigurationError(
            f"{spec.provider}/{spec.model} is not truncation-safe; "
            f"configure its native {spec.dimensions} dimensions instead of {requested}"
        )
    return requested


@dataclass
class EmbeddingBatch:
    vectors: np.ndarray
    tokens: int
    cost: float


AVG_CHUNK_BYTES = 400
AVG_TOKENS_PER_CHUNK = 150


@dataclass
class CostEstimate:
    files: int
    total_bytes: int
    chunks: int
    tokens: int
    cost: float
    provider: str
    model: str
    is_free: bool


def estimate_cost(sizes: Sequence[int], spec: ModelSpec) -> CostEstimate:
    """Rough pre-build estimate from file sizes alone; nothing is parsed or sent."""
    chunks = sum(max(1, math.ceil(size / AVG_CHUNK_BYTES)) for size in sizes)
    tokens = chunks * AVG_TOKENS_PER_CHUNK
    return CostEstimate(
        files=len(sizes),
        total_bytes=sum(sizes),
        chunks=chunks,
        tokens=tokens,
        cost=tokens / 1_000_000 * spec.cost_per_1m_tokens,
        provider=spec.provider,
        model=spec.model,
        is_free=spec.is_free,
    )


class EmbeddingBackend(ABC):
    """One concrete embedding API. Returns raw vectors and tokens consumed."""

    def __init__(self, spec: ModelSpec):
        self.spec = spec

    @abstractmethod
    def embed(self, texts: Sequence[str], task: Optional[str] = None) -> Tuple[List[List[float]], int]:
        raise NotImplementedError

    def ping(self) -> bool:
        self.embed(["ping"])
        return True

    def close(self):
        pass


class HTTPEmbeddingBackend(EmbeddingBackend):
    default_base_url = ""

    def __init__(
        self,
        spec: ModelSpec,
        api_key: str = "",
        base_url: str = "",
        timeout: float = 30.0,
        pool_size: int = 4,
    ):
        super().__init__(spec)
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        # retries are owned by the concurrency controller
        adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size, max_retries=0)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = self.session.request(method, url, headers=self.headers(), timeout=self.timeout, **kwargs)
        except requests.Timeout as exc:
            raise ProviderTransientFailure(f"{self.spec.provider} request timed out after {self.timeout}s") from exc
        except requests.ConnectionError as exc:
            raise ProviderTransientFailure(f"Cannot reach {self.spec.provider} at {self.base_url}: {exc}") from exc
        except requests.RequestException as exc:
            raise ProviderPermanentFailure(f"{self.spec.provider} request failed: {exc}") from exc

        status = response.status_code
        if status in TRANSIENT_STATUS or status >= 500:
            raise ProviderTransientFailure(
                f"{self.spec.provider} returned HTTP {status}: {response.text[:200]}", status_code=status
            )
        if status >= 400:
            raise ProviderPermanentFailure(
                f"{self.spec.provider} returned HTTP {status}: {response.text[:200]}", status_code=status
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderPermanentFailure(f"{self.spec.provider} returned a non-JSON response") from exc

    def close(self):
        self.session.close()


class OpenAIBackend(HTTPEmbeddingBackend):
    default_base_url = "https://api.openai.com/v1"

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def request_model(self) -> str:
        return self.spec.model

    def embeddings_url(self) -> str:
        return f"{self.base_url}/embeddings"

    def embed(self, texts: Sequence[str], task: Optional[str] = None) -> Tuple[List[List[float]], int]:
        data = self._request("POST", self.embeddings_url(), json={"model": self.request_model(), "input": list(texts)})
        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            vectors = [item["embedding"] for item in items]
        except (KeyError, TypeError) as exc:
            raise ProviderPermanentFailure(f"Malformed embeddings response from {self.spec.provider}") from exc
        usage = data.get("usage") or {}
        tokens = usage.get("total_tokens") or sum(estimate_tokens(t) for t in texts)
        return vectors, int(tokens)

    def ping(self) -> bool:
        self._request("GET", f"{self.base_url}/models")
        return True


class CustomOpenAIBackend(OpenAIBackend):
    """Any OpenAI-compatible /embeddings endpoint. Sends Authorization only when a key is set."""

    def ping(self) -> bool:
        self.embed(["ping"])
        return True


class GitHubCopilotBackend(OpenAIBackend):
    default_base_url = "https://models.github.ai"

    def request_model(self) -> str:
        return f"openai/{self.spec.model}"

    def embeddings_url(self) -> str:
        return f"{self.base_url}/inference/embeddings"

    def ping(self) -> bool:
        self.embed(["ping"])
        return True


class GoogleBackend(HTTPEmbeddingBackend):
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    task_types = {TASK_DOCUMENT: "RETRIEVAL_DOCUMENT", TASK_QUERY: "RETRIEVAL_QUERY"}

    def embed(self, texts: Sequence[str], task: Optional[str] = None) -> Tuple[List[List[float]], int]:
        vectors = []
        for text in texts:
            payload: Dict[str, object] = {"content": {"parts": [{"text": text}]}}
            if task and task in self.task_types:
                payload["taskType"] = self.task_types[task]
            data = self._request(
                "POST",
                f"{self.base_url}/models/{self.spec.model}:embedContent",
                params={"key": self.api_key},
                json=payload,
            )
            try:
                vectors.append(data["embedding"]["values"])
            except (KeyError, TypeError) as exc:
                raise ProviderPermanentFailure("Malformed embedContent response from google") from exc
        return vectors, sum(estimate_tokens(t) for t in texts)

    def ping(self) -> bool:
        self._request("GET", f"{self.base_url}/models/{self.spec.model}", params={"key": self.api_key})
        return True


class OllamaBackend(HTTPEmbeddingBackend):
    default_base_url = "http://localhost:11434"

    def embed(self, texts: Sequence[str], task: Optional[str] = None) -> Tuple[List[List[float]], int]:
        vectors = []
        for text in texts:
            data = self._request(
                "POST",
                f"{self.base_url}/api/embeddings",
                json={"model": self.spec.model, "prompt": text},
            )
            if not isinstance(data.get("embedding"), list):
                raise ProviderPermanentFailure("Malformed /api/embeddings response from ollama")
            vectors.append(data["embedding"])
        return vectors, sum(estimate_tokens(t) for t in texts)

    def ping(self) -> bool:
        self._request("GET", f"{self.base_url}/api/tags")
        return True


def _get_optimal_batch_size(device: str, model_name: str, texts_count: int) -> int:
    """Pick a batch size from available memory and a rough guess at model size."""
    memory = psutil.virtual_memory()
    available_memory_mb = memory.available / (1024 * 1024)

    base_batch_size = 32 if device == "cuda" else 16

    name = model_name.lower()
    if "large" in name:
        base_batch_size = max(1, base_batch_size // 2)
    elif "small" in name or "mini" in name or "tiny" in name:
        base_batch_size = min(64, base_batch_size * 2)

    if available_memory_mb < 1024:
        base_batch_size = max(1, base_batch_size // 4)
    elif available_memory_mb < 2048:
        base_batch_size = max(1, base_batch_size // 2)
    elif available_memory_mb > 8192:
        base_batch_size = min(128, base_batch_size * 2)

    if texts_count < 10:
        base_batch_size = min(base_batch_size, 8)
    elif texts_count < 100:
        base_batch_size = min(base_batch_size, 32)

    return max(1, int(base_batch_size))


class LocalTransformersBackend(EmbeddingBackend):
    """In-process Hugging Face encoder. torch/transformers load on first use."""

    def __init__(self, spec: ModelSpec, device: Optional[str] = None):
        super().__init__(spec)
        self._device = device
        self._model = None
        self._tokenizer = None
        self.torch = None

    def _load(self):
        if self._model is not None:
            return
        # Defer heavy imports to keep module import light and test-friendly
        import torch
        from transformers import AutoModel, AutoTokenizer

        self.torch = torch
        self.device = self._device or ("cuda" if torch.cuda.is_available() else "cpu")
        self._tokenizer = AutoTokenizer.from_pretrained(self.spec.model)
        if self._tokenizer.pad_token is None:
            self._tokenizer.pad_token = self._tokenizer.eos_token
        self._model = AutoModel.from_pretrained(self.spec.model)
        self._model.to(self.device)
        self._model.eval()
        logger.info("Loaded local embedding model %s on %s", self.spec.model, self.device)

    def _has_cls_pooling(self) -> bool:
        name = self.spec.model.lower()
        return any(pattern in name for pattern in ("bert", "roberta", "bge"))

    def embed(self, texts: Sequence[str], task: Optional[str] = None) -> Tuple[List[List[float]], int]:
        try:
            self._load()
        except (ImportError, OSError) as exc:
            raise ProviderPermanentFailure(f"Cannot load local model {self.spec.model}: {exc}") from exc

        torch = self.torch
        batch_size = _get_optimal_batch_size(self.device, self.spec.model, len(texts))
        vecs = []
        tokens_used = 0
        with torch.no_grad():
            for i in range(0, len(texts), batch_size):
                batch = list(texts[i : i + batch_size])
                tokens = self._tokenizer(
                    batch,
                    padding=True,
                    truncation=True,
                    max_length=self.spec.max_tokens,
                    return_tensors="pt",
                )
                tokens_used += int(tokens["attention_mask"].sum().item())
                tokens = {k: v.to(self.device) for k, v in tokens.items()}
                last_hidden = self._model(**tokens).last_hidden_state  # [B, T, H]
                if self._has_cls_pooling():
                    emb = last_hidden[:, 0, :].cpu().numpy()
                else:
                    mask = tokens["attention_mask"].unsqueeze(-1)  # [B, T, 1]
                    summed = (last_hidden * mask).sum(dim=1)
                    counts = mask.sum(dim=1).clamp(min=1)
                    emb = (summed / counts).cpu().numpy()
                # L2 normalize for cosine with IndexFlatIP
                emb = emb / (np.linalg.norm(emb, axis=1, keepdims=True) + 1e-12)
                vecs.append(emb)
        stacked = np.vstack(vecs) if vecs else np.zeros((0, self.spec.dimensions), dtype=np.float32)
        return stacked.tolist(), tokens_used

    def ping(self) -> bool:
        try:
            self._load()
        except (ImportError, OSError) as exc:
            raise ProviderPermanentFailure(f"Cannot load local model {self.spec.model}: {exc}") from exc
        return True


class EmbeddingProvider:
    """A selected backend plus the target dimensionality the index stores."""

    def __init__(self, backend: EmbeddingBackend, dimensions: Optional[int] = None):
        self.backend = backend
        self.spec = backend.spec
        self.dimensions = resolve_target_dimensions(self.spec, dimensions)

    @property
    def provider_id(self) -> str:
        return self.spec.provider

    @property
    def model_id(self) -> str:
        return self.spec.model

    def embed(self, texts: Sequence[str], task: str = TASK_DOCUMENT) -> EmbeddingBatch:
        hint = task if self.spec.task_able else None
        raw, tokens = self.backend.embed(list(texts), hint)
        try:
            vectors = np.asarray(raw, dtype=np.float32)
        except (TypeError, ValueError) as exc:
            raise ProviderPermanentFailure(f"{self.provider_id} returned ragged vectors") from exc
        if vectors.ndim != 2 or vectors.shape[0] != len(texts):
            raise ProviderPermanentFailure(
                f"{self.provider_id} returned {vectors.shape[0] if vectors.ndim else 0} vectors for {len(texts)} inputs"
            )
        if vectors.shape[1] < self.dimensions:
            raise ProviderPermanentFailure(
                f"{self.provider_id} returned {vectors.shape[1]} dimensions, expected {self.dimensions}"
            )
        # truncation keeps the leading components; no re-normalization
        vectors = np.ascontiguousarray(vectors[:, : self.dimensions])
        return EmbeddingBatch(vectors=vectors, tokens=tokens, cost=self.cost(tokens))

    def cost(self, tokens: int) -> float:
        return tokens / 1_000_000 * self.spec.cost_per_1m_tokens

    def ping(self) -> bool:
        return self.backend.ping()

    def close(self):
        self.backend.close()


def create_backend(spec: ModelSpec, api_key: str = "", base_url: str = "", timeout: float = 30.0, pool_size: int = 4) -> EmbeddingBackend:
    if spec.provider == "local":
        return LocalTransformersBackend(spec)
    http_kwargs = dict(api_key=api_key, base_url=base_url, timeout=timeout, pool_size=pool_size)
    if spec.provider == "openai":
        return OpenAIBackend(spec, **http_kwargs)
    if spec.provider == "custom":
        if not base_url:
            raise ConfigurationError("The custom provider needs EMBEDDING.BASE_URL")
        return CustomOpenAIBackend(spec, **http_kwargs)
    if spec.provider == "github-copilot":
        return GitHubCopilotBackend(spec, **http_kwargs)
    if spec.provider == "google":
        return GoogleBackend(spec, **http_kwargs)
    if spec.provider == "ollama":
        if not base_url:
            http_kwargs["base_url"] = os.environ.get("CODEINDEX_OLLAMA_BASE_URL", "")
        return OllamaBackend(spec, **http_kwargs)
    raise ConfigurationError(f"Unknown embedding provider '{spec.provider}'")


def create_provider(settings) -> EmbeddingProvider:
    """Build the provider described by an IndexSettings instance."""
    spec = settings.model_spec
    backend = create_backend(
        spec,
        api_key=settings.api_key,
        base_url=settings.base_url,
        timeout=settings.timeout,
        pool_size=settings.concurrency,
    )
    return EmbeddingProvider(backend, settings.dimensions)
