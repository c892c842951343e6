import hashlib
import re
import threading
from pathlib import Path

import numpy as np
import pytest

from codeindex.config import IndexSettings
from codeindex.embed import EmbeddingBackend, EmbeddingProvider, ModelSpec
from codeindex.model import SourceFile

FAKE_DIMS = 256
WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def bag_of_words(text: str, dims: int = FAKE_DIMS) -> list:
    """Deterministic hashed bag-of-words vector; shared words give positive cosine."""
    vec = np.zeros(dims, dtype=np.float32)
    for word in WORD_RE.findall(text.lower()):
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dims
        vec[bucket] += 1.0
    if not vec.any():
        vec[0] = 1.0
    return vec.tolist()


class FakeBackend(EmbeddingBackend):
    """In-memory backend that records every request it receives."""

    def __init__(self, spec: ModelSpec):
        super().__init__(spec)
        self.calls = []
        self.lock = threading.Lock()
        self.fail_ping = None

    @property
    def texts_embedded(self) -> int:
        with self.lock:
            return sum(len(texts) for texts, _task in self.calls)

    def embed(self, texts, task=None):
        with self.lock:
            self.calls.append((list(texts), task))
        return [bag_of_words(t, self.spec.dimensions) for t in texts], sum(len(t) // 4 for t in texts)

    def ping(self):
        if self.fail_ping is not None:
            raise self.fail_ping
        return True


@pytest.fixture
def fake_spec():
    return ModelSpec("custom", "fake-embed", FAKE_DIMS, 8191, 0.02)


@pytest.fixture
def backend(fake_spec):
    return FakeBackend(fake_spec)


@pytest.fixture
def provider(backend):
    return EmbeddingProvider(backend, FAKE_DIMS)


@pytest.fixture
def settings(fake_spec, tmp_path: Path):
    return IndexSettings(
        provider="custom",
        model_spec=fake_spec,
        dimensions=FAKE_DIMS,
        workers=2,
        concurrency=2,
        retries=2,
        retry_delay=0.0,
        retry_max_delay=0.0,
        batch_size=4,
        debounce=0.01,
        index_dir=str(tmp_path / "index"),
    )


MATH_UTILS = '''\
def fibonacci(n):
    """Return the n-th fibonacci number."""
    if n < 2:
        return n
    return fibonacci(n - 1) + fibonacci(n - 2)


def is_even(n):
    if n == 0:
        return True
    return is_odd(n - 1)


def is_odd(n):
    if n == 0:
        return False
    return is_even(n - 1)
'''

GEOMETRY = '''\
import math


class Circle:
    def __init__(self, radius):
        self.radius = radius

    def area(self):
        return math.pi * self.radius ** 2
'''

APP = '''\
from math_utils import fibonacci
from geometry import Circle


def report(n):
    circle = Circle(n)
    return fibonacci(n), circle.area()
'''


@pytest.fixture
def sources():
    return [
        SourceFile(path="math_utils.py", contents=MATH_UTILS, mtime=1.0),
        SourceFile(path="geometry.py", contents=GEOMETRY, mtime=1.0),
        SourceFile(path="app.py", contents=APP, mtime=1.0),
    ]


@pytest.fixture
def repo(tmp_path: Path, sources):
    root = tmp_path / "repo"
    root.mkdir()
    for source in sources:
        (root / source.path).write_text(source.contents, encoding="utf-8")
    return root
