"""Test helpers: deterministic vectors and an in-process fake of the remote model"""

import hashlib
import json
import math
import random

import httpx

from paper_rerank.config import config

DIM = config.embedding_dimension


def unit_vector(seed: str) -> list[float]:
    """Deterministic unit-length vector derived from a string"""
    rng = random.Random(hashlib.sha256(seed.encode("utf-8")).hexdigest())
    values = [rng.gauss(0.0, 1.0) for _ in range(DIM)]
    norm = math.sqrt(sum(v * v for v in values))
    return [v / norm for v in values]


def blend(weights: dict[int, float]) -> list[float]:
    """Vector with the given components set (e.g. {0: 0.6, 1: 0.8}) and zeros elsewhere"""
    vector = [0.0] * DIM
    for index, value in weights.items():
        vector[index] = value
    return vector


class FakeModel:
    """Stands in for the remote /embed endpoint and records every call"""

    def __init__(self):
        self.calls: list[list[str]] = []
        self.vectors: dict[str, list[float]] = {}

    def vector_for(self, text: str) -> list[float]:
        return self.vectors.get(text) or unit_vector(text)

    def handler(self, request: httpx.Request) -> httpx.Response:
        texts = json.loads(request.content)["inputs"]
        self.calls.append(texts)
        return httpx.Response(200, json=[self.vector_for(t) for t in texts])

    @property
    def embedded_texts(self) -> list[str]:
        return [text for call in self.calls for text in call]
