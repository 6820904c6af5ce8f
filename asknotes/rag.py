# asknotes/rag.py
from __future__ import annotations

import logging
from typing import List, Protocol, Sequence

import numpy as np
from rank_bm25 import BM25Okapi

from .errors import RetrievalFailure
from .schemas import RetrievedChunk

logger = logging.getLogger("asknotes.rag")


class Embedder(Protocol):
    def embed(self, text: str) -> np.ndarray: ...


class VectorIndex(Protocol):
    def query(self, vector: np.ndarray, top_k: int, subject_id: str) -> List[RetrievedChunk]: ...


def tokenize(text: str) -> List[str]:
    text = "".join([c.lower() if (c.isalnum() or c.isspace()) else " " for c in text])
    return [t for t in text.split() if t]


class Retriever:
    """Поиск ближайших фрагментов строго внутри одного предмета."""

    def __init__(self, index: VectorIndex, embedder: Embedder):
        self.index = index
        self.embedder = embedder

    def search(self, subject_id: str, query: str, top_k: int) -> List[RetrievedChunk]:
        try:
            qvec = self.embedder.embed(query)
            found = self.index.query(qvec, top_k, subject_id)
        except RetrievalFailure:
            raise
        except Exception as e:
            raise RetrievalFailure(f"vector index query failed: {e}") from e

        # индекс обязан фильтровать сам, но чужой фрагмент в промпт не пустим ни при каких условиях
        scoped = []
        for chunk in found:
            if chunk.metadata.subject_id != subject_id:
                logger.warning(
                    "Dropping chunk %s of subject %s from results for subject %s",
                    chunk.id, chunk.metadata.subject_id, subject_id,
                )
                continue
            scoped.append(chunk)

        logger.info("Retrieved %d chunks for subject %s", len(scoped[:top_k]), subject_id)
        return scoped[:top_k]


class Reranker:
    """
    Гибридный реранк кандидатов: dense-сходство из индекса + BM25 по их текстам.
    Чистая функция: сами фрагменты (и их score) не меняются, только порядок и число.
    """

    def __init__(self, alpha: float = 0.6):
        self.alpha = float(alpha)  # вес dense

    def _lexical(self, query: str, chunks: Sequence[RetrievedChunk]) -> List[float]:
        corpus = [tokenize(c.text) for c in chunks]
        q_tokens = tokenize(query)
        # BM25 делит на среднюю длину документа: пустой корпус не считаем
        if not q_tokens or not any(corpus):
            return [0.0] * len(chunks)
        scores = BM25Okapi(corpus).get_scores(q_tokens)
        bm25_max = float(np.max(scores)) if len(scores) else 0.0
        return [float(s) / bm25_max if bm25_max > 0 else 0.0 for s in scores]

    def relevance(self, query: str, chunks: Sequence[RetrievedChunk]) -> List[float]:
        if not chunks:
            return []
        dense_max = max(c.score for c in chunks)
        dense = [c.score / dense_max if dense_max > 0 else 0.0 for c in chunks]
        lexical = self._lexical(query, chunks)
        return [self.alpha * d + (1.0 - self.alpha) * b for d, b in zip(dense, lexical)]

    def rerank(self, query: str, chunks: Sequence[RetrievedChunk], top_n: int) -> List[RetrievedChunk]:
        mixed = self.relevance(query, chunks)
        # sorted стабилен: при равенстве остаётся порядок retrieval
        order = sorted(range(len(chunks)), key=lambda i: -mixed[i])
        return [chunks[i] for i in order[:top_n]]
