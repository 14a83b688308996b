#!/usr/bin/env python3
"""
Vector indexes over question embeddings.

This module provides:
- NumpyVectorIndex: exact cosine top-k over an L2-normalized matrix
- QdrantVectorIndex: the same contract backed by a Qdrant collection
  (in-process ``:memory:`` or a server URL)
- build_vector_index: backend selection by name
"""

__all__ = [
    "NumpyVectorIndex", "QdrantVectorIndex", "build_vector_index", "_point_id",
]

import logging
import os
import uuid
from collections import Counter
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

try:
    from qdrant_client import QdrantClient, models
except ImportError:
    QdrantClient = None  # type: ignore
    models = None  # type: ignore

from survey_composer.models import Question

logger = logging.getLogger("survey_vector")

_POINT_NAMESPACE = uuid.UUID("6f1c3e0a-3b1d-4c35-9a51-5d0c1b0f7e21")


def _point_id(question_id: str) -> str:
    """Stable Qdrant point id for a question id."""
    return str(uuid.uuid5(_POINT_NAMESPACE, question_id))


def _dominant_dim(questions: Iterable[Question]) -> int:
    dims = Counter(len(q.embedding) for q in questions if q.embedding)
    if not dims:
        return 0
    # most common dimension; ties broken by larger dim for determinism
    return max(dims.items(), key=lambda kv: (kv[1], kv[0]))[0]


class NumpyVectorIndex:
    """Exact cosine search. Rows are normalized once at build time."""

    def __init__(self, questions: Sequence[Question]):
        self.dim = _dominant_dim(questions)
        usable = [q for q in questions if self.dim and len(q.embedding) == self.dim]
        skipped = sum(1 for q in questions if q.embedding and len(q.embedding) != self.dim)
        if skipped:
            logger.warning(f"Skipped {skipped} embeddings with dimension != {self.dim}")
        self._ids: List[str] = [q.id for q in usable]
        self._languages = np.array([q.language for q in usable], dtype=object)
        if usable:
            mat = np.asarray([q.embedding for q in usable], dtype=np.float32)
            norms = np.linalg.norm(mat, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            self._matrix = mat / norms
        else:
            self._matrix = np.zeros((0, max(self.dim, 1)), dtype=np.float32)

    def __len__(self) -> int:
        return len(self._ids)

    def search(
        self,
        embedding: Sequence[float],
        k: int,
        language: Optional[str] = None,
    ) -> List[Tuple[str, float]]:
        """Return up to k (question_id, cosine) pairs, best first, ties by id."""
        if k <= 0 or not self._ids or embedding is None or len(embedding) != self.dim:
            return []
        q = np.asarray(embedding, dtype=np.float32)
        norm = float(np.linalg.norm(q))
        if norm == 0.0:
            return []
        sims = self._matrix @ (q / norm)
        if language is not None:
            mask = self._languages == language
            idx = np.nonzero(mask)[0]
        else:
            idx = np.arange(len(self._ids))
        if idx.size == 0:
            return []
        pairs = [(self._ids[i], float(sims[i])) for i in idx]
        pairs.sort(key=lambda p: (-p[1], p[0]))
        return pairs[:k]


class QdrantVectorIndex:
    """Cosine search delegated to a Qdrant collection.

    Each snapshot writes into its own collection so a reload never mutates the
    collection that in-flight readers are querying.
    """

    def __init__(
        self,
        questions: Sequence[Question],
        collection: str,
        client=None,
        url: Optional[str] = None,
        batch_size: int = 256,
    ):
        if QdrantClient is None:
            raise ImportError("qdrant_client is not installed. Install with: pip install qdrant-client")
        self.dim = _dominant_dim(questions)
        self.collection = collection
        if client is None:
            url = url or os.environ.get("QDRANT_URL", "").strip()
            client = QdrantClient(url=url, api_key=os.environ.get("QDRANT_API_KEY")) if url else QdrantClient(location=":memory:")
        self.client = client
        usable = [q for q in questions if self.dim and len(q.embedding) == self.dim]
        self._count = len(usable)
        if not usable:
            return
        self._create()
        for start in range(0, len(usable), batch_size):
            chunk = usable[start:start + batch_size]
            self.client.upsert(
                collection_name=collection,
                points=[
                    models.PointStruct(
                        id=_point_id(q.id),
                        vector=list(q.embedding),
                        payload={"question_id": q.id, "language": q.language},
                    )
                    for q in chunk
                ],
            )

    def _create(self) -> None:
        if self.client.collection_exists(self.collection):
            self.client.delete_collection(self.collection)
        self.client.create_collection(
            collection_name=self.collection,
            vectors_config=models.VectorParams(size=self.dim, distance=models.Distance.COSINE),
        )

    def __len__(self) -> int:
        return self._count

    def search(
        self,
        embedding: Sequence[float],
        k: int,
        language: Optional[str] = None,
    ) -> List[Tuple[str, float]]:
        if k <= 0 or not self._count or embedding is None or len(embedding) != self.dim:
            return []
        flt = None
        if language is not None:
            flt = models.Filter(must=[
                models.FieldCondition(key="language", match=models.MatchValue(value=language))
            ])
        qp = self.client.query_points(
            collection_name=self.collection,
            query=[float(x) for x in embedding],
            query_filter=flt,
            limit=k,
            with_payload=True,
        )
        points = getattr(qp, "points", qp) or []
        pairs = [
            (str((p.payload or {}).get("question_id")), float(p.score))
            for p in points
            if (p.payload or {}).get("question_id") is not None
        ]
        pairs.sort(key=lambda p: (-p[1], p[0]))
        return pairs[:k]

    def drop(self) -> None:
        """Delete this snapshot's collection."""
        try:
            self.client.delete_collection(self.collection)
        except Exception as e:
            logger.warning(f"Failed to drop vector collection {self.collection}: {e}")


def build_vector_index(questions: Sequence[Question], backend: str = "numpy", version: str = "", client=None):
    """Build the configured vector backend for a snapshot."""
    backend = (backend or "numpy").strip().lower()
    if backend == "qdrant":
        prefix = os.environ.get("SURVEY_QDRANT_COLLECTION_PREFIX", "survey_questions")
        return QdrantVectorIndex(questions, collection=f"{prefix}_{version or 'v'}", client=client)
    if backend != "numpy":
        logger.warning(f"Unknown vector backend '{backend}', using numpy")
    return NumpyVectorIndex(questions)
