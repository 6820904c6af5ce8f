# asknotes/index.py
import pickle
from collections import defaultdict
from typing import Dict, List

import faiss
import numpy as np
from FlagEmbedding import BGEM3FlagModel

from .schemas import ChunkMetadata, RetrievedChunk


class BgeEmbedder:
    def __init__(self, model_name: str = "BAAI/bge-m3"):
        self.model = BGEM3FlagModel(model_name, use_fp16=True)

    def embed(self, text: str) -> np.ndarray:
        v = self.model.encode([text])["dense_vecs"].astype("float32")
        faiss.normalize_L2(v)
        return v

    def embed_many(self, texts: List[str], batch_size: int = 32) -> np.ndarray:
        enc = self.model.encode(texts, batch_size=batch_size)
        emb = np.array(enc["dense_vecs"]).astype("float32")
        faiss.normalize_L2(emb)
        return emb


class FaissNoteIndex:
    """
    FAISS (inner product по L2-нормированным векторам) + метаданные фрагментов.
    Позиция записи в meta совпадает с id вектора в индексе.
    """

    def __init__(self, index_path: str, meta_path: str):
        self.index = faiss.read_index(index_path)
        with open(meta_path, "rb") as f:
            self.meta: List[dict] = pickle.load(f)
        # id векторов по предметам: для фильтра прямо внутри поиска
        by_subject: Dict[str, List[int]] = defaultdict(list)
        for i, rec in enumerate(self.meta):
            by_subject[str(rec["subject_id"])].append(i)
        self.subject_ids = {s: np.array(ids, dtype="int64") for s, ids in by_subject.items()}

    def query(self, vector: np.ndarray, top_k: int, subject_id: str) -> List[RetrievedChunk]:
        ids = self.subject_ids.get(subject_id)
        if ids is None or not len(ids):
            return []
        params = faiss.SearchParameters(sel=faiss.IDSelectorBatch(ids))
        sims, found = self.index.search(vector, min(top_k, len(ids)), params=params)

        out = []
        for score, i in zip(sims[0], found[0]):
            if i < 0:
                continue
            rec = self.meta[int(i)]
            chunk_id = str(rec.get("chunk_id") or i)
            out.append(RetrievedChunk(
                id=chunk_id,
                text=str(rec.get("text", "")),
                score=float(score),
                metadata=ChunkMetadata(
                    file_name=str(rec.get("file_name") or "UnknownFile"),
                    page=int(rec["page"]) if rec.get("page") is not None else None,
                    chunk_id=chunk_id,
                    subject_id=str(rec["subject_id"]),
                ),
            ))
        return out


def build_index(emb: np.ndarray) -> "faiss.Index":
    index = faiss.IndexFlatIP(emb.shape[1])
    index.add(emb)
    return index
