import os
import pickle

import faiss
import pandas as pd
from sqlalchemy import select

from asknotes.config import settings
from asknotes.db import NoteChunk, make_session_factory
from asknotes.index import BgeEmbedder, build_index

CSV_PATH = os.getenv("CHUNKS_CSV_PATH", "data/chunks.csv")  # subject_id, file_name, page, chunk_id, text
COLUMNS = ["subject_id", "file_name", "page", "chunk_id", "text"]


def load_records(path: str):
    df = pd.read_csv(path, dtype={"subject_id": str, "chunk_id": str, "file_name": str})
    missing = [c for c in COLUMNS if c not in df.columns]
    if missing:
        raise SystemExit(f"CSV {path} lacks columns: {missing}")
    df = df[COLUMNS].dropna(subset=["subject_id", "chunk_id", "text"])
    records = []
    for r in df.to_dict(orient="records"):
        # pandas отдаёт пустые страницы как NaN
        page = r.get("page")
        records.append({
            "subject_id": str(r["subject_id"]),
            "file_name": str(r.get("file_name") or "UnknownFile"),
            "page": None if pd.isna(page) else int(page),
            "chunk_id": str(r["chunk_id"]),
            "text": str(r["text"]).strip(),
        })
    return records


def store_chunks(records) -> int:
    sf, _engine = make_session_factory(settings.database_url)
    added = 0
    with sf() as s:
        known = set(s.execute(select(NoteChunk.chunk_id)).scalars().all())
        for r in records:
            if r["chunk_id"] in known:
                continue
            s.add(NoteChunk(**r))
            known.add(r["chunk_id"])
            added += 1
        s.commit()
    return added


def main():
    # === 1. Загружаем фрагменты конспектов
    records = load_records(CSV_PATH)
    if not records:
        raise SystemExit(f"No chunks in {CSV_PATH}")

    # === 2. Эмбеддинги (BGE-M3, мультиязычная)
    embedder = BgeEmbedder(settings.embedding_model)
    emb = embedder.embed_many([r["text"] for r in records])

    # === 3. FAISS (inner product по L2-нормированным векторам)
    index = build_index(emb)

    # === 4. Сохранение артефактов: позиция в meta == id вектора
    faiss.write_index(index, settings.index_path)
    with open(settings.meta_path, "wb") as f:
        pickle.dump(records, f)

    # === 5. Метаданные фрагментов в базу (для списка файлов и квизов)
    added = store_chunks(records)

    subjects = len({r["subject_id"] for r in records})
    print(f"Indexed {len(records)} chunks across {subjects} subjects; {added} new rows stored")


if __name__ == "__main__":
    main()
