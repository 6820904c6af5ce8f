# asknotes/subjects.py
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import func, select

from .db import NoteChunk, Subject
from .schemas import NoteChunkRecord, SubjectFileRecord, SubjectRecord


def _record(row: Subject) -> SubjectRecord:
    return SubjectRecord(id=row.id, name=row.name, created_at=row.created_at, updated_at=row.updated_at)


class SubjectRepository:
    """Каталог предметов пользователя и метаданные загруженных фрагментов."""

    def __init__(self, sf):
        self.sf = sf

    def find_by_id(self, subject_id: str, user_id: str) -> Optional[SubjectRecord]:
        with self.sf() as s:
            q = select(Subject).where(Subject.id == subject_id, Subject.user_id == user_id)
            row = s.execute(q).scalars().first()
            return _record(row) if row else None

    def list_by_user(self, user_id: str) -> List[SubjectRecord]:
        with self.sf() as s:
            q = select(Subject).where(Subject.user_id == user_id).order_by(Subject.created_at)
            return [_record(r) for r in s.execute(q).scalars().all()]

    def create(self, user_id: str, name: str) -> SubjectRecord:
        with self.sf() as s:
            row = Subject(user_id=user_id, name=name.strip())
            s.add(row)
            s.commit()
            s.refresh(row)
            return _record(row)

    def list_files(self, subject_id: str, user_id: str) -> List[SubjectFileRecord]:
        if not self.find_by_id(subject_id, user_id):
            return []
        with self.sf() as s:
            q = (
                select(
                    NoteChunk.file_name,
                    func.count(NoteChunk.id),
                    func.max(NoteChunk.page),
                    func.max(NoteChunk.created_at),
                )
                .where(NoteChunk.subject_id == subject_id)
                .group_by(NoteChunk.file_name)
                .order_by(NoteChunk.file_name)
            )
            return [
                SubjectFileRecord(file_name=f, chunk_count=n, max_page=p, last_ingested_at=t)
                for f, n, p, t in s.execute(q).all()
            ]

    def random_chunks(self, subject_id: str, limit: int) -> List[NoteChunkRecord]:
        with self.sf() as s:
            q = (
                select(NoteChunk)
                .where(NoteChunk.subject_id == subject_id)
                .order_by(func.random())
                .limit(limit)
            )
            return [
                NoteChunkRecord(chunk_id=r.chunk_id, file_name=r.file_name, page=r.page, text=r.text)
                for r in s.execute(q).scalars().all()
            ]
