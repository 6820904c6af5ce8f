# asknotes/memory.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import List

from sqlalchemy import desc, select
from sqlalchemy.exc import SQLAlchemyError

from .db import MemoryTurnRow
from .errors import StorageFailure
from .schemas import MemoryTurn

logger = logging.getLogger("asknotes.memory")


class MemoryStore:
    """
    История тредов: только дописываем, читаем в хронологическом порядке.
    Согласованность обеспечивает база, пайплайн ничего не блокирует.
    """

    def __init__(self, sf, max_turns: int = 10):
        self.sf = sf
        self.max_turns = max_turns

    def read(self, thread_id: str) -> List[MemoryTurn]:
        try:
            with self.sf() as s:
                q = (
                    select(MemoryTurnRow)
                    .where(MemoryTurnRow.thread_id == thread_id)
                    .order_by(desc(MemoryTurnRow.created_at), desc(MemoryTurnRow.id))
                    .limit(self.max_turns)
                )
                rows = list(s.execute(q).scalars().all())
        except SQLAlchemyError as e:
            raise StorageFailure(f"memory read failed for thread {thread_id}: {e}") from e
        rows.reverse()
        return [
            MemoryTurn(question=r.question, answer=r.answer, created_at_iso=r.created_at.isoformat())
            for r in rows
        ]

    def append(self, thread_id: str, turn: MemoryTurn) -> None:
        try:
            with self.sf() as s:
                s.add(MemoryTurnRow(
                    thread_id=thread_id,
                    question=turn.question,
                    answer=turn.answer,
                    created_at=datetime.fromisoformat(turn.created_at_iso),
                ))
                s.commit()
        except SQLAlchemyError as e:
            raise StorageFailure(f"memory append failed for thread {thread_id}: {e}") from e
        logger.debug("Appended memory turn to thread %s", thread_id)
