# asknotes/db.py
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, create_engine, func
from sqlalchemy.orm import DeclarativeBase, sessionmaker


class Base(DeclarativeBase):
    pass


class Subject(Base):
    __tablename__ = "subjects"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, index=True, nullable=False)
    name = Column(String(120), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class NoteChunk(Base):
    __tablename__ = "note_chunks"
    id = Column(Integer, primary_key=True)
    subject_id = Column(String, ForeignKey("subjects.id"), index=True, nullable=False)
    chunk_id = Column(String, unique=True, nullable=False)
    file_name = Column(String, nullable=False)
    page = Column(Integer, nullable=True)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class MemoryTurnRow(Base):
    __tablename__ = "memory_turns"
    id = Column(Integer, primary_key=True)
    thread_id = Column(String, index=True, nullable=False)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)


def _normalize_db_url(url: str | None) -> str:
    if not url or not url.strip():
        return "sqlite+pysqlite:///./asknotes.db"
    url = url.strip()
    # Railway/Heroku часто отдают DSN вида "postgres://"
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg2://", 1)
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg2://", 1)
    return url


def make_session_factory(database_url: str | None):
    url = _normalize_db_url(database_url)
    # пайплайн ходит в базу из worker-потоков
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(url, pool_pre_ping=True, future=True, connect_args=connect_args)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False), engine
