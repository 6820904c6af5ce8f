# asknotes/config.py
# Совместимо с Python 3.10 и Pydantic v2 / pydantic-settings v2

from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Единая конфигурация сервиса AskNotes.
    - Значения читаются из переменных окружения и файла .env (если он есть).
    - Безопасно работать без LLM_KEY / GEMINI_API_KEY (например, в тестах);
      реальный вызов API сам проверяет наличие ключа и падает с понятной ошибкой.
    """

    # === Генеративная модель (OpenAI-совместимый chat/completions) ===
    # Переменные окружения: LLM_URL, LLM_KEY, LLM_MODEL, LLM_TEMPERATURE
    llm_url: str = Field(default="https://api.openai.com/v1/chat/completions")
    llm_key: Optional[str] = None
    llm_model: str = Field(default="gpt-4o-mini")
    llm_temperature: float = Field(default=0.0)

    # Таймаут HTTP-запроса к модели (сек)
    # Переменная окружения: REQUEST_TIMEOUT_SEC
    request_timeout_sec: int = Field(default=60)

    # === Векторный индекс ===
    # Переменные окружения: INDEX_PATH, META_PATH, EMBEDDING_MODEL
    index_path: str = Field(default="./notes.index")
    meta_path: str = Field(default="./notes_meta.pkl")
    embedding_model: str = Field(default="BAAI/bge-m3")

    # Сколько кандидатов забираем из индекса
    # Переменная окружения: TOP_K
    top_k: int = Field(default=8)

    # Сколько фрагментов остаётся после реранка (<= TOP_K)
    # Переменная окружения: RERANK_TOP_N
    rerank_top_n: int = Field(default=5)

    # Доля dense-скоринга в реранке: 1.0: только сходство из индекса, 0.0: только BM25
    # Переменная окружения: HYBRID_ALPHA
    hybrid_alpha: float = Field(default=0.6)

    # Порог «не найдено»: если лучший фрагмент ниже, отвечаем отказом
    # Переменная окружения: NOT_FOUND_THRESHOLD
    not_found_threshold: float = Field(default=0.35)

    # Обрезка текста одного фрагмента в промпте
    # Переменная окружения: MAX_CHUNK_CHARS
    max_chunk_chars: int = Field(default=2000)

    # === Хранилище ===
    # Переменные окружения: DATABASE_URL, MEMORY_MAX_TURNS
    database_url: str = Field(default="sqlite+pysqlite:///./asknotes.db")
    memory_max_turns: int = Field(default=10)

    # Сколько случайных фрагментов берём для квиза
    # Переменная окружения: QUIZ_SAMPLE_SIZE
    quiz_sample_size: int = Field(default=15)

    # === Голосовой мост (live-сессия Gemini) ===
    # Переменные окружения: GEMINI_API_KEY, LIVE_MODEL, LIVE_VOICE
    gemini_api_key: Optional[str] = None
    live_model: str = Field(default="gemini-2.5-flash-native-audio-preview-12-2025")
    live_voice: str = Field(default="Kore")

    # === Сервисные параметры ===
    # Заголовок, в котором шлюз аутентификации передаёт проверенный id пользователя
    identity_header: str = Field(default="X-User-Id")
    cors_origins: List[str] = Field(default=["*"])
    log_level: str = Field(default="INFO")

    # Настройки загрузки из .env, игнор лишних переменных
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


# Глобальный объект настроек
settings = Settings()
