"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Memoria configuration. All values come from environment variables."""

    # Anthropic (completions)
    anthropic_api_key: str = Field(default="")
    completion_model: str = Field(default="claude-sonnet-4-5-20250929")
    completion_max_tokens: int = Field(default=400)
    completion_temperature: float = Field(default=0.0)
    completion_max_attempts: int = Field(default=5)
    completion_retry_delay_seconds: float = Field(default=1.0)
    completion_ascii_only: bool = Field(default=False)

    # OpenAI (embeddings)
    openai_api_key: str = Field(default="")
    embedding_model: str = Field(default="text-embedding-3-small")

    # Vector index: "local" (libsql table) or "pinecone"
    vector_backend: str = Field(default="local")
    pinecone_api_key: str = Field(default="")
    pinecone_index_host: str = Field(default="")
    vector_upsert_attempts: int = Field(default=3)

    # Database
    database_path: Path = Field(default=Path("data/memoria.db"))

    # Turso (hosted libSQL); when set, overrides local database_path
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # Retrieval
    similarity_threshold: float = Field(default=0.75)
    memory_top_k: int = Field(default=10)
    memory_fallback_count: int = Field(default=10)
    recent_turns: int = Field(default=10)
    conversation_context_messages: int = Field(default=5)
    similar_conversations_limit: int = Field(default=3)

    # Notes
    page_size: int = Field(default=50)
    chat_trigger: str = Field(default="@chat")
    bot_name: str = Field(default="Memoria Bot")
    bot_tag: str = Field(default="Bot")
    default_tag_color: str = Field(default="rgba(99, 102, 241, 0.5)")

    # Outbound HTTP (embeddings, completions, vector service)
    request_timeout_seconds: float = Field(default=30.0)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def pinecone_enabled(self) -> bool:
        """True when the Pinecone backend is selected and fully configured."""
        return (
            self.vector_backend.strip().lower() == "pinecone"
            and bool(self.pinecone_api_key)
            and bool(self.pinecone_index_host)
        )

    def stop_sequences(self, speaker: str) -> list[str]:
        """Stop sequences for a completion addressed by *speaker*."""
        return [f"{speaker}:", f"{self.bot_name}:"]


settings = Settings()
