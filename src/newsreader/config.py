"""应用配置管理."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置（环境变量）."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Inoreader 配置
    inoreader_base_url: str = "https://www.inoreader.com/reader/api/0"
    inoreader_app_id: str = ""
    inoreader_app_key: str = ""
    inoreader_access_token: str = ""
    # 文件形式的 token 存储: {"access_token": "..."}
    inoreader_token_file: str = ""
    inoreader_timeout_seconds: float = 30.0

    # 应用配置
    database_url: str = "sqlite+aiosqlite:///./newsreader.db"
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    # 同步调度（每天固定时刻）
    sync_enabled: bool = True
    sync_cron_hours: str = "2,14"
    sync_timezone: str = "America/Toronto"

    # 同步策略
    sync_stream_fetch_size: int = 300
    sync_max_articles: int = 100
    sync_max_articles_per_feed: int = 20
    sync_full_interval_days: int = 7
    sync_max_calls_per_pass: int = 5
    sync_stale_lock_minutes: int = 30
    inoreader_daily_call_limit: int = 100

    # 回写队列
    sync_queue_batch_size: int = 100
    sync_queue_max_retries: int = 3
    sync_queue_backoff_minutes: int = 10

    # 全文抓取
    content_fetch_timeout_seconds: float = 10.0

    # LLM 配置
    llm_provider: Literal["openai", "ollama"] = "openai"

    # OpenAI 配置
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"

    # Ollama 配置
    ollama_host: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"

    # 摘要配置
    summary_min_words: int = 150
    summary_max_words: int = 175
    summary_max_tokens: int = 400
    summary_timeout_seconds: float = 30.0
    summary_max_content_chars: int = 12000


@lru_cache
def get_settings() -> Settings:
    """获取应用配置（带缓存）."""
    return Settings()
