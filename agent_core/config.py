from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"
DEFAULT_AGENT_CONFIG_DIR = Path(__file__).resolve().parent.parent / "data"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Database settings (absent URL means the durable store is unavailable)
    DATABASE_URL: str | None = None

    # Reasoning service settings
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4.1"
    OPENAI_TEMPERATURE: float = 0.2
    OPENAI_MAX_TOKENS: int = 1000
    OPENAI_TIMEOUT_SECONDS: float = 30.0
    OPENAI_MAX_RETRIES: int = 3

    # Messaging gateway settings
    GATEWAY_BASE_URL: str = "https://api.a1base.com/v1"
    GATEWAY_API_KEY: str | None = None
    GATEWAY_API_SECRET: str | None = None
    GATEWAY_ACCOUNT_ID: str | None = None
    GATEWAY_TIMEOUT_SECONDS: float = 15.0
    AGENT_NUMBER: str = ""
    AGENT_NAME: str = "AI Assistant"

    # =================================================================
    # CONVERSATION BEHAVIOR
    # =================================================================
    MAX_CONTEXT_MESSAGES: int = 10
    CACHE_MAX_THREADS: int = 1000
    SPLIT_PARAGRAPHS: bool = False
    CHUNK_DELAY_SECONDS: float = 0.5
    GROUP_PROMPT_DELAY_SECONDS: float = 1.0
    REMINDER_DELAY_SECONDS: float = 2.0
    AGENT_CONFIG_DIR: Path = DEFAULT_AGENT_CONFIG_DIR

    # =================================================================
    # DATABASE POOL SETTINGS - Simple and configurable
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def database_configured(self) -> bool:
        return bool(self.DATABASE_URL)

    def gateway_configured(self) -> bool:
        return bool(self.GATEWAY_API_KEY and self.GATEWAY_API_SECRET and self.GATEWAY_ACCOUNT_ID)

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # Smaller footprint for local development
            config.update(
                {
                    "min_size": 1,
                    "max_size": 5,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
