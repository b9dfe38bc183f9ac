"""Configuration management for statement-ingest."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # AI providers (tried in ai_provider_order, skipped when unconfigured)
    kimi_api_key: str = ""
    kimi_model: str = "moonshot/moonshot-v1-128k"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    gemini_api_key: str = ""
    gemini_model: str = "gemini/gemini-2.0-flash"
    ollama_host: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"

    ai_provider_order: list[str] = ["kimi", "openai", "gemini"]
    ai_max_retries: int = 3
    ai_backoff_base_seconds: float = 2.0
    ai_timeout_seconds: float = 180.0

    # Large documents are split before being sent to a provider
    ai_chunk_threshold: int = 12000
    ai_chunk_size: int = 6000
    ai_send_pdf_binary: bool = True

    # Credits given to an account the first time it is seen
    default_credit_balance: int = 0

    # Development mode
    dev_mode: bool = True
    log_level: str = "INFO"

    # Data directory
    data_dir: Path = Path.home() / ".statement_ingest"

    # API settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # KIMI_API_KEY and kimi_api_key both work
        extra="ignore",
    )

    @property
    def db_path(self) -> Path:
        """Get the SQLite database path for the credit ledger."""
        suffix = "dev" if self.dev_mode else "prod"
        return self.data_dir / f"credits_{suffix}.db"

    def ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def log_config(self) -> None:
        """Log current configuration with sensitive values redacted."""

        def _redact(key: str) -> str:
            if not key:
                return "✗ Not set"
            return f"✓ Set ({key[:4]}...{key[-4:]})"

        print("\n" + "=" * 60)
        print("📋 CONFIGURATION LOADED")
        print("=" * 60)
        print(f"Provider Order:      {' -> '.join(self.ai_provider_order)}")
        print(f"Kimi API Key:        {_redact(self.kimi_api_key)}")
        print(f"Kimi Model:          {self.kimi_model}")
        print(f"OpenAI API Key:      {_redact(self.openai_api_key)}")
        print(f"OpenAI Model:        {self.openai_model}")
        print(f"Gemini API Key:      {_redact(self.gemini_api_key)}")
        print(f"Gemini Model:        {self.gemini_model}")
        print(f"Ollama Host:         {self.ollama_host}")
        print(f"Retries / Backoff:   {self.ai_max_retries} / {self.ai_backoff_base_seconds}s")
        print(f"Chunking:            >{self.ai_chunk_threshold} chars -> {self.ai_chunk_size} per chunk")
        print(f"Dev Mode:            {self.dev_mode}")
        print(f"Data Directory:      {self.data_dir}")
        print(f"Credit Database:     {self.db_path}")
        print(f"API Host:            {self.api_host}:{self.api_port}")
        print("=" * 60 + "\n")


# Global settings instance
settings = Settings()
