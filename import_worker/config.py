from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class KafkaSettings(BaseSettings):
    bootstrap_servers: str = "kafka:9092"
    topic: str = "dataset-imports"
    group_id: str = "import-worker"
    auto_offset_reset: str = "earliest"
    security_protocol: str = "PLAINTEXT"
    username: str | None = None
    password: str | None = None

    model_config = SettingsConfigDict(env_prefix="KAFKA_", extra="ignore", env_file=".env")


class ImportSettings(BaseSettings):
    max_entries: int = 100_000
    reconcile_interval_seconds: float = 60.0
    pending_timeout_seconds: int = 300
    processing_timeout_seconds: int = 1800

    model_config = SettingsConfigDict(env_prefix="IMPORT_", extra="ignore", env_file=".env")


class ApiSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8005

    model_config = SettingsConfigDict(env_prefix="WORKER_", extra="ignore", env_file=".env")


class Settings(BaseSettings):
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    importer: ImportSettings = Field(default_factory=ImportSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


settings = Settings()
