from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PostgresSettings(BaseSettings):
    user: str = "admin"
    password: str = "admin"
    host: str = "localhost"
    port: int = 5432
    database: str = "datasets_db"
    url: str | None = None

    model_config = SettingsConfigDict(env_prefix="POSTGRES_", extra="ignore")

    @property
    def async_url(self) -> str:
        if self.url:
            return self.url
        return (
            f"postgresql+psycopg_async://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class AuthSettings(BaseSettings):
    secret: str = "secret"
    algorithm: str = "HS256"
    expires_minutes: int = 60

    model_config = SettingsConfigDict(env_prefix="JWT_", extra="ignore")


class KafkaSettings(BaseSettings):
    bootstrap_servers: str = "kafka:9092"
    topic: str = "dataset-imports"
    security_protocol: str = "PLAINTEXT"
    username: str | None = None
    password: str | None = None
    enqueue_attempts: int = 3
    send_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(env_prefix="KAFKA_", extra="ignore")


class S3Settings(BaseSettings):
    bucket: str
    endpoint_url: str
    access_key_id: str
    secret_access_key: str
    region: str = "us-east-1"
    upload_url_expires_seconds: int = 900
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(env_prefix="S3_", extra="ignore")


class Settings(BaseSettings):
    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    s3: S3Settings = Field(default_factory=S3Settings)

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


settings = Settings()
