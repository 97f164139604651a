import os
from dataclasses import dataclass, field
from typing import List


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: str = "postgresql://postgres:postgres@db:5432/finance_db"
    rabbitmq_url: str = ""
    enrollment_queue: str = "finance_enrollment_queue"
    enable_enrollment_consumer: bool = False
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    environment: str = "production"
    lock_timeout_ms: int = 5000
    transaction_retries: int = 3
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @property
    def debug(self) -> bool:
        return self.environment == "development"


def load_settings() -> Settings:
    origins = os.getenv("CORS_ORIGINS", "*")
    return Settings(
        database_url=os.getenv("DATABASE_URL", "postgresql://postgres:postgres@db:5432/finance_db"),
        rabbitmq_url=os.getenv("RABBITMQ_URL", ""),
        enrollment_queue=os.getenv("ENROLLMENT_QUEUE", "finance_enrollment_queue"),
        enable_enrollment_consumer=_flag("ENABLE_ENROLLMENT_CONSUMER"),
        jwt_secret=os.getenv("JWT_SECRET", "change-me"),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        environment=os.getenv("ENVIRONMENT", "production"),
        lock_timeout_ms=int(os.getenv("LOCK_TIMEOUT_MS", "5000")),
        transaction_retries=int(os.getenv("TRANSACTION_RETRIES", "3")),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
    )
