"""
Runtime configuration, read from the environment (and a local .env file).
"""

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")


class Settings(BaseModel):
    database_url: str = Field("mongodb://localhost:27017/?replicaSet=rs0", description="MongoDB connection string")
    database_name: str = Field("school_records", description="MongoDB database name")
    store_backend: Literal["mongo", "memory"] = Field("mongo", description="Document store adapter to use")
    pass_mark: float = Field(50, ge=0, description="Total marks needed for a Pass")
    store_timeout_ms: int = Field(5000, gt=0, description="Upper bound for any single store call")
    transaction_retries: int = Field(3, ge=0, description="Retries after a transient store failure")
    retry_backoff_seconds: float = Field(0.05, ge=0, description="First retry delay, doubled on each attempt")
    log_level: str = Field("INFO")


def load_settings() -> Settings:
    values = {
        "database_url": os.getenv("DATABASE_URL"),
        "database_name": os.getenv("DATABASE_NAME"),
        "store_backend": os.getenv("STORE_BACKEND"),
        "pass_mark": os.getenv("PASS_MARK"),
        "store_timeout_ms": os.getenv("STORE_TIMEOUT_MS"),
        "transaction_retries": os.getenv("TRANSACTION_RETRIES"),
        "retry_backoff_seconds": os.getenv("RETRY_BACKOFF_SECONDS"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    return Settings(**{k: v for k, v in values.items() if v is not None})
