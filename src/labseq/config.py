from pydantic import Field
from pydantic_settings import BaseSettings


class Config(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False
    cors_origins: list[str] = []
    timezone: str | None = None  # IANA zone for day/month/year scopes, e.g. Asia/Kolkata; None = system local
    default_mode: str = "OPD"  # Mode that adds no segment to counter names
    collision_retry_limit: int = Field(25, ge=1)  # Insert attempts before giving up on a unique identifier

    model_config = {
        "env_file": [".env"],
        "env_prefix": "LABSEQ_",
        "extra": "ignore",
    }
