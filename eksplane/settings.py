from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    database_url: str = "sqlite:///./eksplane.db"

    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""

    # stack and EKS update polling
    poll_interval_seconds: float = 30
    poll_max_attempts: int = 120

    # 0 means no configured default; the AMI size rule applies
    default_node_volume_size: int = 0

    managed_addons: list[str] = Field(
        default_factory=lambda: ["vpc-cni", "coredns", "kube-proxy"]
    )

    node_pool_template_path: str = ""

    worker_concurrency: int = 4
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
