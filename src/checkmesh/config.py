from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    app_name: str = "CheckMesh"
    app_version: str = "0.1.0"
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///./checkmesh.db"

    # Probing regions, one transport channel each
    regions: list[str] = ["us-east-1", "eu-west-1", "ap-south-1"]

    # Scheduler
    tick_seconds: int = 60
    publish_batch_size: int = 10  # max messages per publish call
    publish_timeout: float = 10.0  # seconds per region per tick
    publish_retries: int = 2
    publish_backoff: float = 0.5  # seconds, doubled per retry

    # Transport
    transport_backend: str = "memory"  # memory, stomp
    queue_prefix: str = "checkmesh.jobs"
    memory_queue_size: int = 10000
    stomp_host: str = "localhost"
    stomp_port: int = 61613
    stomp_user: str = ""
    stomp_password: str = ""
    stomp_use_ssl: bool = False

    # Workers
    embedded_workers: bool = True
    worker_batch_size: int = 10
    worker_poll_seconds: float = 1.0
    ingest_url: str = "http://localhost:8000/api/webhooks/monitor-results"
    report_timeout: float = 10.0

    # Probe executor
    probe_user_agent: str = "CheckMesh Monitor/1.0"
    probe_retry_enabled: bool = False  # single attempt per job unless enabled
    probe_retry_base_delay: float = 1.0
    probe_retry_max: int = 5
    probe_max_error_length: int = 500

    # Ingestion
    ingest_secret: str = "change-me-in-production-use-a-real-secret"

    # Notifications
    notification_throttle_minutes: int = 60
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_email: str = "alerts@checkmesh.app"
    smtp_use_tls: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
