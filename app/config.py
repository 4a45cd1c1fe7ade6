from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./line_messages.db"
    debug: bool = False
    log_level: str = "INFO"

    line_channel_secret: Optional[str] = None
    line_channel_access_token: Optional[str] = None
    line_push_url: str = "https://api.line.me/v2/bot/message/push"
    line_push_timeout_seconds: float = 20.0

    dify_chat_api_key: Optional[str] = None
    dify_knowledge_key: Optional[str] = None
    dify_api_endpoint: str = "https://api.dify.ai/v1"
    dify_timeout_seconds: float = 300.0
    dify_enabled_variables: Optional[str] = None
    dify_premium_features_enabled: bool = False

    admin_user: Optional[str] = None
    admin_password: Optional[str] = None

    webhook_max_body_bytes: int = 8 * 1024 * 1024

    workflow_worker_enabled: bool = True
    workflow_worker_interval_seconds: float = 2.0
    workflow_process_limit: int = 10
    workflow_max_attempts: int = 5
    workflow_retry_backoff_seconds: float = 2.0
    workflow_stale_seconds: int = 600

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
