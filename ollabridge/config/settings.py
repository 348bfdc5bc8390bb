"""Runtime settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="OLLABRIDGE_", env_file=".env", extra="ignore")

    app_name: str = "OllaBridge"
    env: str = "dev"
    log_level: str = "info"
    # DEBUG 级别下是否打印完整请求正文；False 时只打 method/path/headers + body_size
    log_full_request_body: bool = False
    log_dir: str = "logs"
    host: str = "127.0.0.1"
    port: int = 3000

    # Bearer token expected in the Authorization header. Empty rejects every request.
    api_key: str = ""

    backend_base_url: str = "http://localhost:11434"
    backend_chat_path: str = "/api/chat"
    backend_tags_path: str = "/api/tags"
    backend_timeout_seconds: float = Field(default=300.0, gt=0)
    backend_max_connections: int = 100
    backend_max_keepalive_connections: int = 20

    # owned_by label on every model returned by /v1/models
    model_owner: str = "ollama"


settings = Settings()
