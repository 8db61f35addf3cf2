"""Runtime settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GRAVITY_", extra="ignore")

    app_name: str = "GravityGate"
    log_level: str = "info"
    # DEBUG 下是否打印完整请求正文；False 时只打 method/path/headers + body_size
    log_full_request_body: bool = False
    host: str = "127.0.0.1"
    port: int = 8045

    log_dir: str = "logs"
    log_file_max_mb: int = 10
    log_file_backups: int = 10

    # 客户端静态密钥；空串表示不校验
    api_key: str = ""
    accounts_path: str = "config/accounts.json"

    upstream_timeout_seconds: float = 60.0
    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20


settings = Settings()
