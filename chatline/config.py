from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    # Chat server
    chatline_base_url: str = "http://localhost:8080/api"
    chatline_auth_token: str | None = None

    # Logging
    chatline_log_level: str = "info"

    # HTTP client timeouts (seconds)
    chatline_http_connect_timeout: float = 5.0
    chatline_http_read_timeout: float = 120.0
    chatline_request_timeout: float = 30.0

    model_config = {"env_prefix": "", "case_sensitive": False, "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
