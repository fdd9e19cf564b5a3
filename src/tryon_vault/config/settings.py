from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
# Try multiple paths to find .env file
import pathlib
project_root = pathlib.Path(__file__).parent.parent.parent.parent
env_paths = [
    project_root / ".env",
    pathlib.Path.cwd() / ".env",
    pathlib.Path(".env")
]

for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break


class Settings(BaseSettings):
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=5000, env="PORT")
    debug: bool = Field(default=False, env="DEBUG")
    log_dir: Optional[str] = Field(default=None, env="LOG_DIR")
    log_max_bytes: int = Field(default=10 * 1024 * 1024, env="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=5, env="LOG_BACKUP_COUNT")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        env="ALLOWED_ORIGINS"
    )

    # Credential encryption
    # Without ENCRYPTION_KEY a random per-process key is used and sessions do not survive a restart
    encryption_key: Optional[str] = Field(default=None, env="ENCRYPTION_KEY")
    require_encryption_key: bool = Field(default=False, env="REQUIRE_ENCRYPTION_KEY")

    # Session vault
    session_max_age_seconds: int = Field(default=24 * 60 * 60, env="SESSION_MAX_AGE_SECONDS")
    max_sessions: int = Field(default=1000, env="MAX_SESSIONS")
    session_cleanup_interval_seconds: int = Field(default=60 * 60, env="SESSION_CLEANUP_INTERVAL_SECONDS")
    session_token_bytes: int = Field(default=32, env="SESSION_TOKEN_BYTES")
    credential_prefix: str = Field(default="r8_", env="CREDENTIAL_PREFIX")
    credential_min_length: int = Field(default=10, env="CREDENTIAL_MIN_LENGTH")

    # Replicate API
    replicate_api_base: str = Field(default="https://api.replicate.com/v1", env="REPLICATE_API_BASE")
    prediction_endpoint_template: str = Field(
        default="/models/{model_ref}/predictions",
        env="PREDICTION_ENDPOINT_TEMPLATE"
    )
    create_timeout_seconds: float = Field(default=30.0, env="CREATE_TIMEOUT_SECONDS")
    get_timeout_seconds: float = Field(default=15.0, env="GET_TIMEOUT_SECONDS")
    cancel_timeout_seconds: float = Field(default=10.0, env="CANCEL_TIMEOUT_SECONDS")

    # Prediction polling
    poll_interval_seconds: float = Field(default=2.5, env="POLL_INTERVAL_SECONDS")
    poll_max_attempts: int = Field(default=120, env="POLL_MAX_ATTEMPTS")
    upstream_max_retries: int = Field(default=3, env="UPSTREAM_MAX_RETRIES")
    upstream_backoff_base_seconds: float = Field(default=1.0, env="UPSTREAM_BACKOFF_BASE_SECONDS")
    upstream_backoff_max_seconds: float = Field(default=60.0, env="UPSTREAM_BACKOFF_MAX_SECONDS")

    # Local rate limits, kept well below Replicate's 600 predictions/min
    auth_rate_limit: int = Field(default=50, env="AUTH_RATE_LIMIT")
    auth_rate_window_seconds: float = Field(default=15 * 60, env="AUTH_RATE_WINDOW_SECONDS")
    session_rate_limit: int = Field(default=500, env="SESSION_RATE_LIMIT")
    session_rate_window_seconds: float = Field(default=60, env="SESSION_RATE_WINDOW_SECONDS")
    upstream_rate_limit: int = Field(default=100, env="UPSTREAM_RATE_LIMIT")
    upstream_rate_window_seconds: float = Field(default=60, env="UPSTREAM_RATE_WINDOW_SECONDS")
    # Catch-all limit over every route, including health and unknown paths
    general_rate_limit: int = Field(default=1000, env="GENERAL_RATE_LIMIT")
    general_rate_window_seconds: float = Field(default=15 * 60, env="GENERAL_RATE_WINDOW_SECONDS")

    class Config:
        env_file = [str(p) for p in env_paths if p.exists()]
        case_sensitive = False
        extra = "ignore"  # Allow extra environment variables

    def get_allowed_origins(self) -> List[str]:
        """Get allowed CORS origins as a list."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


settings = Settings()
