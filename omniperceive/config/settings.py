"""
Centralized service configuration using Pydantic Settings.

These are process-level settings loaded from environment variables with
sensible defaults. Per-call detection options live in DetectConfig
(omniperceive.config.detect) and are seeded from here.
Use get_settings() to access the singleton settings instance.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Service settings with environment variable support.

    All settings can be overridden via environment variables.
    Example: DEFAULT_BACKEND=cuda MODEL_BASE_PATH=/models uvicorn omniperceive.main:app
    """

    # ==========================================================================
    # Logging
    # ==========================================================================
    log_level: str = Field(default='INFO', description='Root log level')

    json_logs: bool = Field(default=True, description='Emit JSON logs instead of console format')

    # ==========================================================================
    # Inference Runtime
    # ==========================================================================
    default_backend: str = Field(
        default='cpu', description='Compute backend: cpu, cuda, tensorrt or triton'
    )

    model_base_path: str = Field(
        default='models', description='Directory that relative model paths resolve against'
    )

    inference_workers: int = Field(
        default=4, ge=1, le=64, description='Thread pool size for local model sessions'
    )

    # ==========================================================================
    # Triton Configuration (backend=triton)
    # ==========================================================================
    triton_url: str = Field(
        default='triton-api:8001', description='Triton Inference Server gRPC endpoint'
    )

    triton_timeout: float = Field(default=30.0, description='gRPC timeout in seconds')

    # ==========================================================================
    # API Configuration
    # ==========================================================================
    max_file_size_mb: int = Field(default=50, description='Maximum upload file size in MB')

    slow_request_threshold_ms: int = Field(
        default=250, description='Log requests slower than this threshold'
    )

    api_title: str = Field(default='OmniPerceive API', description='API title for OpenAPI docs')

    api_version: str = Field(default='1.0.0', description='API version')

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @property
    def max_file_size_bytes(self) -> int:
        """Maximum file size in bytes."""
        return self.max_file_size_mb * 1024 * 1024

    class Config:
        env_prefix = ''
        case_sensitive = False
        extra = 'ignore'


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance (singleton pattern).

    Returns:
        Settings: Service settings
    """
    return Settings()
