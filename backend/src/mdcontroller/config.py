"""
Configuration settings for the MachineDeployment controller.
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Application
    APP_NAME: str = Field(default="machine-deployment-controller", description="Application name")
    APP_ENV: str = Field(default="dev", description="Environment: dev|staging|prod")

    # HTTP Configuration
    HTTP_PORT: int = Field(default=8002, description="Service port")

    # Kubernetes Configuration
    K8S_NAMESPACE: str = Field(default="default", description="Kubernetes namespace")
    K8S_CONTEXT: Optional[str] = Field(default=None, description="Kubernetes context")
    K8S_IN_CLUSTER: bool = Field(default=False, description="Running in cluster")
    API_GROUP: str = Field(default="cluster.k8s.io", description="API group of the machine resources")
    API_VERSION: str = Field(default="v1beta1", description="API version of the machine resources")

    # Controller Configuration
    WORKERS: int = Field(default=4, ge=1, description="Concurrent reconcile workers")
    RESYNC_PERIOD_SECS: float = Field(default=600.0, gt=0, description="Full resync period")
    BACKOFF_BASE_SECS: float = Field(default=0.005, gt=0, description="First retry delay after a transient error")
    BACKOFF_MAX_SECS: float = Field(default=1000.0, gt=0, description="Retry delay ceiling")
    VALIDATION_REQUEUE_SECS: float = Field(default=300.0, gt=0, description="Requeue delay for invalid specs")
    WATCH_TIMEOUT_SECS: int = Field(default=300, gt=0, description="Server-side watch timeout")

    # Service Configuration
    LOG_LEVEL: str = Field(default="info", description="Log level: info|debug|warning")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
