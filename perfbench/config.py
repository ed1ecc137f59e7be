from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Config(BaseSettings):
    kube_context: Optional[str] = Field(default=None, env="KUBE_CONTEXT")
    kubectl_timeout_seconds: int = Field(default=60, env="KUBECTL_TIMEOUT_SECONDS")
    argocd_namespace: str = Field(default="argocd", env="ARGOCD_NAMESPACE")
    test_namespace: str = Field(default="test-apps", env="TEST_NAMESPACE")

    num_apps: int = Field(default=30, env="NUM_APPS")
    sync_timeout_seconds: int = Field(default=300, env="SYNC_TIMEOUT_SECONDS")
    poll_interval_seconds: float = Field(default=5.0, env="POLL_INTERVAL_SECONDS")
    create_concurrency: int = Field(default=8, env="CREATE_CONCURRENCY")
    refresh_burst: bool = Field(default=True, env="REFRESH_BURST")

    app_repo_url: str = Field(
        default="https://github.com/argoproj/argocd-example-apps", env="APP_REPO_URL"
    )
    app_path: str = Field(default="guestbook", env="APP_PATH")
    app_target_revision: str = Field(default="HEAD", env="APP_TARGET_REVISION")

    metrics_url: str = Field(default="http://localhost:8082/metrics", env="METRICS_URL")
    metrics_timeout_seconds: float = Field(default=10.0, env="METRICS_TIMEOUT_SECONDS")
    queue_metric: str = Field(default="workqueue_depth", env="QUEUE_METRIC")

    results_dir: Path = Field(default=Path("results"), env="RESULTS_DIR")

    disk_write_mb: int = Field(default=5000, env="DISK_WRITE_MB")
    disk_settle_seconds: float = Field(default=10.0, env="DISK_SETTLE_SECONDS")
    disk_write_timeout_seconds: float = Field(default=900.0, env="DISK_WRITE_TIMEOUT_SECONDS")

    log_format: str = Field(default="console", env="LOG_FORMAT")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
