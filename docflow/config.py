"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Dict, List, Optional


class DocflowConfig(BaseSettings):
    """Docflow workflow engine configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "docflow.db"
    sqlite_busy_timeout_ms: int = 5000

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Workflow rules
    default_sla_hours: int = 24
    escalation_priority_step: int = 10
    manager_roles: List[str] = ["admin", "manager"]

    # SLA monitoring
    # Percent of SLA elapsed -> warn only when the SLA is longer than this many hours
    sla_warning_thresholds: Dict[int, int] = {50: 8, 75: 2}
    sla_sweep_enabled: bool = True

    # Scheduler / worker configuration
    worker_poll_interval_seconds: float = 5.0
    job_max_attempts: int = 3
    job_retry_delay_seconds: int = 60
    job_batch_size: int = 100
    job_lease_seconds: int = 300  # Running jobs older than this are re-queued

    # Optimistic concurrency
    cas_max_retries: int = 3

    # Notification configuration
    notification_channels: List[str] = ["in_app", "log"]
    notification_webhook_url: str = ""  # Empty = webhook channel disabled
    notification_webhook_timeout: float = 10.0
    notification_queue_enabled: bool = True  # Deliver through the job scheduler instead of inline

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "DOCFLOW_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = DocflowConfig()


def get_config() -> DocflowConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> DocflowConfig:
    """Reload configuration from environment"""
    global config
    config = DocflowConfig()
    return config
