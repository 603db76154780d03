"""
Configuration management for the sfsync metadata toolkit
Supports environment variables and .env files
"""
import os
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncConfig(BaseSettings):
    """sfsync configuration"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="SFSYNC_",
    )

    # Server Configuration
    mcp_server_name: str = Field(default="sfsync-metadata-server", description="MCP server name")
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    log_json: bool = Field(default=False, description="Emit structured JSON logs")

    # Local storage
    home_dir: str = Field(
        default=os.path.join(os.path.expanduser("~"), ".sfsync"),
        description="Directory holding config.json (project registry)"
    )
    workspace: str = Field(
        default=os.path.join(os.path.expanduser("~"), "workspace"),
        description="Directory holding one folder per project"
    )

    # API Configuration
    api_version: int = Field(default=46, description="Default Salesforce API version")
    request_timeout_seconds: int = Field(default=120, description="Default request timeout")
    query_batch_size: int = Field(default=2000, description="Sforce-Query-Options batch size")
    describe_concurrency: int = Field(default=30, description="Max in-flight describe calls")
    max_retries: int = Field(default=3, description="Maximum retry attempts for status polling")
    retry_backoff_seconds: float = Field(default=2.0, description="Retry backoff multiplier")

    # Deployment Configuration
    deploy_timeout_seconds: int = Field(default=600, description="Metadata deploy/retrieve timeout")
    deploy_poll_interval_seconds: int = Field(default=2, description="Deploy/retrieve status poll interval")

    # OAuth Configuration
    oauth_client_id: str = Field(default="PlatformCLI", description="Connected app client id")
    oauth_client_secret: Optional[str] = Field(default=None, description="Connected app client secret")


# Global configuration instance
_config: Optional[SyncConfig] = None


def get_config() -> SyncConfig:
    """Get global configuration instance (singleton pattern)"""
    global _config
    if _config is None:
        _config = SyncConfig()
    return _config


def reload_config() -> SyncConfig:
    """Reload configuration from environment/file"""
    global _config
    _config = SyncConfig()
    return _config
