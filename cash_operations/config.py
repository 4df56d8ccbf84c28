"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import Field
from pydantic_settings import BaseSettings
from typing import Dict, Optional


class CashOperationsConfig(BaseSettings):
    """Cash operations store configuration"""

    # Storage configuration
    storage_type: str = "memory"  # memory, sqlite or postgresql
    database_url: str = ""
    sqlite_path: str = "cash_operations.db"
    database_pool_size: int = 10
    database_command_timeout: float = 60.0

    # Table layout
    operations_table: str = "OperationsCash"  # holds both mirrors
    index_table: str = "OperationsCashHashIndex"
    scan_chunk_size: int = Field(default=1000, ge=1)
    max_concurrent_reads: Optional[int] = Field(default=None, ge=1)  # None = unbounded

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Forward cash-out report
    report_asset_ids: Dict[str, str] = {}  # alias -> asset id, JSON in env
    one_year_asset_key: str = "LKK1Y"
    report_output_dir: str = "."

    class Config:
        env_prefix = "CASHOPS_"
        env_file = ".env"
        case_sensitive = False

    @property
    def one_year_asset_id(self) -> Optional[str]:
        """Asset id settled after one year, if configured"""
        return self.report_asset_ids.get(self.one_year_asset_key)


# Global configuration instance
config = CashOperationsConfig()


def get_config() -> CashOperationsConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> CashOperationsConfig:
    """Reload configuration from environment"""
    global config
    config = CashOperationsConfig()
    return config
