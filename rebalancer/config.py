"""
Configuration management for the rebalancing engine
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Inventory Rebalancing Engine"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_to_file: bool = True

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./rebalancer.db"

    # Planner thresholds
    push_threshold_weeks: float = 2.0  # Below this weeks-of-cover a store is understocked
    surplus_threshold_weeks: float = 8.0  # Above this a store may give stock away laterally
    overload_utilization: float = 0.85
    has_space_utilization: float = 0.70
    velocity_epsilon: float = 0.01  # Floor for velocity in urgency = deficit / velocity
    size_fill_units: int = 1  # Minimum units sent to fill a broken size run
    lateral_same_tier_only: bool = True

    # Priority & impact
    lead_time_days: int = 7
    materiality_floor: float = 0.0  # Revenue at risk must exceed this for P1
    logistics_cost_per_unit: float = 0.0

    # Run lifecycle
    run_timeout_seconds: float = 300.0
    run_lock_ttl_seconds: int = 900  # Locks older than this are considered abandoned

    # Scheduler (time-triggered runs)
    enable_scheduler: bool = False
    allocation_schedule: str = "0 4 * * *"
    scheduler_timezone: str = "UTC"
    scheduled_tenants: str = ""  # Comma-separated tenant ids, e.g. "acme,globex"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def scheduled_tenant_ids(self) -> List[str]:
        return [t.strip() for t in self.scheduled_tenants.split(",") if t.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
