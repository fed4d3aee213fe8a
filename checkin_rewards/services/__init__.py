"""
Service Layer Package

- CheckinService: daily check-in orchestration and read paths
- CheckinContainer / create_checkin_service: explicit wiring from config
"""

from checkin_rewards.services.checkin_service import CheckinService
from checkin_rewards.services.container import (
    CheckinContainer,
    create_checkin_service,
    create_postgres_container,
    validate_checkin_config,
)

__all__ = [
    "CheckinService",
    "CheckinContainer",
    "create_checkin_service",
    "create_postgres_container",
    "validate_checkin_config",
]
