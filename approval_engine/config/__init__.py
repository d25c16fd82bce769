"""Configuration module for the approval engine."""

from approval_engine.config.settings import (
    EngineSettings,
    Environment,
    PostgresSettings,
    RedisSettings,
    Settings,
    SubjectSettings,
    SweepSettings,
    TimeoutAction,
    get_settings,
)

__all__ = [
    "EngineSettings",
    "Environment",
    "PostgresSettings",
    "RedisSettings",
    "Settings",
    "SubjectSettings",
    "SweepSettings",
    "TimeoutAction",
    "get_settings",
]
