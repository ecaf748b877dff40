"""
Clinician Assignment Agent - Configuration Module

This module centralizes all environment-based configuration for the
assignment microservice. Every tunable constant of the cost model and the
batch rebalancer is externalized through environment variables, so the
clinic can retune the engine without a code change.

================================================================================
COST MODEL OVERVIEW
================================================================================

For each (patient requirement, clinician) pair the engine scores, in seconds:

    cost = mismatch + estimated_wait + load_penalty + shift_penalty

    mismatch        MISMATCH_PENALTY_SECONDS when specialties differ.
                    Must dominate the other terms.
    estimated_wait  current load x clinician's average service time
                    (DEFAULT_SERVICE_TIME_SECONDS without history).
    load_penalty    LOAD_PENALTY_WEIGHT_SECONDS per patient above the
                    average load of active clinicians.
    shift_penalty   SHIFT_PENALTY_SECONDS when the clinician's shift ends in
                    less than SHIFT_PENALTY_THRESHOLD_SECONDS.

================================================================================
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Pydantic Settings automatically reads from environment variables,
    with support for .env files and type validation.
    """

    # ==========================================================================
    # SERVICE IDENTIFICATION
    # ==========================================================================
    service_name: str = Field(
        default="clinician-assignment-agent",
        description="Unique identifier for this microservice"
    )
    service_version: str = Field(
        default="1.0.0",
        description="Semantic version of this agent"
    )
    environment: str = Field(
        default="development",
        description="Runtime environment (development, staging, production)"
    )

    # ==========================================================================
    # COST MODEL CONFIGURATION
    # ==========================================================================
    mismatch_penalty_seconds: float = Field(
        default=10000.0,
        ge=0,
        description="Penalty for a specialty mismatch (dominates other terms)"
    )
    load_penalty_weight_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Seconds added per patient above the active average load"
    )
    default_service_time_seconds: float = Field(
        default=900.0,
        gt=0,
        description="Clinic-wide average consultation length without history"
    )
    shift_penalty_threshold_seconds: float = Field(
        default=1800.0,
        ge=0,
        description="Remaining shift below which the shift penalty applies"
    )
    shift_penalty_seconds: float = Field(
        default=1200.0,
        ge=0,
        description="Penalty for assigning to a clinician near shift end"
    )

    # ==========================================================================
    # BATCH REBALANCER CONFIGURATION
    # ==========================================================================
    max_parallel_waiting: int = Field(
        default=3,
        ge=1,
        le=50,
        description="Waiting-queue slots each clinician exposes to the batch matcher"
    )
    rebalance_interval_seconds: int = Field(
        default=60,
        ge=0,
        description="Period of the background rebalance task (0 disables it)"
    )

    # ==========================================================================
    # ROSTER CONFIGURATION
    # ==========================================================================
    roster_file: Optional[str] = Field(
        default=None,
        description="JSON list of roster entries loaded at startup"
    )

    # ==========================================================================
    # API CONFIGURATION
    # ==========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8006,
        description="API server port"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # ==========================================================================
    # LOGGING CONFIGURATION
    # ==========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_format: str = Field(
        default="text",
        description="Log format (json, text)"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached Settings instance.

    Using lru_cache ensures we only parse environment variables once,
    improving performance and consistency across the application.
    """
    return Settings()


@dataclass(frozen=True)
class AssignmentConfig:
    """Tunable constants consumed by the cost model and the rebalancer."""
    mismatch_penalty_seconds: float = 10000.0
    load_penalty_weight_seconds: float = 300.0
    default_service_time_seconds: float = 900.0
    shift_penalty_threshold_seconds: float = 1800.0
    shift_penalty_seconds: float = 1200.0
    max_parallel_waiting: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "AssignmentConfig":
        """Build the engine configuration from environment settings."""
        return cls(
            mismatch_penalty_seconds=settings.mismatch_penalty_seconds,
            load_penalty_weight_seconds=settings.load_penalty_weight_seconds,
            default_service_time_seconds=settings.default_service_time_seconds,
            shift_penalty_threshold_seconds=settings.shift_penalty_threshold_seconds,
            shift_penalty_seconds=settings.shift_penalty_seconds,
            max_parallel_waiting=settings.max_parallel_waiting,
        )


# ==========================================================================
# CONVENIENCE EXPORTS
# ==========================================================================
settings = get_settings()
