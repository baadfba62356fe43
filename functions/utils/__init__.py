"""Utility modules for Domux functions."""

from utils.pipeline_logger import (
    configure_logging,
    log_pipeline_start,
    log_pipeline_complete,
    log_pipeline_failed,
    log_stage,
)
from utils.timeout import with_timeout

__all__ = [
    "configure_logging",
    "log_pipeline_start",
    "log_pipeline_complete",
    "log_pipeline_failed",
    "log_stage",
    "with_timeout",
]
