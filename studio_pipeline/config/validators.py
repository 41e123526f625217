"""Soft configuration checks that warn instead of failing startup."""

import warnings
from typing import Any, Dict, List

from studio_pipeline.domain.models import OPTIONAL_CATEGORIES, ReportCategory


def check_for_warnings(config_dict: Dict[str, Any]) -> List[str]:
    """
    Check raw configuration for settings that are valid but probably unwanted.

    Args:
        config_dict: Raw configuration dictionary

    Returns:
        List of warning messages
    """
    warning_messages = []

    orchestrator = config_dict.get("orchestrator") or {}
    if isinstance(orchestrator, dict):
        required = {c.value for c in ReportCategory} - {c.value for c in OPTIONAL_CATEGORIES}
        for name in orchestrator.get("disabled_categories") or []:
            if name in required:
                warning_messages.append(
                    f"Required category '{name}' is disabled; dashboard metrics depending on it will go stale"
                )

    watermarks = config_dict.get("watermarks") or {}
    if isinstance(watermarks, dict) and watermarks.get("overlap_days") == 0:
        warning_messages.append(
            "watermarks.overlap_days is 0; rows arriving late for the high-water date will be missed"
        )

    sources = config_dict.get("sources") or {}
    if isinstance(sources, dict):
        union = sources.get("union") or {}
        email = sources.get("email") or {}
        if (
            isinstance(union, dict)
            and isinstance(email, dict)
            and union.get("email_fallback", True)
            and not email.get("enabled", False)
        ):
            warning_messages.append(
                "sources.union.email_fallback is on but sources.email is disabled; "
                "queued Union.fit exports will fail their category"
            )

    server = config_dict.get("server") or {}
    if isinstance(server, dict) and isinstance(orchestrator, dict):
        stream_timeout = server.get("stream_timeout_seconds")
        stuck_after = orchestrator.get("stuck_after_minutes")
        if isinstance(stream_timeout, int) and isinstance(stuck_after, int) and stuck_after > 0:
            if stream_timeout < stuck_after * 60:
                warning_messages.append(
                    "server.stream_timeout_seconds is shorter than orchestrator.stuck_after_minutes; "
                    "clients may time out on runs that are still healthy"
                )

    return warning_messages


def emit_warnings(warning_messages: List[str]) -> None:
    """Emit warning messages using Python's warnings module."""
    for message in warning_messages:
        warnings.warn(message, UserWarning, stacklevel=2)
