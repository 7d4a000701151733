"""
Utility helpers for sync feature flag checks.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_sync_enabled(app=None) -> bool:
    """Return True when the sync feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("SYNC_ENABLED", False))


def is_worker_enabled(app=None) -> bool:
    config = _get_config(app)
    return bool(config.get("SYNC_WORKER_ENABLED", False))


def get_job_families(app=None) -> Tuple[str, ...]:
    """Return the configured job family names."""
    config = _get_config(app)
    families: Iterable[str] = config.get("SYNC_JOB_FAMILIES", ())
    if isinstance(families, str):
        families = families.split(",")
    return tuple(name.strip().lower() for name in families if name and name.strip())
