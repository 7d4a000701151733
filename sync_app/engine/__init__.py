"""
Sync engine package.

``init_sync_engine`` mounts the blueprint, the CLI group and the per-family
job services when ``SYNC_ENABLED`` is set, and registers a stub CLI group
that explains how to enable it otherwise.
"""

from __future__ import annotations

from typing import Any

from celery.signals import worker_shutdown
from flask import Flask

from sync_app.utils.sync import get_job_families, is_sync_enabled, is_worker_enabled

from . import container
from .celery_app import SYNC_EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import get_disabled_sync_group, sync_cli
from .container import (
    get_job_service,
    get_job_services,
    register_export_renderer,
    register_thumbnail_generator,
    set_record_source_factory,
)
from .jobs import DEFAULT_FAMILIES, UnknownJobFamilyError
from .jobs.queue import shutdown_all
from .views import sync_blueprint

__all__ = [
    "SYNC_EXTENSION_KEY",
    "get_celery_app",
    "get_job_service",
    "get_job_services",
    "init_sync_engine",
    "register_export_renderer",
    "register_thumbnail_generator",
    "set_record_source_factory",
    "shutdown_sync_engine",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        SYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "families": (),
            "worker_enabled": False,
            "celery_app": None,
            "job_services": {},
            "_shutdown_connected": False,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = sync_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(sync_cli)
    else:
        app.cli.add_command(get_disabled_sync_group())


def _connect_worker_shutdown(app: Flask, state: dict[str, Any]) -> None:
    if state.get("_shutdown_connected"):
        return

    # Fires after the pool has stopped; nothing left to wait for.
    def _drain_job_services(sender=None, **kwargs):
        shutdown_all(list(state.get("job_services", {}).values()), timeout=0)

    state["_shutdown_handler"] = _drain_job_services
    worker_shutdown.connect(_drain_job_services, weak=False)
    state["_shutdown_connected"] = True


def init_sync_engine(app: Flask) -> None:
    """
    Conditionally mount the sync blueprint, CLI and job services.

    State lives in ``app.extensions['sync']`` for reuse by the CLI, views and
    Celery tasks.
    """
    enabled = is_sync_enabled(app)
    families = get_job_families(app)
    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "families": families,
            "worker_enabled": is_worker_enabled(app),
        }
    )

    if not enabled:
        state["job_services"] = {}
        _set_cli(app, enabled=False)
        app.logger.info("Sync engine disabled via SYNC_ENABLED flag; skipping registration.")
        return

    unknown = [name for name in families if name not in DEFAULT_FAMILIES]
    if unknown:
        raise UnknownJobFamilyError(", ".join(unknown))

    celery_app = ensure_celery_app(app, state)
    services = container.build_job_services(app, families, celery_app)
    for service in services.values():
        service.initialize()
    state["job_services"] = services
    _connect_worker_shutdown(app, state)

    if sync_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(sync_blueprint)
    elif sync_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Sync blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)

    app.logger.info(
        "Sync engine enabled with job families: %s",
        ", ".join(families) or "none",
        extra={"sync_ready_families": [name for name, service in services.items() if service.is_ready()]},
    )


def shutdown_sync_engine(app: Flask) -> None:
    """Drain every job service of ``app``; later calls are no-ops."""
    shutdown_all(list(get_job_services(app).values()))
