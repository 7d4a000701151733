"""
Prometheus metrics exposition and an application health check.
"""

from __future__ import annotations

from datetime import datetime, timezone

from flask import Flask, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from sync_app.models import db


def check_database() -> tuple[bool, str | None]:
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        return False, str(exc)
    return True, None


def init_monitoring(app: Flask) -> None:
    """
    Mount the metrics and health endpoints when ``MONITORING_ENABLED`` is set.
    """
    if not app.config.get("MONITORING_ENABLED", False):
        app.logger.debug("Monitoring disabled; metrics endpoint not registered.")
        return

    metrics_endpoint = app.config.get("METRICS_ENDPOINT", "/metrics")
    health_endpoint = app.config.get("HEALTH_CHECK_ENDPOINT", "/health")

    def metrics_view():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    def health_view():
        database_ok, error = check_database()
        payload = {
            "status": "ok" if database_ok else "error",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "app_version": app.config.get("APP_VERSION"),
            "database": "ok" if database_ok else "error",
        }
        if error:
            payload["error"] = error
        return jsonify(payload), 200 if database_ok else 503

    app.add_url_rule(metrics_endpoint, "monitoring_metrics", metrics_view, methods=["GET"])
    app.add_url_rule(health_endpoint, "monitoring_health", health_view, methods=["GET"])
    app.logger.info(
        "Monitoring endpoints registered",
        extra={"metrics_endpoint": metrics_endpoint, "health_endpoint": health_endpoint},
    )
