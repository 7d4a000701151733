"""
Sync blueprint: JSON endpoints for the schema graph, mapping validation, job
polling and webhook intake.
"""

from __future__ import annotations

import uuid
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request, send_file
from werkzeug.exceptions import BadRequest

from sync_app.engine import container
from sync_app.engine.jobs import SYNC, JobNotFoundError, JobQueueError, UnknownJobFamilyError
from sync_app.engine.mapping import MappingNotFoundError
from sync_app.engine.pipeline import SYNC_WEBHOOK, resource_for_topic, verify_signature
from sync_app.models import JobStatus

from .celery_app import DEFAULT_QUEUE_NAME, SYNC_EXTENSION_KEY, get_celery_app

sync_blueprint = Blueprint("sync", __name__, url_prefix="/sync")

TOPIC_HEADER = "X-Shopify-Topic"
HMAC_HEADER = "X-Shopify-Hmac-Sha256"
WEBHOOK_ID_HEADER = "X-Shopify-Webhook-Id"


def _json_error(message: str, http_status: HTTPStatus, **extra):
    return jsonify({"error": message, **extra}), http_status


def _request_json() -> dict:
    try:
        payload = request.get_json(silent=False)
    except BadRequest:
        payload = None
    return payload if isinstance(payload, dict) else {}


@sync_blueprint.get("/health")
def sync_healthcheck():
    """
    Lightweight health endpoint proving the sync blueprint mounted correctly.
    """
    state = current_app.extensions.get(SYNC_EXTENSION_KEY, {})
    services = container.get_job_services(current_app)
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": state.get("enabled", False),
                "families": list(state.get("families", ())),
                "queues_ready": {name: service.is_ready() for name, service in services.items()},
                "running_syncs": [
                    {"mapping_id": entry.mapping_id, "sync_type": entry.sync_type, "started_at": entry.started_at.isoformat()}
                    for entry in container.get_running_registry(current_app).snapshot()
                ],
            }
        ),
        200,
    )


@sync_blueprint.get("/worker_health")
def sync_worker_health():
    """
    Validate worker availability via the heartbeat task.
    """
    state = current_app.extensions.get(SYNC_EXTENSION_KEY, {})
    enabled = state.get("enabled", False)
    worker_enabled = state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "sync_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set SYNC_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        payload["status"] = "ok"
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # broker and backend errors surface as a failed check
        current_app.logger.exception("Sync worker health check failed.")
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


# -------------------------------------------------------------------- schema


@sync_blueprint.get("/graph")
def schema_graph():
    connection = request.args.get("connectionId") or container.connection_id(current_app)
    graph = container.build_graph_builder(current_app).build(connection)
    if graph is None:
        return _json_error("Schema not introspected for this connection", HTTPStatus.NOT_FOUND, connectionId=connection)
    return jsonify(graph.to_dict())


@sync_blueprint.get("/mappings")
def list_mappings():
    configs = container.build_mapping_service(current_app).list()
    return jsonify({"mappings": [config.to_dict() for config in configs]})


@sync_blueprint.post("/mappings/<mapping_id>/validate")
def validate_mapping(mapping_id: str):
    try:
        config = container.build_mapping_service(current_app).require(mapping_id)
    except MappingNotFoundError as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    result = container.validate_mapping(current_app, config)
    return jsonify(result.to_dict())


# ---------------------------------------------------------------------- jobs


def _job_response(job, status: HTTPStatus = HTTPStatus.OK):
    payload = job.as_dict()
    payload["poll_url"] = f"{sync_blueprint.url_prefix}/jobs/{job.id}"
    return jsonify(payload), status


@sync_blueprint.post("/jobs/<family>")
def create_job(family: str):
    """
    Create a job and hand it to the broker.

    When the queue is not ready (or the broker rejects the message) the job
    runs inline before the response is sent.
    """
    try:
        service = container.get_job_service(current_app, family)
    except UnknownJobFamilyError:
        return _json_error(f"Unknown job family '{family}'", HTTPStatus.NOT_FOUND)

    payload = _request_json()
    triggered_by = request.headers.get("X-Triggered-By") or payload.get("userId")
    job = service.store.create(family, payload, triggered_by=triggered_by)
    inline = not service.is_ready()
    try:
        service.enqueue(job_id=job.id)
    except JobQueueError as exc:
        current_app.logger.warning(
            "Enqueue failed; processing inline",
            extra={"sync_job_id": job.id, "sync_job_family": family, "sync_error": str(exc)},
        )
        inline = True
    if inline:
        service.process(job.id)
    return _job_response(service.store.require(job.id), HTTPStatus.ACCEPTED)


@sync_blueprint.get("/jobs/stats")
def job_stats():
    services = container.get_job_services(current_app)
    return jsonify({"families": [service.get_stats() for service in services.values()]})


@sync_blueprint.get("/jobs/<int:job_id>")
def job_status(job_id: int):
    try:
        job = container.build_job_store(current_app).require(job_id)
    except JobNotFoundError as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    return _job_response(job)


@sync_blueprint.post("/jobs/<int:job_id>/cancel")
def cancel_job(job_id: int):
    store = container.build_job_store(current_app)
    try:
        job = store.require(job_id)
        service = container.get_job_service(current_app, job.family)
    except (JobNotFoundError, UnknownJobFamilyError) as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    if not service.cancel(job_id):
        return _json_error(f"Job {job_id} can no longer be cancelled", HTTPStatus.CONFLICT, status=job.status.value)
    return _job_response(store.require(job_id))


@sync_blueprint.get("/jobs/<int:job_id>/download")
def download_job_output(job_id: int):
    store = container.build_job_store(current_app)
    try:
        job = store.require(job_id)
    except JobNotFoundError as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    if job.status != JobStatus.COMPLETED or not job.output_location:
        return _json_error("Job output is not available", HTTPStatus.NOT_FOUND, status=job.status.value)
    storage = container.get_artifact_storage(current_app)
    if not storage.exists(job.output_location):
        return _json_error("Job output file is missing", HTTPStatus.GONE)
    return send_file(
        storage.path_for(job.output_location),
        as_attachment=True,
        download_name=job.output_filename or f"job-{job.id}",
    )


# ------------------------------------------------------------------ webhooks


def _webhook_job_response(service, job_id: int, webhook_id: str):
    """Run an already-created webhook job inline and report it like a direct delivery."""
    outcome = service.process(job_id)
    job = service.store.require(job_id)
    success = outcome.status == JobStatus.COMPLETED.value
    body = {"success": success, **(job.metrics_json or {}), "queued": False, "webhookId": webhook_id, "jobId": job_id}
    if not success:
        body["errors"] = [outcome.error or job.error_message or "Webhook job failed"]
    return jsonify(body), HTTPStatus.OK if success else HTTPStatus.INTERNAL_SERVER_ERROR


@sync_blueprint.route("/webhooks", methods=["HEAD"])
def webhook_head():
    return "", 200


@sync_blueprint.post("/webhooks")
def receive_webhook():
    secret = current_app.config.get("SYNC_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.error("SYNC_WEBHOOK_SECRET is not configured; rejecting webhook.")
        return _json_error("Webhook secret not configured", HTTPStatus.INTERNAL_SERVER_ERROR)

    body = request.get_data(cache=True)
    signature = request.headers.get(HMAC_HEADER)
    if not signature:
        return _json_error("Missing HMAC signature", HTTPStatus.UNAUTHORIZED)
    if not verify_signature(body, signature, secret):
        return _json_error("Invalid HMAC signature", HTTPStatus.UNAUTHORIZED)

    payload = _request_json()
    topic = request.headers.get(TOPIC_HEADER) or "unknown"
    webhook_id = request.headers.get(WEBHOOK_ID_HEADER) or str(uuid.uuid4())
    if resource_for_topic(topic) is None:
        current_app.logger.info("Ignoring webhook for unhandled topic", extra={"sync_topic": topic})
        return jsonify({"success": True, "ignored": True, "topic": topic, "webhookId": webhook_id})

    service = container.get_job_services(current_app).get(SYNC)
    if service is not None and service.is_ready():
        job = service.store.create(
            SYNC,
            {"kind": SYNC_WEBHOOK, "topic": topic, "payload": payload, "webhookId": webhook_id},
            triggered_by="webhook",
        )
        try:
            service.enqueue(job_id=job.id)
        except JobQueueError as exc:
            current_app.logger.warning(
                "Webhook enqueue failed; processing inline",
                extra={"sync_job_id": job.id, "sync_error": str(exc)},
            )
            return _webhook_job_response(service, job.id, webhook_id)
        return jsonify({"success": True, "queued": True, "webhookId": webhook_id, "jobId": job.id})

    result = container.build_webhook_processor(current_app).process(topic, payload)
    status = HTTPStatus.OK if result.success else HTTPStatus.INTERNAL_SERVER_ERROR
    return jsonify({"queued": False, "webhookId": webhook_id, **result.to_dict()}), status
