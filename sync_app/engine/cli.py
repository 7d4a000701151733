"""
CLI commands for the sync engine (``flask sync ...``).
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Flask
from flask.cli import ScriptInfo

from sync_app.engine import container
from sync_app.engine.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from sync_app.engine.jobs import SYNC, JobNotFoundError, JobQueueError, UnknownJobFamilyError
from sync_app.engine.mapping import MappingLoadError, MappingNotFoundError
from sync_app.engine.pipeline import SYNC_FULL, SYNC_INCREMENTAL, SyncAlreadyRunningError
from sync_app.models import SchemaCacheCategory, db
from sync_app.utils.sync import get_job_families, is_sync_enabled


def _load_app(ctx: click.Context) -> Flask:
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_sync_enabled(app):
        raise click.ClickException("Sync is disabled via SYNC_ENABLED=false. Enable it to run sync CLI commands.")
    return app


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group(name="sync", invoke_without_command=True)
@click.pass_context
def sync_cli(ctx):
    """
    Sync engine management commands.

    Lists the enabled job families when invoked without a subcommand.
    """
    app = _load_app(ctx)
    if ctx.invoked_subcommand is None:
        families = get_job_families(app)
        if not families:
            click.echo("No job families configured.")
        else:
            click.echo("Enabled job families:")
            for family in families:
                click.echo(f"  - {family}")


def get_disabled_sync_group() -> click.Group:
    """
    Return a minimal command group that informs the operator sync is disabled.
    """

    @click.group(name="sync", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Sync commands are unavailable because SYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Sync Celery app is unavailable. Ensure SYNC_ENABLED=true and the "
            "sync engine initialises before running worker commands."
        )
    return celery_app


# --------------------------------------------------------------------- schema


@sync_cli.command("graph")
@click.option("--json", "as_json", is_flag=True, help="Print the full graph instead of a summary.")
@click.pass_context
def sync_graph(ctx, as_json: bool):
    """Build the entity/field graph from the cached remote schema."""
    app = _load_app(ctx)
    with app.app_context():
        connection = container.connection_id(app)
        graph = container.build_graph_builder(app).build(connection)
    if graph is None:
        raise click.ClickException(
            f"No cached schema for connection '{connection}'. Import an introspection payload first."
        )
    if as_json:
        _echo_json(graph.to_dict())
        return
    click.echo(
        f"Connection {connection}: {graph.entity_count} entities, {graph.field_count} fields, "
        f"{graph.relationship_count} relationships (API {graph.api_version})."
    )


@sync_cli.group(name="schema")
def schema_group():
    """Manage the cached remote schema."""


@schema_group.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def schema_import(ctx, path: Path):
    """
    Cache introspected types from a JSON file.

    The file holds ``{"types": [<__type>, ...], "objectTypes": [...],
    "metafieldDefinitions": {"Product": [...]}}``; a bare ``__type`` object
    is accepted too. ``objectTypes`` are nested types (SEO, Image) whose
    scalar fields are shown beneath the entity fields that use them.
    """
    app = _load_app(ctx)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path} is not valid JSON: {exc}") from exc

    if isinstance(payload, dict) and "data" in payload:
        payload = payload["data"]
    if isinstance(payload, dict) and "__type" in payload:
        payload = {"types": [payload["__type"]]}
    elif isinstance(payload, dict) and "name" in payload and "fields" in payload:
        payload = {"types": [payload]}
    if not isinstance(payload, dict) or not isinstance(payload.get("types"), list):
        raise click.ClickException("Expected a 'types' list or a single __type object.")

    with app.app_context():
        store = container.build_schema_cache_store(app)
        connection = container.connection_id(app)
        api_version = app.config.get("SYNC_API_VERSION")
        try:
            for type_payload in payload["types"]:
                store.store_introspection(connection, type_payload, api_version=api_version)
            for type_payload in payload.get("objectTypes") or ():
                store.store_introspection(
                    connection,
                    type_payload,
                    category=SchemaCacheCategory.OBJECT_TYPE,
                    api_version=api_version,
                )
            for owner, definitions in (payload.get("metafieldDefinitions") or {}).items():
                store.store_metafield_definitions(connection, owner, definitions)
        except ValueError as exc:
            db.session.rollback()
            raise click.ClickException(str(exc)) from exc
        db.session.commit()
    click.echo(f"Cached {len(payload['types'])} type(s) for connection '{connection}'.")


# ------------------------------------------------------------------- mappings


@sync_cli.group(name="mappings")
def mappings_group():
    """Import, list and validate mapping configs."""


@mappings_group.command("import")
@click.argument("paths", nargs=-1, type=click.Path(exists=True, path_type=Path))
@click.pass_context
def mappings_import(ctx, paths: tuple[Path, ...]):
    """
    Load YAML mapping configs into the database.

    Directories are expanded to their ``*.yaml``/``*.yml`` files; with no
    arguments ``SYNC_MAPPINGS_DIR`` is used.
    """
    app = _load_app(ctx)
    if not paths:
        configured = app.config.get("SYNC_MAPPINGS_DIR")
        if not configured:
            raise click.ClickException("No paths given and SYNC_MAPPINGS_DIR is not set.")
        paths = (Path(configured),)

    files: list[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(sorted(path.glob("*.yaml")) + sorted(path.glob("*.yml")))
        else:
            files.append(path)
    if not files:
        raise click.ClickException("No mapping files found.")

    with app.app_context():
        try:
            configs = container.build_mapping_service(app).import_files(files)
        except MappingLoadError as exc:
            db.session.rollback()
            raise click.ClickException(str(exc)) from exc
        db.session.commit()
    for config in configs:
        click.echo(f"Imported mapping {config.id} ({config.source_resource} -> {config.target_table})")


@mappings_group.command("list")
@click.pass_context
def mappings_list(ctx):
    app = _load_app(ctx)
    with app.app_context():
        configs = container.build_mapping_service(app).list()
    if not configs:
        click.echo("No mappings stored.")
        return
    for config in configs:
        click.echo(f"{config.id}\t{config.name}\t{config.source_resource} -> {config.target_table}")


@mappings_group.command("validate")
@click.argument("mapping_id")
@click.pass_context
def mappings_validate(ctx, mapping_id: str):
    """Validate a stored mapping against the target database and cached schema."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            config = container.build_mapping_service(app).require(mapping_id)
        except MappingNotFoundError as exc:
            raise click.ClickException(str(exc)) from exc
        result = container.validate_mapping(app, config)
    _echo_json(result.to_dict())
    if not result.valid:
        ctx.exit(1)


# ------------------------------------------------------------------------ run


def _parse_since(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise click.BadParameter(f"'{value}' is not an ISO-8601 timestamp.", param_hint="--since") from exc


@sync_cli.command("run")
@click.argument("mapping_id")
@click.option("--incremental", is_flag=True, help="Only fetch records updated since --since (or the lookback).")
@click.option("--since", help="ISO-8601 timestamp for incremental runs.")
@click.option("--lookback-minutes", type=int, help="Window used when --since is omitted.")
@click.option("--dry-run", is_flag=True, help="Transform without writing to the target database.")
@click.option("--delete-stale", is_flag=True, help="Delete target rows whose keys were not fetched (full runs).")
@click.option("--inline", is_flag=True, help="Run in this process instead of enqueueing a sync job.")
@click.pass_context
def sync_run(
    ctx,
    mapping_id: str,
    incremental: bool,
    since: Optional[str],
    lookback_minutes: Optional[int],
    dry_run: bool,
    delete_stale: bool,
    inline: bool,
):
    """Run a full or incremental sync for one mapping."""
    app = _load_app(ctx)
    if incremental and delete_stale:
        raise click.ClickException("--delete-stale is only available for full runs.")
    since_value = _parse_since(since)

    if inline:
        with app.app_context():
            engine = container.build_sync_engine(app)
            try:
                if incremental:
                    options: dict[str, Any] = {"since": since_value, "dry_run": dry_run}
                    if lookback_minutes is not None:
                        options["lookback_minutes"] = lookback_minutes
                    result = engine.incremental_sync(mapping_id, **options)
                else:
                    result = engine.full_sync(mapping_id, dry_run=dry_run, delete_stale=delete_stale)
            except (MappingNotFoundError, SyncAlreadyRunningError) as exc:
                raise click.ClickException(str(exc)) from exc
        _echo_json(result.to_dict())
        if not result.success:
            raise click.ClickException(f"Sync for mapping {mapping_id} failed.")
        return

    payload = {
        "kind": SYNC_INCREMENTAL if incremental else SYNC_FULL,
        "mappingId": mapping_id,
        "dryRun": dry_run,
        "deleteStale": delete_stale,
        "since": since_value.isoformat() if since_value else None,
        "lookbackMinutes": lookback_minutes,
    }
    with app.app_context():
        try:
            service = container.get_job_service(app, SYNC)
        except UnknownJobFamilyError as exc:
            raise click.ClickException("The 'sync' job family is not enabled (SYNC_JOB_FAMILIES).") from exc
        try:
            job = service.enqueue(payload, triggered_by="cli")
        except JobQueueError as exc:
            raise click.ClickException(str(exc)) from exc
        if not service.is_ready():
            click.echo("Job queue not ready; processing inline.", err=True)
            service.process(job.id)
        job = service.store.require(job.id)
        _echo_json(job.as_dict())


# ----------------------------------------------------------------------- jobs


@sync_cli.group(name="jobs")
def jobs_group():
    """Inspect and cancel background jobs."""


@jobs_group.command("status")
@click.argument("job_id", type=int)
@click.pass_context
def jobs_status(ctx, job_id: int):
    app = _load_app(ctx)
    with app.app_context():
        try:
            job = container.build_job_store(app).require(job_id)
        except JobNotFoundError as exc:
            raise click.ClickException(str(exc)) from exc
        _echo_json(job.as_dict())


@jobs_group.command("cancel")
@click.argument("job_id", type=int)
@click.pass_context
def jobs_cancel(ctx, job_id: int):
    app = _load_app(ctx)
    with app.app_context():
        try:
            job = container.build_job_store(app).require(job_id)
            service = container.get_job_service(app, job.family)
        except (JobNotFoundError, UnknownJobFamilyError) as exc:
            raise click.ClickException(str(exc)) from exc
        if not service.cancel(job_id):
            raise click.ClickException(f"Job {job_id} is already {job.status.value}.")
    click.echo(f"Cancelled job {job_id}.")


@jobs_group.command("stats")
@click.pass_context
def jobs_stats(ctx):
    app = _load_app(ctx)
    with app.app_context():
        _echo_json([service.get_stats() for service in container.get_job_services(app).values()])


# -------------------------------------------------------------------- exports


@sync_cli.group(name="exports")
def exports_group():
    """Manage export artifacts."""


@exports_group.command("cleanup")
@click.option("--stats-only", is_flag=True, help="Report what would be cleaned without deleting anything.")
@click.pass_context
def exports_cleanup(ctx, stats_only: bool):
    """Delete artifacts of expired and cancelled export jobs."""
    app = _load_app(ctx)
    with app.app_context():
        service = container.build_cleanup_service(app)
        if stats_only:
            _echo_json(service.get_cleanup_stats())
            return
        result = service.cleanup_expired()
    click.echo(f"Deleted {result['deleted']} export artifact(s); {result['errors']} error(s).")
    for detail in result["error_details"]:
        click.echo(f"  - {detail}", err=True)


# --------------------------------------------------------------------- worker


@sync_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the sync background worker."""
    app = _load_app(ctx)
    if not app.config.get("SYNC_WORKER_ENABLED"):
        click.echo(
            "Warning: SYNC_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


def _default_queues(app) -> str:
    queues = [DEFAULT_QUEUE_NAME]
    queues.extend(service.family.queue_name for service in container.get_job_services(app).values())
    return ",".join(queues)


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option("--queues", help="Comma-separated queue list to consume (default: every enabled family).")
@click.option("--family", help="Consume one family's queue with that family's concurrency.")
@click.pass_context
def worker_run(
    ctx,
    loglevel: str,
    concurrency: Optional[int],
    pool: Optional[str],
    queues: Optional[str],
    family: Optional[str],
):
    """
    Start the Celery worker in the current process.
    """
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)

    if family:
        try:
            argv = container.get_job_service(app, family).worker_argv(loglevel=loglevel, pool=pool)
        except UnknownJobFamilyError as exc:
            raise click.ClickException(f"Job family '{family}' is not enabled.") from exc
        queues = argv[argv.index("-Q") + 1]
    else:
        queues = queues or _default_queues(app)
        argv = ["worker", "--loglevel", loglevel, "-Q", queues]
        if concurrency:
            argv.extend(["--concurrency", str(concurrency)])
        if pool:
            argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting sync worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'sync.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    _echo_json(payload)
