"""
Builds sync services from Flask config.

Every service receives its collaborators through its constructor; this module
is the one place that reads ``SYNC_*`` settings and wires them together.
Long-lived objects (target engine, artifact storage, job services, the
running-sync registry) are cached on ``app.extensions['sync']``.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping

from celery import Celery
from flask import Flask
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from sync_app.engine.celery_app import SYNC_EXTENSION_KEY
from sync_app.engine.jobs import (
    EXPORT,
    SYNC,
    THUMBNAIL,
    ExportCleanupService,
    ExportJobProcessor,
    JobQueueService,
    JobStore,
    LocalArtifactStorage,
    SyncJobProcessor,
    ThumbnailJobProcessor,
    UnknownJobFamilyError,
    family_from_config,
)
from sync_app.engine.jobs.export import ExportRenderer
from sync_app.engine.jobs.thumbnail import SkuProvider, ThumbnailGenerator
from sync_app.engine.mapping import MappingConfig, MappingService, MappingValidator, ValidationResult
from sync_app.engine.pipeline import (
    GraphQLRecordSource,
    RecordSource,
    RunningSyncRegistry,
    SyncEngine,
    WebhookProcessor,
)
from sync_app.engine.schema import SchemaCacheStore, SchemaGraphBuilder
from sync_app.engine.transforms import LookupResolver, TransformEngine
from sync_app.engine.utils import resolve_artifact_directory
from sync_app.engine.writer import DatabaseSchema, DatabaseWriter, discover_schema, parse_connection_string
from sync_app.models import db

RecordSourceFactory = Callable[[Flask], RecordSource]


def get_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(SYNC_EXTENSION_KEY, {})


def connection_id(app: Flask) -> str:
    return app.config.get("SYNC_CONNECTION_ID") or "default"


# ------------------------------------------------------------------ database


def get_target_engine(app: Flask) -> Engine:
    """
    Engine for the relational sync target.

    ``SYNC_TARGET_DATABASE_URL`` may be any supported connection string; the
    app's own database is used when it is unset.
    """
    state = get_state(app)
    engine = state.get("target_engine")
    if engine is not None:
        return engine

    configured = app.config.get("SYNC_TARGET_DATABASE_URL")
    if configured:
        _, url = parse_connection_string(configured)
        engine = create_engine(url, pool_pre_ping=True)
        state["target_engine"] = engine
        return engine
    # Flask-SQLAlchemy owns this engine; not cached so test apps can swap databases.
    return db.engine


def build_writer(app: Flask) -> DatabaseWriter:
    return DatabaseWriter(
        get_target_engine(app),
        chunk_size=int(app.config.get("SYNC_WRITER_CHUNK_SIZE", 100)),
        exact_counts=bool(app.config.get("SYNC_WRITER_EXACT_COUNTS", True)),
        log=app.logger,
    )


def build_transformer(app: Flask, writer: DatabaseWriter | None = None) -> TransformEngine:
    writer = writer or build_writer(app)
    resolver = LookupResolver(
        writer.engine,
        writer.dialect,
        max_rows=int(app.config.get("SYNC_LOOKUP_MAX_ROWS", 10000)),
        log=app.logger,
    )
    return TransformEngine(
        resolver,
        max_expression_length=int(app.config.get("SYNC_EXPRESSION_MAX_LENGTH", 500)),
        log=app.logger,
    )


# ------------------------------------------------------------------ mappings


def build_mapping_service(app: Flask) -> MappingService:
    return MappingService(connection_id=connection_id(app))


def build_validator(app: Flask) -> MappingValidator:
    return MappingValidator(max_expression_length=int(app.config.get("SYNC_EXPRESSION_MAX_LENGTH", 500)))


def discover_target_schema(app: Flask) -> DatabaseSchema | None:
    """Introspect the target database; ``None`` when it cannot be reached."""
    try:
        return discover_schema(get_target_engine(app))
    except SQLAlchemyError as exc:
        app.logger.warning("Target schema discovery failed", extra={"sync_error": str(exc)})
        return None


def validate_mapping(app: Flask, config: MappingConfig) -> ValidationResult:
    """Validate ``config`` against the live target schema and the cached remote schema."""
    remote_schema = build_schema_cache_store(app).load_remote_schema(connection_id(app))
    return build_validator(app).validate(config, discover_target_schema(app), remote_schema)


def build_schema_cache_store(app: Flask) -> SchemaCacheStore:
    return SchemaCacheStore(log=app.logger)


def build_graph_builder(app: Flask) -> SchemaGraphBuilder:
    return SchemaGraphBuilder(
        build_schema_cache_store(app),
        api_version=app.config.get("SYNC_API_VERSION", "2024-01"),
    )


# ------------------------------------------------------------------ pipeline


def set_record_source_factory(app: Flask, factory: RecordSourceFactory | None) -> None:
    """Replace the remote record source (used by tests and alternate backends)."""
    get_state(app)["record_source_factory"] = factory


def build_record_source(app: Flask) -> RecordSource:
    factory: RecordSourceFactory | None = get_state(app).get("record_source_factory")
    if factory is not None:
        return factory(app)
    return GraphQLRecordSource(
        app.config.get("SYNC_REMOTE_GRAPHQL_URL") or "",
        app.config.get("SYNC_REMOTE_ACCESS_TOKEN"),
        page_size=int(app.config.get("SYNC_REMOTE_PAGE_SIZE", 250)),
        logger=app.logger,
    )


def get_running_registry(app: Flask) -> RunningSyncRegistry:
    state = get_state(app)
    registry = state.get("running_syncs")
    if registry is None:
        registry = RunningSyncRegistry()
        state["running_syncs"] = registry
    return registry


def build_sync_engine(app: Flask) -> SyncEngine:
    writer = build_writer(app)
    return SyncEngine(
        build_mapping_service(app),
        build_record_source(app),
        writer,
        build_transformer(app, writer),
        registry=get_running_registry(app),
        log=app.logger,
    )


def build_webhook_processor(app: Flask) -> WebhookProcessor:
    writer = build_writer(app)
    return WebhookProcessor(
        build_mapping_service(app),
        writer,
        build_transformer(app, writer),
        registry=get_running_registry(app),
        log=app.logger,
    )


# ---------------------------------------------------------------------- jobs


def get_artifact_storage(app: Flask) -> LocalArtifactStorage:
    state = get_state(app)
    storage = state.get("artifact_storage")
    if storage is None:
        storage = LocalArtifactStorage(resolve_artifact_directory(app))
        state["artifact_storage"] = storage
    return storage


def build_job_store(app: Flask) -> JobStore:
    return JobStore(error_max_length=int(app.config.get("SYNC_JOB_ERROR_MAX_LENGTH", 500)))


def _build_processor(app: Flask, family_name: str):
    if family_name == EXPORT:
        return ExportJobProcessor()
    if family_name == THUMBNAIL:
        return ThumbnailJobProcessor(
            max_workers=int(app.config.get("SYNC_THUMBNAIL_MAX_WORKERS", 4)),
            log=app.logger,
        )
    if family_name == SYNC:
        return SyncJobProcessor(
            engine_factory=lambda: build_sync_engine(app),
            webhook_factory=lambda: build_webhook_processor(app),
        )
    raise UnknownJobFamilyError(family_name)


def build_job_services(
    app: Flask,
    families: Iterable[str],
    celery_app: Celery | None,
) -> dict[str, JobQueueService]:
    """
    One queue service per enabled family.

    Celery is only attached when a worker is expected to consume the queues
    (``SYNC_WORKER_ENABLED``) or tasks run eagerly; otherwise jobs stay
    ``pending`` after enqueue and callers process them inline.
    """
    if celery_app is not None and not (
        app.config.get("SYNC_WORKER_ENABLED", False) or celery_app.conf.task_always_eager
    ):
        celery_app = None

    services: dict[str, JobQueueService] = {}
    for name in families:
        family = family_from_config(name, app.config)
        services[name] = JobQueueService(
            family,
            _build_processor(app, name),
            store=build_job_store(app),
            storage=get_artifact_storage(app) if family.storage_prefix else None,
            celery_app=celery_app,
            log=app.logger,
        )
    return services


def get_job_services(app: Flask) -> Mapping[str, JobQueueService]:
    return get_state(app).get("job_services") or {}


def get_job_service(app: Flask, family: str) -> JobQueueService:
    services = get_job_services(app)
    try:
        return services[family]
    except KeyError as exc:
        raise UnknownJobFamilyError(family) from exc


def build_cleanup_service(app: Flask) -> ExportCleanupService:
    return ExportCleanupService(get_artifact_storage(app), store=build_job_store(app), log=app.logger)


def register_export_renderer(app: Flask, export_type: str, renderer: ExportRenderer) -> None:
    """Make ``export_type`` jobs renderable by ``renderer``."""
    processor = get_job_service(app, EXPORT).processor
    processor.register(export_type, renderer)


def register_thumbnail_generator(
    app: Flask,
    generator: ThumbnailGenerator,
    *,
    sku_provider: SkuProvider | None = None,
) -> None:
    processor = get_job_service(app, THUMBNAIL).processor
    processor.generator = generator
    if sku_provider is not None:
        processor.sku_provider = sku_provider
