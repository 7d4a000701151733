"""
Export job processor.

Rendering is delegated to registered renderers keyed by export type
(``xlsx``, ``pdf``, ...). A renderer receives the job payload and a progress
callback and returns the finished file; the queue service stores it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol

from .queue import JobArtifact, JobContext, JobOutcome

STEP_QUERYING = "querying"
QUERYING_PERCENT = 5

ProgressCallback = Callable[..., None]


class ExportRenderer(Protocol):
    def __call__(self, payload: Mapping[str, Any], progress: ProgressCallback) -> "RenderedExport":
        ...


@dataclass(frozen=True)
class RenderedExport:
    """File produced by a renderer plus its counters (SKUs, images, ...)."""

    filename: str
    content: bytes
    content_type: str | None = None
    metrics: Mapping[str, Any] = field(default_factory=dict)


class ExportJobProcessor:
    def __init__(self, renderers: Mapping[str, ExportRenderer] | None = None):
        self.renderers: dict[str, ExportRenderer] = {key.lower(): value for key, value in (renderers or {}).items()}

    def register(self, export_type: str, renderer: ExportRenderer) -> None:
        self.renderers[export_type.lower()] = renderer

    def __call__(self, context: JobContext) -> JobOutcome:
        export_type = str(context.payload.get("type") or "").lower()
        renderer = self.renderers.get(export_type)
        if renderer is None:
            raise ValueError(f"No renderer registered for export type '{export_type}'")

        started = time.monotonic()
        context.update_progress(STEP_QUERYING, "Loading export data", QUERYING_PERCENT)
        rendered = renderer(context.payload, context.update_progress)
        context.checkpoint()

        metrics = dict(rendered.metrics)
        metrics["duration_seconds"] = round(time.monotonic() - started, 3)
        return JobOutcome(
            artifact=JobArtifact(
                filename=rendered.filename,
                content=rendered.content,
                content_type=rendered.content_type,
            ),
            metrics=metrics,
        )
