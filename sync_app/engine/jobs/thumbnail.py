"""
Thumbnail generation job processor.

Each SKU is handed to an injected generator on a bounded thread pool. Only
the job thread touches the database; workers just report their result.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, Sequence

from .queue import JobContext, JobOutcome

logger = logging.getLogger(__name__)

STEP_FETCHING = "fetching"
STEP_GENERATING = "generating"

RESULT_PROCESSED = "processed"
RESULT_SKIPPED = "skipped"

DEFAULT_SIZES = (120, 240, 480)
DEFAULT_MAX_WORKERS = 4

ThumbnailGenerator = Callable[[str, Sequence[int]], str]
SkuProvider = Callable[[], Iterable[str]]


class ThumbnailJobProcessor:
    def __init__(
        self,
        generator: ThumbnailGenerator | None = None,
        *,
        sku_provider: SkuProvider | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        log: logging.Logger | None = None,
    ):
        self.generator = generator
        self.sku_provider = sku_provider
        self.max_workers = max(int(max_workers), 1)
        self.logger = log or logger

    def __call__(self, context: JobContext) -> JobOutcome:
        if self.generator is None:
            raise ValueError("No thumbnail generator configured")
        payload = context.payload
        sizes = [int(size) for size in payload.get("sizes") or DEFAULT_SIZES]

        context.update_progress(STEP_FETCHING, "Resolving SKUs needing thumbnails", 0)
        sku_ids = payload.get("skuIds")
        if sku_ids is None:
            if self.sku_provider is None:
                raise ValueError("Thumbnail job has no skuIds and no SKU provider is configured")
            sku_ids = list(self.sku_provider())
        sku_ids = [str(sku) for sku in sku_ids]

        counts = {"total": len(sku_ids), RESULT_PROCESSED: 0, RESULT_SKIPPED: 0, "failed": 0}
        if not sku_ids:
            return JobOutcome(metrics=counts)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {pool.submit(self._generate, context, sku, sizes): sku for sku in sku_ids}
            try:
                for done, future in enumerate(as_completed(futures), start=1):
                    outcome = future.result()
                    counts[outcome] += 1
                    context.update_progress(
                        STEP_GENERATING,
                        f"Processed {done} of {len(sku_ids)} SKUs",
                        int(done * 85 / len(sku_ids)),
                        counts,
                    )
            finally:
                for future in futures:
                    future.cancel()
        return JobOutcome(metrics=counts)

    def _generate(self, context: JobContext, sku: str, sizes: Sequence[int]) -> str:
        if context.cancelled:
            return RESULT_SKIPPED
        try:
            result = self.generator(sku, sizes)
        except Exception as exc:  # one bad image must not fail the whole run
            self.logger.warning(
                "Thumbnail generation failed",
                extra={"sync_job_id": context.job_id, "sync_sku": sku, "sync_error": str(exc)},
            )
            return "failed"
        return RESULT_SKIPPED if result == RESULT_SKIPPED else RESULT_PROCESSED
