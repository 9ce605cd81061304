"""Batch entry points: the auto-retrain scheduler and the pending-source sweep.

Both return a ``SweepReport``. One source failing never stops the rest of
the batch.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from lodestone.config import RetrainCfg
from lodestone.db.models import Source, SourceStatus, utcnow
from lodestone.db.repository import Repository
from lodestone.processing.processor import ProcessingResult, SourceProcessor

logger = logging.getLogger(__name__)


@dataclass
class SweepDetail:
    source_id: str
    source_name: str
    status: str  # success | failed | skipped
    error: str | None = None


@dataclass
class SweepReport:
    total: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[SweepDetail] = field(default_factory=list)

    def record(self, source: Source, result: ProcessingResult) -> None:
        if result.success:
            self.success += 1
            self.details.append(SweepDetail(source.id, source.name, "success"))
        elif result.skipped:
            self.skipped += 1
            self.details.append(SweepDetail(source.id, source.name, "skipped", result.error))
        else:
            self.failed += 1
            self.details.append(SweepDetail(source.id, source.name, "failed", result.error))

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class RetrainScheduler:
    """Re-crawl completed auto-retrain sources whose cool-down has passed.

    Eligibility: website or workspace source, ``auto_retrain`` set, status
    ``completed``, active project, organization on an allowed plan with an
    active subscription, never retrained or last retrained before
    ``now - cooldown_hours``.
    """

    def __init__(self, processor: SourceProcessor, config: RetrainCfg | None = None) -> None:
        self._processor = processor
        self._config = config or processor.config.retrain

    def candidates(self, now: datetime | None = None) -> list[Source]:
        cutoff = (now or utcnow()) - timedelta(hours=self._config.cooldown_hours)
        with self._processor.db.session() as conn:
            return Repository(conn).list_retrain_candidates(
                cutoff, self._config.allowed_plans, self._config.batch_size
            )

    def run(self, now: datetime | None = None) -> SweepReport:
        """Retrain every eligible source (up to ``batch_size``) one at a time."""
        sources = self.candidates(now)
        report = SweepReport(total=len(sources))
        for source in sources:
            try:
                result = self._processor.retrain_source(source.id)
            except Exception as exc:
                logger.exception("Auto-retrain raised", extra={"source_id": source.id})
                result = ProcessingResult(success=False, error=str(exc) or type(exc).__name__)
            report.record(source, result)
        logger.info(
            "Auto-retrain finished",
            extra={
                "total": report.total,
                "success": report.success,
                "failed": report.failed,
                "skipped": report.skipped,
            },
        )
        return report


def sweep_pending(
    processor: SourceProcessor, limit: int | None = None, max_workers: int | None = None
) -> SweepReport:
    """Process up to *limit* pending sources concurrently.

    Defaults come from ``processing.sweep_batch_size`` and ``processing.max_workers``.
    """
    cfg = processor.config.processing
    limit = cfg.sweep_batch_size if limit is None else limit
    with processor.db.session() as conn:
        sources = Repository(conn).list_sources(status=SourceStatus.PENDING, limit=limit)

    report = SweepReport(total=len(sources))
    if not sources:
        return report

    workers = max(1, min(max_workers or cfg.max_workers, len(sources)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lodestone-sweep") as pool:
        futures = [(s, pool.submit(processor.process_source, s.id)) for s in sources]
        for source, future in futures:
            try:
                result = future.result()
            except Exception as exc:
                logger.exception("Sweep job raised", extra={"source_id": source.id})
                result = ProcessingResult(success=False, error=str(exc) or type(exc).__name__)
            report.record(source, result)

    logger.info(
        "Pending sweep finished",
        extra={"total": report.total, "success": report.success, "failed": report.failed},
    )
    return report
