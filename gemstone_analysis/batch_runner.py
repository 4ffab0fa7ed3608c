"""
Batch orchestration over the analysis work queue.

Items are processed one at a time. Each item moves through
IDLE -> FETCHING -> INVOKING -> VALIDATING -> PERSISTING -> IDLE; a failure
puts that item in ERROR, which is recorded and skipped. No single item can
abort the run, and a keyboard interrupt stops the run between items.
"""

import logging
from enum import Enum
from typing import List, Optional

from gemstone_analysis.db_operations import (
    clear_existing_analysis,
    get_analysis_statistics,
    get_gemstones_for_analysis,
)
from gemstone_analysis.processor import GemstoneProcessor
from gemstone_analysis.statistics import AnalysisStatistics

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 5


class ItemState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    INVOKING = "invoking"
    VALIDATING = "validating"
    PERSISTING = "persisting"
    ERROR = "error"


class BatchOrchestrator:
    def __init__(
        self,
        processor: GemstoneProcessor,
        connection,
        statistics: Optional[AnalysisStatistics] = None,
    ):
        self.processor = processor
        self.connection = connection
        self.statistics = statistics or AnalysisStatistics()
        self.state = ItemState.IDLE
        self.interrupted = False

    def transition(self, stage: str) -> None:
        self.state = ItemState(stage)
        logger.debug(f"  State -> {self.state.value}")

    def run(
        self,
        limit: Optional[int] = None,
        item_ids: Optional[List[str]] = None,
        clear: bool = False,
    ) -> AnalysisStatistics:
        """
        Process the work queue.

        Args:
            limit: Maximum number of gemstones to analyze
            item_ids: Specific gemstones to analyze, analyzed or not
            clear: Delete prior results for the target set (or all) first

        Returns:
            AnalysisStatistics: totals for this run
        """
        if clear:
            clear_existing_analysis(self.connection, item_ids)

        db_stats = get_analysis_statistics(self.connection)
        logger.info(
            f"Database: {db_stats['analyzed_gemstones']}/{db_stats['total_gemstones']} gemstones analyzed, "
            f"{db_stats['total_images']} images, previous cost ${db_stats['total_cost_usd']:.4f}"
        )
        sources = db_stats["data_sources"]
        logger.info(
            f"Attribute fields: {sources['manual']} manual, {sources['ai_only']} AI only, "
            f"{sources['both']} both, {sources['empty']} empty"
        )

        queue = get_gemstones_for_analysis(self.connection, limit, item_ids)
        if not queue:
            logger.info("No gemstones need analysis. All caught up!")
            return self.statistics

        for position, request in enumerate(queue, start=1):
            logger.info("=" * 70)
            logger.info(f"Processing {position}/{len(queue)}: {request.label} ({request.image_count} images)")
            self.statistics.add_item()

            try:
                result = self.processor.analyze(request, on_stage=self.transition)
            except KeyboardInterrupt:
                logger.warning(f"Interrupted while processing {request.label}; stopping the batch")
                self.statistics.record_error(
                    request.item_id, request.label, self.state.value, "Interrupted by user"
                )
                self.state = ItemState.ERROR
                self.interrupted = True
                break
            except Exception as e:
                logger.exception(f"Unexpected error analyzing gemstone {request.label}")
                self.statistics.record_error(
                    request.item_id, request.label, self.state.value, f"{type(e).__name__}: {e}"
                )
                self.state = ItemState.ERROR
            else:
                if result.success:
                    self.statistics.record_success(
                        request.item_id,
                        result.image_count,
                        result.cost_usd,
                        result.time_ms,
                        primary=result.primary_image,
                        validation_passed=result.analysis.validation_passed,
                    )
                    for step in result.persistence_failures:
                        logger.warning(f"  {request.label}: persistence step '{step}' needs manual recovery")
                else:
                    self.state = ItemState.ERROR
                    self.statistics.record_error(
                        request.item_id,
                        request.label,
                        result.stage or "unknown",
                        result.error or "unknown error",
                        image_count=result.image_count,
                        cost_usd=result.cost_usd,
                        time_ms=result.time_ms,
                    )

            logger.debug(f"  {request.label} finished in state {self.state.value}")
            self.state = ItemState.IDLE

            if position % PROGRESS_EVERY == 0:
                self.statistics.display_progress()

        return self.statistics
