"""
Analysis statistics and reporting.

Tracks cost, timing, primary image selections and errors over one batch
run and renders the end-of-run report.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pytz

from gemstone_analysis.models import CostRecord, PrimaryImageDecision

logger = logging.getLogger(__name__)

SCORE_BUCKETS = (("90-100", 90), ("80-89", 80), ("70-79", 70), ("60-69", 60), ("Below 60", float("-inf")))
MAX_REPORTED_ERRORS = 10


def format_duration(ms: float) -> str:
    """Format milliseconds as 850ms, 12.3s, 4m 5s or 1h 2m."""
    ms = int(ms)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    if ms < 3600000:
        return f"{ms // 60000}m {(ms % 60000) // 1000}s"
    return f"{ms // 3600000}h {(ms % 3600000) // 60000}m"


class AnalysisStatistics:
    """
    Running totals for one batch run.

    Every completed item is folded in with a single call, so the counters
    never reflect half of an item.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self.total_items = 0
        self.analyzed_items = 0
        self.incomplete_items = 0
        self.total_images = 0
        self.total_cost = 0.0
        self.total_processing_time_ms = 0
        self.cost_records: List[CostRecord] = []
        self.primary_selections: List[Dict[str, Any]] = []
        self.errors: List[Dict[str, Any]] = []
        self.start_time = clock()

    def add_item(self) -> None:
        with self._lock:
            self.total_items += 1

    def record_success(
        self,
        item_id: str,
        image_count: int,
        cost_usd: float,
        time_ms: int,
        primary: Optional[PrimaryImageDecision] = None,
        validation_passed: bool = True,
    ) -> None:
        record = CostRecord(item_id=item_id, image_count=image_count, cost_usd=cost_usd, time_ms=time_ms)
        with self._lock:
            self.analyzed_items += 1
            if not validation_passed:
                self.incomplete_items += 1
            self.total_images += image_count
            self.total_cost += cost_usd
            self.total_processing_time_ms += time_ms
            self.cost_records.append(record)
            if primary is not None:
                self.primary_selections.append(
                    {
                        "item_id": item_id,
                        "selected_index": primary.index,
                        "score": primary.score,
                        "needs_review": primary.needs_review,
                    }
                )

    def record_error(
        self,
        item_id: str,
        context: str,
        stage: str,
        message: str,
        image_count: int = 0,
        cost_usd: float = 0.0,
        time_ms: int = 0,
    ) -> None:
        """Record a failed item. Cost already spent on it still counts."""
        entry = {
            "item_id": item_id,
            "context": context,
            "stage": stage,
            "error": message,
            "timestamp": datetime.now(pytz.utc).isoformat(),
        }
        with self._lock:
            self.errors.append(entry)
            if cost_usd:
                self.total_cost += cost_usd
                self.cost_records.append(
                    CostRecord(item_id=item_id, image_count=image_count, cost_usd=cost_usd, time_ms=time_ms)
                )

    def elapsed_ms(self) -> int:
        return int((self._clock() - self.start_time) * 1000)

    def score_distribution(self) -> Dict[str, int]:
        distribution = {label: 0 for label, _ in SCORE_BUCKETS}
        for selection in self.primary_selections:
            score = selection["score"] or 0
            for label, floor in SCORE_BUCKETS:
                if score >= floor:
                    distribution[label] += 1
                    break
        return distribution

    def get_report(self) -> Dict[str, Any]:
        analyzed = self.analyzed_items
        per_item = self.total_cost / analyzed if analyzed else 0.0
        elapsed = self.elapsed_ms()
        errors_by_stage: Dict[str, int] = {}
        for error in self.errors:
            errors_by_stage[error["stage"]] = errors_by_stage.get(error["stage"], 0) + 1
        selections = self.primary_selections

        return {
            "summary": {
                "total_items": self.total_items,
                "analyzed_items": analyzed,
                "incomplete_items": self.incomplete_items,
                "failed_items": len(self.errors),
                "success_rate": round(analyzed / self.total_items * 100, 1) if self.total_items else 0.0,
                "total_images": self.total_images,
                "avg_images_per_item": round(self.total_images / analyzed, 1) if analyzed else 0.0,
                "elapsed_ms": elapsed,
                "elapsed": format_duration(elapsed),
            },
            "cost": {
                "total_usd": round(self.total_cost, 6),
                "per_item_usd": round(per_item, 6),
                "per_image_usd": round(self.total_cost / self.total_images, 6) if self.total_images else 0.0,
                "projected_100_items_usd": round(per_item * 100, 2),
                "projected_1000_items_usd": round(per_item * 1000, 2),
            },
            "performance": {
                "total_processing_time_ms": self.total_processing_time_ms,
                "avg_item_time_ms": round(self.total_processing_time_ms / analyzed) if analyzed else 0,
                "avg_image_time_ms": (
                    round(self.total_processing_time_ms / self.total_images) if self.total_images else 0
                ),
                "items_per_minute": round(analyzed / (elapsed / 60000), 2) if elapsed > 0 else 0.0,
            },
            "primary_images": {
                "total_selections": len(selections),
                "flagged_for_review": sum(1 for s in selections if s["needs_review"]),
                "avg_score": (
                    round(sum(s["score"] or 0 for s in selections) / len(selections), 1) if selections else 0.0
                ),
                "score_distribution": self.score_distribution(),
            },
            "errors_by_stage": errors_by_stage,
            "errors": self.errors[:MAX_REPORTED_ERRORS],
        }

    def display_progress(self) -> None:
        rate = round(self.analyzed_items / self.total_items * 100, 1) if self.total_items else 0.0
        logger.info(f"Progress: {self.analyzed_items}/{self.total_items} gemstones ({rate}%)")
        logger.info(f"Images: {self.total_images} processed, cost: ${self.total_cost:.4f}, time: {format_duration(self.elapsed_ms())}")
        if self.errors:
            logger.info(f"Errors: {len(self.errors)}")


def format_report(report: Dict[str, Any]) -> List[str]:
    """Render a report from AnalysisStatistics.get_report as printable lines."""
    summary = report["summary"]
    cost = report["cost"]
    performance = report["performance"]
    primary = report["primary_images"]

    lines = [
        "=" * 80,
        f"MULTI-IMAGE AI ANALYSIS REPORT - {datetime.now(pytz.utc).isoformat()}",
        "=" * 80,
        "SUMMARY:",
        f"   Gemstones: {summary['analyzed_items']}/{summary['total_items']} ({summary['success_rate']}%), "
        f"{summary['incomplete_items']} incomplete",
        f"   Images: {summary['total_images']} (avg {summary['avg_images_per_item']} per gemstone)",
        f"   Total Cost: ${cost['total_usd']:.4f}",
        f"   Total Time: {summary['elapsed']}",
        f"   Errors: {summary['failed_items']}",
        "COST ANALYSIS:",
        f"   Per Gemstone: ${cost['per_item_usd']:.4f}",
        f"   Per Image: ${cost['per_image_usd']:.4f}",
        f"   Projected 100 gems: ${cost['projected_100_items_usd']:.2f}",
        f"   Projected 1000 gems: ${cost['projected_1000_items_usd']:.2f}",
        "PERFORMANCE:",
        f"   Avg Gemstone Time: {performance['avg_item_time_ms']}ms",
        f"   Avg Per Image: {performance['avg_image_time_ms']}ms",
        f"   Gemstones/Minute: {performance['items_per_minute']}",
        "PRIMARY IMAGE SELECTION:",
        f"   Selections Made: {primary['total_selections']} ({primary['flagged_for_review']} flagged for review)",
        f"   Avg Score: {primary['avg_score']}/100",
        "   Score Distribution:",
    ]
    lines += [f"     {label}: {count} selections" for label, count in primary["score_distribution"].items()]

    if report["errors"]:
        lines.append(f"ERRORS (first {MAX_REPORTED_ERRORS}):")
        lines += [
            f"   {i}. {error['context']} [{error['stage']}]: {error['error']}"
            for i, error in enumerate(report["errors"], start=1)
        ]
    lines.append("=" * 80)
    return lines
