"""
Primary image selection.

Maps the model's 1-based primary image index back onto the stored image
batch. The rubric sub-scores come from the model and are not verified, so
weak or suspicious choices are handled by a configurable policy:

- flag: keep the choice and mark it for review
- reject: leave the existing primary flags untouched
"""

import logging
from typing import List, Optional

from gemstone_analysis.models import (
    ImageBatchEntry,
    PerImageAnalysis,
    PrimaryImageDecision,
    PrimaryImageSelection,
)

logger = logging.getLogger(__name__)

DISQUALIFIED_CLASSIFICATIONS = frozenset(
    {
        "label",
        "measurement_gauge",
        "thickness_gauge",
        "scale_reading",
        "certificate",
        "packaging",
    }
)
POLICIES = ("flag", "reject")


class PrimaryImageSelector:
    def __init__(self, policy: str = "flag", min_score: float = 60.0):
        if policy not in POLICIES:
            raise ValueError(f"Unknown primary image policy: {policy}. Available: {', '.join(POLICIES)}")
        self.policy = policy
        self.min_score = min_score

    def review_reason(
        self,
        selection: PrimaryImageSelection,
        individual_analyses: List[PerImageAnalysis],
    ) -> Optional[str]:
        chosen = next((a for a in individual_analyses if a.image_index == selection.index), None)
        if chosen is not None and chosen.classification in DISQUALIFIED_CLASSIFICATIONS:
            return f"selected image is classified as {chosen.classification}"
        if selection.score < self.min_score:
            return f"score {selection.score:g} is below minimum {self.min_score:g}"
        return None

    def select(
        self,
        selection: Optional[PrimaryImageSelection],
        image_batch: List[ImageBatchEntry],
        individual_analyses: Optional[List[PerImageAnalysis]] = None,
    ) -> Optional[PrimaryImageDecision]:
        """
        Resolve the model's choice to a concrete stored image.

        Args:
            selection: The model's primary image selection
            image_batch: Images in the order they were sent
            individual_analyses: Per-image analyses, used for the classification check

        Returns:
            PrimaryImageDecision, or None when nothing should be flagged
        """
        if selection is None or selection.index is None:
            logger.info("  No primary image selected by the model")
            return None

        if not 1 <= selection.index <= len(image_batch):
            logger.warning(
                f"  Primary image index {selection.index} is outside the batch of {len(image_batch)} images"
            )
            return None

        entry = image_batch[selection.index - 1]
        reason = self.review_reason(selection, individual_analyses or [])

        if reason and self.policy == "reject":
            logger.warning(f"  Rejected primary image {entry.filename}: {reason}")
            return None
        if reason:
            logger.warning(f"  Primary image {entry.filename} flagged for review: {reason}")

        return PrimaryImageDecision(
            image_id=entry.image_id,
            index=selection.index,
            score=selection.score,
            reasoning=selection.reasoning or "Selected by AI analysis",
            needs_review=reason is not None,
            review_reason=reason,
        )
