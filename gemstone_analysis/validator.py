"""
Completeness validation of a normalized model reply.

Issues are completeness or correctness failures and set passed=False.
Issues carrying one of CRITICAL_MARKERS fail the item outright; all other
issues are persisted for human review. Warnings are advisory only.
"""

import logging
from collections import Counter
from typing import List

from gemstone_analysis.models import ValidationResult
from gemstone_analysis.response_parser import NormalizedResponse, coerce_index

logger = logging.getLogger(__name__)

CRITICAL_MARKERS = ("INCOMPLETE", "INVALID")

LOW_CONFIDENCE_FLOOR = 0.1
DEPTH_MEASUREMENT_TYPES = ("depth", "thickness")


def critical_issues(issues: List[str]) -> List[str]:
    return [issue for issue in issues if any(marker in issue for marker in CRITICAL_MARKERS)]


def format_indices(indices) -> str:
    return ", ".join(str(i) for i in sorted(indices))


def validate(normalized: NormalizedResponse, expected_image_count: int) -> ValidationResult:
    """
    Check that the reply accounts for every supplied image.

    Args:
        normalized: Parsed and normalized model reply
        expected_image_count: Number of images sent with the request

    Returns:
        ValidationResult: passed flag with issues and warnings
    """
    issues: List[str] = []
    warnings: List[str] = []

    validation = normalized.validation
    if validation is None:
        issues.append("Missing or malformed validation section in model response")
    else:
        reported = coerce_index(validation.get("total_images_analyzed"))
        if reported is not None and reported != expected_image_count:
            issues.append(
                f"Model reported analyzing {reported} images but {expected_image_count} were provided"
            )
        if validation.get("analysis_complete") is False:
            issues.append("Model marked its analysis as not complete")
        missing = validation.get("missing_images")
        if isinstance(missing, list) and missing:
            # Indices only, never the model's own text
            reported_missing = {i for i in (coerce_index(m) for m in missing) if i is not None}
            if reported_missing:
                issues.append(f"Model reported missing images: {format_indices(reported_missing)}")
            else:
                issues.append(f"Model reported {len(missing)} missing images")

    analyses = normalized.individual_analyses
    actual_count = 0
    if analyses is None:
        issues.append("INVALID RESPONSE: individual analyses array is missing or malformed")
    elif not analyses:
        issues.append(
            f"INCOMPLETE ANALYSIS: no individual analyses returned for {expected_image_count} images"
        )
    else:
        actual_count = len(analyses)
        if actual_count != expected_image_count:
            issues.append(
                f"Image count mismatch: {actual_count} vs {expected_image_count} expected individual analyses"
            )

        indices = [a.image_index for a in analyses if a.image_index is not None]
        unindexed = actual_count - len(indices)
        if unindexed:
            issues.append(f"{unindexed} individual analyses have no image index")

        counts = Counter(indices)
        duplicates = [i for i, n in counts.items() if n > 1]
        if duplicates:
            issues.append(f"Duplicate image indices: {format_indices(duplicates)}")

        expected = set(range(1, expected_image_count + 1))
        missing_indices = expected - set(indices)
        if missing_indices:
            issues.append(f"Missing analysis for image indices: {format_indices(missing_indices)}")
        unexpected = set(indices) - expected
        if unexpected:
            issues.append(f"Unexpected image indices: {format_indices(unexpected)}")

        for position, analysis in enumerate(analyses, start=1):
            label = analysis.image_index or position
            if not analysis.classification:
                warnings.append(f"Image {label} missing classification")
            if analysis.confidence is None or analysis.confidence < LOW_CONFIDENCE_FLOOR:
                warnings.append(f"Image {label} has very low confidence")

    if normalized.consolidated_data is None:
        issues.append("Missing or malformed consolidated data section")

    readings = normalized.gauge_readings
    if not readings:
        warnings.append(
            "No measurement gauge readings found - verify images contain measuring devices"
        )
    else:
        types = {r.measurement_type for r in readings}
        if not types.intersection(DEPTH_MEASUREMENT_TYPES):
            warnings.append("No depth/thickness measurements found - check for analog thickness gauges")
        if "weight" not in types:
            warnings.append("No weight measurements found - check for digital scales")

    primary = normalized.primary_image_selection
    if primary is None or primary.index is None:
        warnings.append("No primary image selected")

    result = ValidationResult(
        passed=not issues,
        issues=issues,
        warnings=warnings,
        expected_images=expected_image_count,
        actual_analyses=actual_count,
        gauge_readings_found=len(readings),
    )

    if issues:
        for issue in issues:
            logger.warning(f"  Validation issue: {issue}")
    logger.debug(f"Validation warnings: {warnings}")

    return result
