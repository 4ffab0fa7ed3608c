"""
Model reply parsing and shape normalization.

Vision models return one JSON object, but not always bare and not always
under the same keys: the object may be wrapped in prose or a code fence, and
the consolidated block may be called consolidated_data, aggregated_data,
overall_summary and so on. This module extracts the JSON candidate and maps
every logical field onto one canonical shape by trying an ordered list of
candidate keys, taking the first one that is present and non-empty.

A reply without parseable JSON is returned as a ParseFailure value; it is
never raised.
"""

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field

from gemstone_analysis.models import GaugeReading, PerImageAnalysis, PrimaryImageSelection

logger = logging.getLogger(__name__)

FENCED_BLOCK_PATTERN = re.compile(r"```(?:json|JSON)?\s*(\{.*?\})\s*```", re.DOTALL)
NUMBER_PATTERN = re.compile(r"-?\d+(?:[.,]\d+)?")

# Ordered candidate keys, first present and non-empty key wins
VALIDATION_KEYS = ("validation", "validation_summary")
INDIVIDUAL_KEYS = ("individual_analyses", "images", "per_image_analysis", "image_analyses")
CONSOLIDATED_KEYS = (
    "consolidated_data",
    "aggregated_data",
    "aggregate_extraction",
    "aggregate_inferences",
    "aggregate_analysis",
    "overall_summary",
    "summary",
)
VERIFICATION_KEYS = ("data_verification", "cross_verification")
PRIMARY_KEYS = ("primary_image_selection", "primary_image", "best_image")
CONFIDENCE_KEYS = ("overall_confidence", "confidence")
COMPLETENESS_KEYS = ("data_completeness", "completeness")
CROSS_VERIFICATION_SCORE_KEYS = ("cross_verification_score",)
GAUGE_LIST_KEYS = ("all_gauge_readings", "gauge_readings")

PER_IMAGE_INDEX_KEYS = ("image_index", "index", "image_number")
PER_IMAGE_CLASSIFICATION_KEYS = ("image_classification", "classification", "image_type", "type")
PER_IMAGE_NOTES_KEYS = ("analysis_notes", "notes", "visual_observations", "description")
PER_IMAGE_MEASUREMENT_KEYS = ("measurements", "measurements_detected")
PRIMARY_INDEX_KEYS = ("selected_image_index", "index", "image_index")
PRIMARY_SCORE_KEYS = ("score", "quality_score", "total_score")


class ParseFailure(BaseModel):
    """A reply from which no JSON object could be obtained."""

    raw_text: str
    error: str


class NormalizedResponse(BaseModel):
    """
    A model reply mapped onto the canonical shape.

    Sections that were missing or malformed in the reply are None, so the
    validator can tell "absent" apart from "present but empty".
    source_keys records which reply key fed each logical section.
    """

    validation: Optional[Dict[str, Any]] = None
    individual_analyses: Optional[List[PerImageAnalysis]] = None
    consolidated_data: Optional[Dict[str, Any]] = None
    gauge_readings: List[GaugeReading] = Field(default_factory=list)
    data_verification: Dict[str, Any] = Field(default_factory=dict)
    primary_image_selection: Optional[PrimaryImageSelection] = None
    overall_confidence: float = 0.0
    data_completeness: float = 0.0
    cross_verification_score: float = 0.0
    source_keys: Dict[str, str] = Field(default_factory=dict)


def is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def first_present(data: Dict[str, Any], keys: Sequence[str]) -> Tuple[Optional[str], Any]:
    """Return the first (key, value) pair from keys that is present and non-empty."""
    for key in keys:
        value = data.get(key)
        if not is_empty(value):
            return key, value
    return None, None


def coerce_number(value: Any) -> Optional[float]:
    """
    Convert a model-supplied reading to a float.

    Accepts numbers, numeric strings with units ("2.48 ct") and decimal
    commas ("2,48"), and {"value": ...} wrappers. Booleans and non-finite
    numbers are rejected.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
        return number if math.isfinite(number) else None
    if isinstance(value, dict):
        return coerce_number(value.get("value"))
    if isinstance(value, str):
        match = NUMBER_PATTERN.search(value)
        if match:
            number = float(match.group(0).replace(",", "."))
            return number if math.isfinite(number) else None
    return None


def coerce_index(value: Any) -> Optional[int]:
    number = coerce_number(value)
    if number is None or number != int(number):
        return None
    return int(number)


def coerce_confidence(value: Any) -> Optional[float]:
    """Confidences are 0..1; percentages (e.g. 95) are scaled down."""
    number = coerce_number(value)
    if number is None:
        return None
    if 1.0 < number <= 100.0:
        number = number / 100.0
    return max(0.0, min(1.0, number))


def reject_constant(token: str) -> float:
    raise ValueError(f"Non-finite number {token} in model response")


def extract_json_candidate(raw_text: str) -> Optional[str]:
    """
    Pull the JSON candidate out of a free-form reply.

    A fenced code block wins; otherwise the span from the first "{" to the
    last "}" is used.
    """
    match = FENCED_BLOCK_PATTERN.search(raw_text)
    if match:
        logger.debug("Found JSON in fenced code block")
        return match.group(1)

    first_brace = raw_text.find("{")
    last_brace = raw_text.rfind("}")
    if first_brace == -1 or last_brace == -1 or first_brace >= last_brace:
        return None

    logger.debug(f"Extracted JSON from position {first_brace} to {last_brace}")
    return raw_text[first_brace : last_brace + 1]


def normalize_per_image(entry: Any) -> PerImageAnalysis:
    if not isinstance(entry, dict):
        return PerImageAnalysis(notes=str(entry))

    extracted = entry.get("extracted_data")
    extracted_data = dict(extracted) if isinstance(extracted, dict) else {}
    # Older reply shapes keep readings and observations on the entry itself
    for key in PER_IMAGE_MEASUREMENT_KEYS + ("visual_observations", "description", "color", "clarity", "cut", "shape"):
        if key in entry and key not in extracted_data:
            extracted_data[key] = entry[key]

    _, index = first_present(entry, PER_IMAGE_INDEX_KEYS)
    _, classification = first_present(entry, PER_IMAGE_CLASSIFICATION_KEYS)
    _, notes = first_present(entry, PER_IMAGE_NOTES_KEYS)

    return PerImageAnalysis(
        image_index=coerce_index(index),
        classification=str(classification) if classification is not None else None,
        extracted_data=extracted_data,
        confidence=coerce_confidence(entry.get("confidence")),
        notes=notes if isinstance(notes, str) else (json.dumps(notes, sort_keys=True) if notes is not None else None),
        primary_suitability_score=coerce_number(entry.get("primary_suitability_score")),
    )


def normalize_measurement_type(name: Any) -> Optional[str]:
    if name is None:
        return None
    text = str(name).lower()
    for suffix in ("_ct", "_carats", "_mm", "_g"):
        if text.endswith(suffix):
            return text[: -len(suffix)]
    return text


def normalize_gauge_reading(raw: Dict[str, Any], image_index: Optional[int] = None) -> GaugeReading:
    _, value = first_present(raw, ("reading_value", "value", "reading"))
    _, display = first_present(raw, ("display_text", "needle_position", "raw_text"))
    _, measurement_type = first_present(raw, ("measurement_type", "subject", "type"))
    _, device = first_present(raw, ("device_type", "device"))
    index = coerce_index(raw.get("image_index"))

    return GaugeReading(
        image_index=index if index is not None else image_index,
        device_type=str(device) if device is not None else None,
        measurement_type=normalize_measurement_type(measurement_type),
        value=coerce_number(value),
        unit=raw.get("unit"),
        confidence=coerce_confidence(raw.get("confidence")),
        display_text=str(display) if display is not None else "",
    )


def collect_per_image_readings(analyses: List[PerImageAnalysis]) -> List[GaugeReading]:
    """
    Gather gauge readings listed under each image.

    Lists of reading objects and {"weight_ct": {...}} mappings are both
    accepted.
    """
    readings: List[GaugeReading] = []
    for analysis in analyses:
        for key in PER_IMAGE_MEASUREMENT_KEYS:
            measurements = analysis.extracted_data.get(key)
            if isinstance(measurements, list):
                for measurement in measurements:
                    if isinstance(measurement, dict):
                        readings.append(normalize_gauge_reading(measurement, analysis.image_index))
            elif isinstance(measurements, dict):
                for name, measurement in measurements.items():
                    raw = dict(measurement) if isinstance(measurement, dict) else {"value": measurement}
                    raw.setdefault("measurement_type", name)
                    readings.append(normalize_gauge_reading(raw, analysis.image_index))
    return readings


def normalize_primary(value: Any, data: Dict[str, Any]) -> Optional[PrimaryImageSelection]:
    if isinstance(value, (int, float, str)) and not isinstance(value, bool):
        return PrimaryImageSelection(index=coerce_index(value))
    if not isinstance(value, dict):
        summary = data.get("dataset_summary")
        if isinstance(summary, dict) and summary.get("primary_image_index") is not None:
            return PrimaryImageSelection(
                index=coerce_index(summary.get("primary_image_index")),
                score=coerce_number(summary.get("primary_image_score")) or 0.0,
            )
        return None

    _, index = first_present(value, PRIMARY_INDEX_KEYS)
    _, score = first_present(value, PRIMARY_SCORE_KEYS)
    sub_scores = value.get("sub_scores")
    disqualified = value.get("disqualified_images")
    reasoning = value.get("reasoning")

    return PrimaryImageSelection(
        index=coerce_index(index),
        score=coerce_number(score) or 0.0,
        confidence=coerce_confidence(value.get("confidence")) or 0.0,
        reasoning=str(reasoning) if reasoning else None,
        sub_scores=sub_scores if isinstance(sub_scores, dict) else {},
        disqualified_images=disqualified if isinstance(disqualified, list) else [],
    )


def normalize_response(data: Dict[str, Any]) -> NormalizedResponse:
    """
    Map a decoded reply object onto the canonical shape.

    Args:
        data: Decoded top-level JSON object

    Returns:
        NormalizedResponse: Canonical view of the reply
    """
    source_keys: Dict[str, str] = {}

    validation_key, validation = first_present(data, VALIDATION_KEYS)
    if validation_key:
        source_keys["validation"] = validation_key

    individual_key, individual = first_present(data, INDIVIDUAL_KEYS)
    individual_analyses: Optional[List[PerImageAnalysis]] = None
    if individual_key:
        source_keys["individual_analyses"] = individual_key
        if isinstance(individual, list):
            individual_analyses = [normalize_per_image(entry) for entry in individual]
    elif any(key in data for key in INDIVIDUAL_KEYS):
        # Present but empty: an analysis with zero entries, not a missing section
        individual_analyses = []

    consolidated_key, consolidated = first_present(data, CONSOLIDATED_KEYS)
    if consolidated_key:
        source_keys["consolidated_data"] = consolidated_key

    gauge_readings: List[GaugeReading] = []
    gauge_key, gauge_list = (None, None)
    if isinstance(consolidated, dict):
        gauge_key, gauge_list = first_present(consolidated, GAUGE_LIST_KEYS)
    if isinstance(gauge_list, list):
        source_keys["gauge_readings"] = f"{consolidated_key}.{gauge_key}"
        gauge_readings = [normalize_gauge_reading(r) for r in gauge_list if isinstance(r, dict)]
    elif individual_analyses:
        gauge_readings = collect_per_image_readings(individual_analyses)
        if gauge_readings:
            source_keys["gauge_readings"] = f"{individual_key}[].measurements"

    verification_key, verification = first_present(data, VERIFICATION_KEYS)
    if verification_key:
        source_keys["data_verification"] = verification_key

    primary_key, primary = first_present(data, PRIMARY_KEYS)
    if primary_key is None and isinstance(consolidated, dict):
        _, primary = first_present(consolidated, PRIMARY_KEYS)
        if primary is not None:
            primary_key = f"{consolidated_key}.primary_image"
    primary_selection = normalize_primary(primary, data)
    if primary_selection is not None:
        source_keys["primary_image_selection"] = primary_key or "dataset_summary"

    _, confidence = first_present(data, CONFIDENCE_KEYS)
    if confidence is None and isinstance(consolidated, dict):
        _, confidence = first_present(consolidated, CONFIDENCE_KEYS)
    _, completeness = first_present(data, COMPLETENESS_KEYS)
    _, cross_score = first_present(data, CROSS_VERIFICATION_SCORE_KEYS)

    return NormalizedResponse(
        validation=validation if isinstance(validation, dict) else None,
        individual_analyses=individual_analyses,
        consolidated_data=consolidated if isinstance(consolidated, dict) else None,
        gauge_readings=gauge_readings,
        data_verification=verification if isinstance(verification, dict) else {},
        primary_image_selection=primary_selection,
        overall_confidence=coerce_confidence(confidence) or 0.0,
        data_completeness=coerce_confidence(completeness) or 0.0,
        cross_verification_score=coerce_confidence(cross_score) or 0.0,
        source_keys=source_keys,
    )


def parse_model_response(raw_text: str) -> Union[NormalizedResponse, ParseFailure]:
    """
    Parse a raw model reply into the canonical shape.

    Parsing the same text twice yields identical output.

    Args:
        raw_text: Reply text exactly as returned by the model

    Returns:
        NormalizedResponse on success, ParseFailure when no JSON object
        could be decoded
    """
    candidate = extract_json_candidate(raw_text or "")
    if candidate is None:
        logger.error("No JSON object found in model response")
        return ParseFailure(raw_text=raw_text or "", error="No valid JSON structure found in model response")

    try:
        data = json.loads(candidate, parse_constant=reject_constant)
    except ValueError as e:
        logger.error(f"Failed to parse model JSON: {e}")
        logger.debug(f"Candidate snippet: {candidate[:200]}...")
        return ParseFailure(raw_text=raw_text, error=str(e))

    if not isinstance(data, dict):
        return ParseFailure(raw_text=raw_text, error="Top-level JSON value is not an object")

    normalized = normalize_response(data)
    logger.debug(f"Normalized response using keys: {normalized.source_keys}")
    return normalized
