"""
Data Extractor Service.

Derives canonical gemstone attributes from a consolidated analysis. Three
strategies are tried in order, each only if the previous one found nothing:

1. the pre-aggregated block supplied by the model
2. the per-image readings, keeping the highest-confidence reading for each
   physical quantity and listing every reading as a source
3. a recursive key search over the whole analysis

Readings are never averaged.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytz

from gemstone_analysis.models import (
    ConsolidatedAnalysis,
    ExtractedField,
    ExtractedGemstoneAttributes,
    GaugeReading,
    MeasurementSource,
)
from gemstone_analysis.response_parser import coerce_confidence, coerce_index, coerce_number, is_empty

logger = logging.getLogger(__name__)

AI_UPDATE_CONFIDENCE_THRESHOLD = 0.7
DEFAULT_READING_CONFIDENCE = 0.5
GRAMS_TO_CARATS = 5.0

ATTRIBUTE_FIELDS = ("weight_carats", "length_mm", "width_mm", "depth_mm", "color", "clarity", "cut")
NUMERIC_FIELDS = ("weight_carats", "length_mm", "width_mm", "depth_mm")

# Candidate keys per field, in lookup order
NUMERIC_KEYS: Dict[str, Tuple[str, ...]] = {
    "weight_carats": ("weight_ct", "weight", "weight_carats"),
    "length_mm": ("length_mm", "length"),
    "width_mm": ("width_mm", "width"),
    "depth_mm": ("depth_mm", "depth", "thickness_mm", "thickness"),
}
MEASUREMENT_TYPE_FIELDS = {
    "weight": "weight_carats",
    "mass": "weight_carats",
    "length": "length_mm",
    "width": "width_mm",
    "depth": "depth_mm",
    "thickness": "depth_mm",
    "height": "depth_mm",
}
MEASUREMENT_BLOCK_KEYS = ("measurements_cross_verified", "measurement_summary", "measurements", "dimensions")

COLOR_KEYS = ("color", "color_assessment", "inferred_color")
CLARITY_KEYS = ("clarity", "clarity_grade", "clarity_observations", "clarity_assessment", "inferred_clarity")
CUT_KEYS = ("shape_cut", "shape", "cut", "cut_quality", "cut_assessment", "inferred_cut")
TEXT_VALUE_KEYS = {
    "color": ("value", "primary_color", "primary", "color", "hue", "name", "description"),
    "clarity": ("value", "grade", "clarity", "assessment", "level", "description"),
    "cut": ("value", "shape", "cut_type", "cut_style", "cut", "type", "style", "description"),
}

COLOR_PATTERN = re.compile(r"colou?r[:\s]+([^,\.]+)", re.IGNORECASE)
CUT_PATTERN = re.compile(
    r"\b(round|oval|cushion|emerald|octagon\w*|pear|marquise|heart|trillion|radiant|princess|asscher)\b",
    re.IGNORECASE,
)


def should_update_field(manual_value: Any, ai_value: Any, ai_confidence: Optional[float]) -> bool:
    """
    Decide whether an AI value may populate a record field.

    A manually entered value always wins. Otherwise the AI value is used only
    when it exists and its confidence exceeds 0.7.
    """
    if manual_value is not None:
        return False
    return ai_value is not None and (ai_confidence or 0) > AI_UPDATE_CONFIDENCE_THRESHOLD


def count_data_sources(record: Dict[str, Any]) -> Dict[str, int]:
    """
    Count how many attribute fields hold manual data, AI data, both, or neither.

    Args:
        record: Gemstone row with manual columns and ai_-prefixed columns

    Returns:
        Dict[str, int]: Counts keyed manual, ai_only, both, empty
    """
    counts = {"manual": 0, "ai_only": 0, "both": 0, "empty": 0}
    for field in ATTRIBUTE_FIELDS:
        has_manual = record.get(field) is not None
        has_ai = record.get(f"ai_{field}") is not None
        if has_manual and has_ai:
            counts["both"] += 1
        elif has_manual:
            counts["manual"] += 1
        elif has_ai:
            counts["ai_only"] += 1
        else:
            counts["empty"] += 1
    return counts


def to_sources(raw_sources: Any) -> List[MeasurementSource]:
    if not isinstance(raw_sources, list):
        return []
    sources = []
    for raw in raw_sources:
        if isinstance(raw, dict):
            sources.append(
                MeasurementSource(
                    image_index=coerce_index(raw.get("image_index")),
                    method=raw.get("method") or raw.get("source") or raw.get("device_type"),
                    value=raw.get("value", raw.get("reading_value")),
                    confidence=coerce_confidence(raw.get("confidence")),
                )
            )
    return sources


def numeric_field(candidate: Any) -> Optional[ExtractedField]:
    """Build a field from a scalar or a {value, confidence, sources} object."""
    value = coerce_number(candidate)
    if value is None:
        return None
    if isinstance(candidate, dict):
        return ExtractedField(
            value=value,
            confidence=coerce_confidence(candidate.get("confidence")),
            sources=to_sources(candidate.get("sources")),
        )
    return ExtractedField(value=value)


def text_value(candidate: Any, keys: Sequence[str], depth: int = 0) -> Optional[str]:
    if isinstance(candidate, str):
        return candidate.strip() or None
    if isinstance(candidate, dict) and depth < 3:
        for key in keys:
            found = text_value(candidate.get(key), keys, depth + 1)
            if found:
                return found
    return None


def text_field(candidate: Any, kind: str) -> Optional[ExtractedField]:
    value = text_value(candidate, TEXT_VALUE_KEYS[kind])
    if value is None:
        return None
    confidence = coerce_confidence(candidate.get("confidence")) if isinstance(candidate, dict) else None
    return ExtractedField(value=value, confidence=confidence)


def extract_from_aggregated(aggregated: Dict[str, Any]) -> Dict[str, ExtractedField]:
    """Read fields from the model's own consolidated block."""
    fields: Dict[str, ExtractedField] = {}
    blocks = [aggregated.get(key) for key in MEASUREMENT_BLOCK_KEYS[:1]]
    blocks.append(aggregated)
    blocks.extend(aggregated.get(key) for key in MEASUREMENT_BLOCK_KEYS[1:])

    for name, keys in NUMERIC_KEYS.items():
        for block in blocks:
            if not isinstance(block, dict):
                continue
            found = next(
                (f for f in (numeric_field(block.get(key)) for key in keys) if f is not None),
                None,
            )
            if found is not None:
                fields[name] = found
                break

    for name, keys in (("color", COLOR_KEYS), ("clarity", CLARITY_KEYS), ("cut", CUT_KEYS)):
        for key in keys:
            found = text_field(aggregated.get(key), name)
            if found is not None:
                fields[name] = found
                break

    return fields


def reading_value(reading: GaugeReading) -> Optional[float]:
    if reading.value is None:
        return None
    unit = (reading.unit or "").lower()
    if MEASUREMENT_TYPE_FIELDS.get(reading.measurement_type or "") == "weight_carats" and unit in ("g", "gram", "grams"):
        return round(reading.value * GRAMS_TO_CARATS, 4)
    return reading.value


def reading_confidence(reading: GaugeReading) -> float:
    if reading.confidence is None:
        return DEFAULT_READING_CONFIDENCE
    return reading.confidence


def extract_from_individual(analysis: ConsolidatedAnalysis) -> Dict[str, ExtractedField]:
    """Pick the highest-confidence per-image reading for each quantity."""
    fields: Dict[str, ExtractedField] = {}
    candidates: Dict[str, List[Tuple[GaugeReading, float]]] = {}

    for reading in analysis.gauge_readings:
        name = MEASUREMENT_TYPE_FIELDS.get(reading.measurement_type or "")
        value = reading_value(reading)
        if name is None or value is None:
            continue
        candidates.setdefault(name, []).append((reading, value))

    for name, readings in candidates.items():
        best_reading, best_value = readings[0]
        best_confidence = reading_confidence(best_reading)
        for reading, value in readings[1:]:
            confidence = reading_confidence(reading)
            if confidence > best_confidence:
                best_reading, best_value, best_confidence = reading, value, confidence
        fields[name] = ExtractedField(
            value=best_value,
            confidence=best_confidence,
            sources=[
                MeasurementSource(
                    image_index=reading.image_index,
                    method=reading.device_type,
                    value=value,
                    confidence=reading_confidence(reading),
                )
                for reading, value in readings
            ],
        )

    for per_image in analysis.individual_analyses:
        data = per_image.extracted_data
        for name, keys in (("color", ("color",)), ("clarity", ("clarity",)), ("cut", ("cut", "shape"))):
            if name in fields:
                continue
            for key in keys:
                found = text_field(data.get(key), name)
                if found is not None:
                    fields[name] = found
                    break

        text = " ".join(
            t for t in (data.get("visual_observations"), data.get("description"), per_image.notes)
            if isinstance(t, str)
        )
        if "color" not in fields:
            match = COLOR_PATTERN.search(text)
            if match:
                fields["color"] = ExtractedField(value=match.group(1).strip())
        if "cut" not in fields:
            match = CUT_PATTERN.search(text)
            if match:
                fields["cut"] = ExtractedField(value=match.group(1).lower())

    return fields


def search_key(obj: Any, key: str, depth: int = 0) -> Any:
    """Depth-first search for the first non-empty value stored under key."""
    if depth > 10:
        return None
    if isinstance(obj, dict):
        if not is_empty(obj.get(key)):
            return obj[key]
        children = obj.values()
    elif isinstance(obj, list):
        children = obj
    else:
        return None
    for child in children:
        if isinstance(child, (dict, list)):
            found = search_key(child, key, depth + 1)
            if found is not None:
                return found
    return None


def extract_flexible(analysis: ConsolidatedAnalysis) -> Dict[str, ExtractedField]:
    """Last resort: search the whole analysis for well-known keys."""
    tree = {
        "consolidated_data": analysis.consolidated_data,
        "individual_analyses": [a.extracted_data for a in analysis.individual_analyses],
        "data_verification": analysis.data_verification,
    }
    fields: Dict[str, ExtractedField] = {}

    for name, keys in NUMERIC_KEYS.items():
        for key in keys:
            found = numeric_field(search_key(tree, key))
            if found is not None:
                fields[name] = found
                break

    for name, keys in (("color", COLOR_KEYS), ("clarity", CLARITY_KEYS), ("cut", CUT_KEYS)):
        for key in keys:
            found = text_field(search_key(tree, key), name)
            if found is not None:
                fields[name] = found
                break

    return fields


def extract_gemstone_data(analysis: ConsolidatedAnalysis) -> ExtractedGemstoneAttributes:
    """
    Extract canonical gemstone attributes from a consolidated analysis.

    Args:
        analysis: The consolidated analysis of one gemstone

    Returns:
        ExtractedGemstoneAttributes: Values with per-field provenance. The
        extraction confidence is the mean of the per-field confidences that
        were found, or 0 when none were.
    """
    strategy = None
    fields: Dict[str, ExtractedField] = {}

    strategies = (
        ("aggregated", lambda: extract_from_aggregated(analysis.consolidated_data)),
        ("individual", lambda: extract_from_individual(analysis)),
        ("flexible", lambda: extract_flexible(analysis)),
    )
    for name, run in strategies:
        fields = run()
        if fields:
            strategy = name
            break
        logger.debug(f"Extraction strategy '{name}' found nothing")

    confidences = [f.confidence for f in fields.values() if f.confidence is not None]
    confidence = sum(confidences) / len(confidences) if confidences else 0.0

    def value(name: str) -> Any:
        field = fields.get(name)
        return field.value if field is not None else None

    extracted = ExtractedGemstoneAttributes(
        weight_carats=value("weight_carats"),
        length_mm=value("length_mm"),
        width_mm=value("width_mm"),
        depth_mm=value("depth_mm"),
        color=value("color"),
        clarity=value("clarity"),
        cut=value("cut"),
        extraction_confidence=round(max(0.0, min(1.0, confidence)), 4),
        extracted_at=datetime.now(pytz.utc).isoformat(),
        strategy=strategy,
        fields=fields,
    )

    logger.info(
        f"  Extracted ({strategy or 'none'}): weight={extracted.weight_carats}, "
        f"length={extracted.length_mm}, width={extracted.width_mm}, depth={extracted.depth_mm}, "
        f"color={extracted.color}, cut={extracted.cut}"
    )
    logger.info(f"  Extraction confidence: {round(extracted.extraction_confidence * 100)}%")

    return extracted
