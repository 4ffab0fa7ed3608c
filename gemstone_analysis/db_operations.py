import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import psycopg2
import pytz
from psycopg2.extras import Json

from gemstone_analysis.data_extractor import ATTRIBUTE_FIELDS, count_data_sources, should_update_field
from gemstone_analysis.exceptions import PersistenceError
from gemstone_analysis.models import (
    AnalysisRequest,
    Config,
    ConsolidatedAnalysis,
    ExtractedGemstoneAttributes,
    GaugeReading,
    ImageRef,
    PrimaryImageDecision,
)

logger = logging.getLogger(__name__)

ANALYSIS_TYPE = "comprehensive_analysis"


def get_db_connection(config: Config):
    """
    Create a new PostgreSQL connection from the loaded configuration.
    """
    db_params = config.db_params()
    try:
        logger.info(
            "Opening PostgreSQL connection to %s@%s/%s",
            db_params["user"],
            db_params["host"],
            db_params["dbname"],
        )
        conn = psycopg2.connect(**db_params)
        logger.info("PostgreSQL connection established successfully")
        return conn
    except Exception:
        logger.exception("Failed to establish PostgreSQL connection")
        raise


def save_analysis_record(connection, item_id: str, analysis: ConsolidatedAnalysis) -> str:
    """
    Insert the analysis row holding the full normalized result.

    Returns:
        str: id of the new ai_analysis_results row
    """
    metrics = analysis.overall_metrics
    metadata = analysis.processing_metadata
    input_data = {
        "image_count": len(metadata.image_batch),
        "image_batch_info": [entry.model_dump() for entry in metadata.image_batch],
        "analysis_prompt": "Multi-image comprehensive gemstone analysis",
        "validation_status": analysis.validation_status,
        "expected_images": metrics.expected_images,
        "analyzed_images": metrics.images_analyzed,
        "gauge_readings_found": metrics.gauge_readings_found,
    }
    extracted_data = analysis.model_dump(mode="json", exclude={"raw_model_response"})
    extracted_data["validation_metadata"] = {
        "validation_passed": analysis.validation_passed,
        "validation_issues": analysis.validation_issues,
        "validation_warnings": analysis.validation_warnings,
        "images_expected": metrics.expected_images,
        "images_analyzed": metrics.images_analyzed,
        "gauge_readings_extracted": metrics.gauge_readings_found,
        "completeness_score": metrics.data_completeness,
    }

    insert_query = """
        INSERT INTO ai_analysis_results (
            gemstone_id, analysis_type, input_data, raw_response, extracted_data,
            confidence_score, processing_cost_usd, processing_time_ms,
            ai_model_version, created_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id;
    """
    values = (
        item_id,
        ANALYSIS_TYPE,
        Json(input_data),
        analysis.raw_model_response,
        Json(extracted_data),
        metrics.confidence_score,
        metadata.cost_usd,
        metadata.time_ms,
        metadata.model_version,
        datetime.now(pytz.utc),
    )

    try:
        with connection.cursor() as cursor:
            cursor.execute(insert_query, values)
            analysis_id = cursor.fetchone()[0]
        connection.commit()
    except Exception as e:
        logger.exception("Failed to save analysis for gemstone_id=%s", item_id)
        connection.rollback()
        raise PersistenceError(
            f"Failed to save analysis: {e}",
            step="analysis_record",
            recovery=f"Re-run the analysis for this gemstone with --gems {item_id}",
        ) from e

    logger.info(
        "Saved analysis result with ID: %s (%s, %d issues, %d warnings)",
        analysis_id,
        analysis.validation_status,
        len(analysis.validation_issues),
        len(analysis.validation_warnings),
    )
    return str(analysis_id)


def update_primary_image_flags(connection, item_id: str, decision: PrimaryImageDecision) -> None:
    """
    Clear every primary flag for the gemstone, then set exactly one.
    """
    clear_query = "UPDATE gemstone_images SET is_primary = false WHERE gemstone_id = %s;"
    set_query = """
        UPDATE gemstone_images
        SET is_primary = true, ai_primary_score = %s, ai_primary_reasoning = %s,
            ai_primary_needs_review = %s
        WHERE id = %s AND gemstone_id = %s;
    """

    try:
        with connection.cursor() as cursor:
            cursor.execute(clear_query, (item_id,))
            cursor.execute(
                set_query,
                (decision.score, decision.reasoning, decision.needs_review, decision.image_id, item_id),
            )
            if cursor.rowcount != 1:
                raise ValueError(f"image {decision.image_id} does not belong to gemstone {item_id}")
        connection.commit()
    except Exception as e:
        logger.exception("Failed to update primary image flags for gemstone_id=%s", item_id)
        connection.rollback()
        raise PersistenceError(
            f"Failed to update primary image flags: {e}",
            step="primary_image_flags",
            recovery=(
                f"UPDATE gemstone_images SET is_primary = (id = '{decision.image_id}') "
                f"WHERE gemstone_id = '{item_id}'"
            ),
        ) from e

    logger.info(
        "Set image %s (index %d) as primary for gemstone_id=%s (score: %s)",
        decision.image_id,
        decision.index,
        item_id,
        decision.score,
    )


def mark_gemstone_analyzed(connection, item_id: str, analysis: ConsolidatedAnalysis) -> None:
    """
    Set the denormalized analysis summary columns on the gemstone row.
    """
    update_query = """
        UPDATE gemstones
        SET ai_analyzed = true, ai_analysis_date = %s,
            ai_confidence_score = %s, ai_data_completeness = %s
        WHERE id = %s;
    """
    metrics = analysis.overall_metrics

    try:
        with connection.cursor() as cursor:
            cursor.execute(
                update_query,
                (datetime.now(pytz.utc), metrics.confidence_score, metrics.data_completeness, item_id),
            )
        connection.commit()
    except Exception as e:
        logger.exception("Failed to mark gemstone as analyzed for gemstone_id=%s", item_id)
        connection.rollback()
        raise PersistenceError(
            f"Failed to mark gemstone as analyzed: {e}",
            step="mark_analyzed",
            recovery=f"UPDATE gemstones SET ai_analyzed = true WHERE id = '{item_id}'",
        ) from e

    logger.info("Marked gemstone_id=%s as analyzed", item_id)


def save_gauge_readings(
    connection, item_id: str, analysis_id: str, readings: Sequence[GaugeReading]
) -> int:
    """
    Insert one row per instrument reading. Readings are recorded, never merged.
    """
    if not readings:
        return 0

    insert_query = """
        INSERT INTO ai_gauge_readings (
            gemstone_id, analysis_id, device_type, measurement_type, reading_value,
            unit, confidence, display_text, image_index, extraction_notes, created_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s);
    """
    created_at = datetime.now(pytz.utc)
    rows = [
        (
            item_id,
            analysis_id,
            reading.device_type,
            reading.measurement_type,
            reading.value,
            reading.unit,
            reading.confidence,
            reading.display_text,
            reading.image_index or 0,
            f"Reading shown as: {reading.display_text}" if reading.display_text else "Digital display reading",
            created_at,
        )
        for reading in readings
    ]

    try:
        with connection.cursor() as cursor:
            cursor.executemany(insert_query, rows)
        connection.commit()
    except Exception as e:
        logger.exception("Failed to save gauge readings for gemstone_id=%s", item_id)
        connection.rollback()
        raise PersistenceError(
            f"Failed to save gauge readings: {e}",
            step="gauge_readings",
            recovery=(
                f"Readings are kept in ai_analysis_results.extracted_data -> 'gauge_readings' "
                f"WHERE id = '{analysis_id}'"
            ),
        ) from e

    by_type: Dict[str, int] = {}
    for reading in readings:
        key = reading.measurement_type or "unknown"
        by_type[key] = by_type.get(key, 0) + 1
    logger.info("Saved %d gauge readings (%s)", len(rows), by_type)
    return len(rows)


def apply_extracted_attributes(
    connection, item_id: str, extracted: ExtractedGemstoneAttributes
) -> List[str]:
    """
    Write ai_* attribute columns, never where a manual value exists.

    Returns:
        List[str]: names of the attributes that were written
    """
    manual_columns = ", ".join(ATTRIBUTE_FIELDS)
    select_query = f"SELECT {manual_columns} FROM gemstones WHERE id = %s;"

    try:
        with connection.cursor() as cursor:
            cursor.execute(select_query, (item_id,))
            row = cursor.fetchone()
            if row is None:
                raise ValueError(f"gemstone {item_id} not found")

            manual = dict(zip(ATTRIBUTE_FIELDS, row))
            ai_values = extracted.attribute_values()
            updates = [
                field
                for field in ATTRIBUTE_FIELDS
                if should_update_field(manual[field], ai_values[field], extracted.extraction_confidence)
            ]

            assignments = [f"ai_{field} = %s" for field in updates]
            assignments += ["ai_extraction_confidence = %s", "ai_extracted_date = %s"]
            values: List[Any] = [ai_values[field] for field in updates]
            values += [extracted.extraction_confidence, extracted.extracted_at, item_id]
            cursor.execute(
                f"UPDATE gemstones SET {', '.join(assignments)} WHERE id = %s;", tuple(values)
            )
        connection.commit()
    except Exception as e:
        logger.exception("Failed to apply extracted attributes for gemstone_id=%s", item_id)
        connection.rollback()
        raise PersistenceError(
            f"Failed to apply extracted attributes: {e}",
            step="extracted_attributes",
            recovery=f"Re-run the analysis for this gemstone with --clear --gems {item_id}",
        ) from e

    logger.info("Applied AI attributes for gemstone_id=%s: %s", item_id, updates or "none")
    return updates


def save_analysis(
    connection,
    item_id: str,
    analysis: ConsolidatedAnalysis,
    decision: Optional[PrimaryImageDecision] = None,
    extracted: Optional[ExtractedGemstoneAttributes] = None,
) -> Tuple[str, List[str]]:
    """
    Persist one consolidated analysis.

    Steps run in order: analysis record, primary image flags, analyzed
    summary, gauge readings, extracted attributes. Only a failure of the
    first step is raised; later failures are logged with their manual
    recovery statement and reported back.

    Returns:
        Tuple[str, List[str]]: analysis id and the names of failed steps

    Raises:
        PersistenceError: If the analysis record itself cannot be written
    """
    if not analysis.validation_passed:
        logger.warning("Saving analysis for gemstone_id=%s with validation issues:", item_id)
        for issue in analysis.validation_issues:
            logger.warning("  - %s", issue)

    analysis_id = save_analysis_record(connection, item_id, analysis)

    steps = []
    if decision is not None:
        steps.append(lambda: update_primary_image_flags(connection, item_id, decision))
    steps.append(lambda: mark_gemstone_analyzed(connection, item_id, analysis))
    steps.append(lambda: save_gauge_readings(connection, item_id, analysis_id, analysis.gauge_readings))
    if extracted is not None:
        steps.append(lambda: apply_extracted_attributes(connection, item_id, extracted))

    failures = []
    for step in steps:
        try:
            step()
        except PersistenceError as e:
            failures.append(e.step)
            logger.error("Persistence step '%s' failed for gemstone_id=%s: %s", e.step, item_id, e.message)
            logger.error("Manual fix: %s", e.recovery)

    return analysis_id, failures


def get_gemstones_for_analysis(
    connection, limit: Optional[int] = None, item_ids: Optional[List[str]] = None
) -> List[AnalysisRequest]:
    """
    Select the work queue: gemstones with at least one image, oldest first.

    With item_ids the listed gemstones are returned whether analyzed or not.
    Otherwise only gemstones that are not marked analyzed and have no
    analysis row yet are returned.
    """
    if item_ids:
        condition = "g.id::text = ANY(%s)"
        params: List[Any] = [list(item_ids)]
        logger.info("Targeting specific gemstones: %s", ", ".join(item_ids))
    else:
        condition = (
            "g.ai_analyzed IS NOT TRUE AND NOT EXISTS "
            "(SELECT 1 FROM ai_analysis_results r WHERE r.gemstone_id = g.id)"
        )
        params = []
    params.append(limit)

    query = f"""
        WITH targets AS (
            SELECT g.id, g.serial_number, g.created_at
            FROM gemstones g
            WHERE {condition}
              AND EXISTS (SELECT 1 FROM gemstone_images gi WHERE gi.gemstone_id = g.id)
            ORDER BY g.created_at ASC, g.id ASC
            LIMIT %s
        )
        SELECT t.id, t.serial_number, i.id, i.image_url, i.original_filename, i.image_order
        FROM targets t
        JOIN gemstone_images i ON i.gemstone_id = t.id
        ORDER BY t.created_at ASC, t.id ASC, i.image_order ASC NULLS LAST, i.id ASC;
    """

    try:
        with connection.cursor() as cursor:
            cursor.execute(query, tuple(params))
            rows = cursor.fetchall()
    except Exception:
        logger.exception("Failed to fetch gemstones for analysis")
        connection.rollback()
        raise

    requests: Dict[str, AnalysisRequest] = {}
    for gem_id, serial_number, image_id, url, filename, order in rows:
        request = requests.get(str(gem_id))
        if request is None:
            request = AnalysisRequest(item_id=gem_id, serial_number=serial_number)
            requests[request.item_id] = request
        request.images.append(
            ImageRef(
                id=image_id,
                url=url,
                original_filename=filename,
                order=order if order is not None else len(request.images),
            )
        )

    result = list(requests.values())
    logger.info("Found %d gemstones ready for analysis", len(result))
    logger.info("Total images to process: %d", sum(r.image_count for r in result))
    return result


def clear_existing_analysis(connection, item_ids: Optional[List[str]] = None) -> int:
    """
    Delete prior analysis results and reset analysis flags. Irreversible.

    Args:
        item_ids: Gemstones to clear; all gemstones when omitted

    Returns:
        int: number of analysis rows deleted
    """
    if item_ids:
        logger.warning(
            "IRREVERSIBLE: clearing AI analysis data for %d gemstones: %s",
            len(item_ids),
            ", ".join(item_ids),
        )
        child_filter = "WHERE gemstone_id::text = ANY(%s)"
        gemstone_filter = "WHERE id::text = ANY(%s)"
        params: Tuple[Any, ...] = (list(item_ids),)
    else:
        logger.warning("IRREVERSIBLE: clearing AI analysis data for ALL gemstones")
        child_filter = gemstone_filter = ""
        params = ()

    try:
        with connection.cursor() as cursor:
            cursor.execute(f"DELETE FROM ai_gauge_readings {child_filter};", params)
            cursor.execute(f"DELETE FROM ai_analysis_results {child_filter};", params)
            deleted = cursor.rowcount
            cursor.execute(
                f"""
                UPDATE gemstones
                SET ai_analyzed = false, ai_analysis_date = NULL,
                    ai_confidence_score = NULL, ai_data_completeness = NULL
                {gemstone_filter};
                """,
                params,
            )
            cursor.execute(
                f"""
                UPDATE gemstone_images
                SET ai_primary_score = NULL, ai_primary_reasoning = NULL,
                    ai_primary_needs_review = false
                {child_filter};
                """,
                params,
            )
        connection.commit()
    except Exception:
        logger.exception("Failed to clear existing analysis data")
        connection.rollback()
        raise

    logger.warning("Cleared %d analysis results", deleted)
    return deleted


def get_analysis_statistics(connection) -> Dict[str, Any]:
    """
    Summarize what is already in the database before a run.

    data_sources counts attribute fields across all gemstones by where
    their value came from: manual only, AI only, both, or neither.
    """
    query = """
        SELECT
            (SELECT COUNT(*) FROM gemstones),
            (SELECT COUNT(*) FROM gemstones WHERE ai_analyzed IS TRUE),
            (SELECT COUNT(*) FROM gemstone_images),
            (SELECT COUNT(*) FROM ai_analysis_results WHERE analysis_type = %s),
            (SELECT COALESCE(SUM(processing_cost_usd), 0) FROM ai_analysis_results WHERE analysis_type = %s),
            (SELECT COALESCE(SUM(processing_time_ms), 0) FROM ai_analysis_results WHERE analysis_type = %s);
    """
    attribute_columns = list(ATTRIBUTE_FIELDS) + [f"ai_{field}" for field in ATTRIBUTE_FIELDS]
    sources_query = f"SELECT {', '.join(attribute_columns)} FROM gemstones;"

    try:
        with connection.cursor() as cursor:
            cursor.execute(query, (ANALYSIS_TYPE, ANALYSIS_TYPE, ANALYSIS_TYPE))
            total, analyzed, images, analyses, cost, time_ms = cursor.fetchone()
            cursor.execute(sources_query)
            rows = cursor.fetchall()
    except Exception:
        logger.exception("Failed to read analysis statistics")
        connection.rollback()
        raise

    data_sources = {"manual": 0, "ai_only": 0, "both": 0, "empty": 0}
    for row in rows:
        for source, count in count_data_sources(dict(zip(attribute_columns, row))).items():
            data_sources[source] += count

    return {
        "total_gemstones": total or 0,
        "analyzed_gemstones": analyzed or 0,
        "total_images": images or 0,
        "analysis_count": analyses or 0,
        "total_cost_usd": float(cost or 0),
        "total_processing_time_ms": int(time_ms or 0),
        "success_rate": round(analyzed / total * 100, 1) if total else 0.0,
        "data_sources": data_sources,
    }
