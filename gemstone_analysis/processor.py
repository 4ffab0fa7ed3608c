"""
Per-gemstone analysis pipeline.

fetch images -> render prompt -> invoke model -> parse -> validate ->
extract attributes -> select primary image -> persist
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Union

import pytz

from gemstone_analysis.data_extractor import extract_gemstone_data
from gemstone_analysis.db_operations import save_analysis
from gemstone_analysis.exceptions import (
    CriticalValidationError,
    GemstoneAnalysisError,
    ImageBatchMismatchError,
)
from gemstone_analysis.image_fetcher import ImageFetcher
from gemstone_analysis.models import (
    AnalysisRequest,
    ConsolidatedAnalysis,
    ImageBatchEntry,
    ImagePayload,
    ModelResponse,
    OverallMetrics,
    PrimaryImageSelection,
    ProcessingMetadata,
    ProcessingResult,
)
from gemstone_analysis.openai_client import VisionModelClient
from gemstone_analysis.primary_image import PrimaryImageSelector
from gemstone_analysis.prompt_loader import build_prompt
from gemstone_analysis.response_parser import NormalizedResponse, ParseFailure, parse_model_response
from gemstone_analysis.validator import critical_issues, validate

logger = logging.getLogger(__name__)


def build_consolidated_analysis(
    parsed: Union[NormalizedResponse, ParseFailure],
    payloads: List[ImagePayload],
    response: ModelResponse,
) -> ConsolidatedAnalysis:
    """
    Combine a parsed reply with its validation result and run metadata.

    A ParseFailure becomes an analysis with validation_passed=False and the
    raw text preserved.
    """
    expected = len(payloads)
    metadata = ProcessingMetadata(
        image_count=expected,
        time_ms=response.time_ms,
        cost_usd=response.cost_usd,
        prompt_tokens=response.usage.prompt_tokens,
        completion_tokens=response.usage.completion_tokens,
        total_tokens=response.usage.total_tokens,
        model_version=response.model,
        timestamp=datetime.now(pytz.utc).isoformat(),
        image_batch=[
            ImageBatchEntry(image_id=p.image_id, filename=p.filename, order=p.order) for p in payloads
        ],
    )

    if isinstance(parsed, ParseFailure):
        metadata.parse_error = parsed.error
        return ConsolidatedAnalysis(
            validation_passed=False,
            validation_issues=[f"JSON parsing failed: {parsed.error}"],
            overall_metrics=OverallMetrics(expected_images=expected),
            processing_metadata=metadata,
            raw_model_response=parsed.raw_text,
        )

    validation = validate(parsed, expected)
    individual = parsed.individual_analyses or []

    return ConsolidatedAnalysis(
        validation_passed=validation.passed,
        validation_issues=validation.issues,
        validation_warnings=validation.warnings,
        consolidated_data=parsed.consolidated_data or {},
        individual_analyses=individual,
        gauge_readings=parsed.gauge_readings,
        data_verification=parsed.data_verification,
        primary_image_selection=parsed.primary_image_selection or PrimaryImageSelection(),
        overall_metrics=OverallMetrics(
            confidence_score=parsed.overall_confidence,
            data_completeness=parsed.data_completeness,
            cross_verification_score=parsed.cross_verification_score,
            images_analyzed=len(individual),
            expected_images=expected,
            gauge_readings_found=len(parsed.gauge_readings),
        ),
        processing_metadata=metadata,
        raw_model_response=response.raw_text,
    )


class GemstoneProcessor:
    """Runs one gemstone through the full pipeline."""

    def __init__(
        self,
        fetcher: ImageFetcher,
        model_client: VisionModelClient,
        connection,
        primary_selector: Optional[PrimaryImageSelector] = None,
        prompt_template: Optional[str] = None,
    ):
        self.fetcher = fetcher
        self.model_client = model_client
        self.connection = connection
        self.primary_selector = primary_selector or PrimaryImageSelector()
        self.prompt_template = prompt_template

    def analyze(
        self, request: AnalysisRequest, on_stage: Optional[Callable[[str], None]] = None
    ) -> ProcessingResult:
        """
        Analyze every image of one gemstone in a single model call.

        Item-level failures are returned as an unsuccessful ProcessingResult
        tagged with the failing stage; they never propagate.

        Args:
            request: The gemstone and its ordered images
            on_stage: Called with each stage name as the item enters it

        Returns:
            ProcessingResult: outcome of the item
        """
        notify = on_stage or (lambda stage: None)
        stage = "fetching"
        cost = 0.0
        time_ms = 0

        try:
            notify(stage)
            logger.info(f"Analyzing {request.image_count} images for gemstone {request.label} in a single batch")
            payloads = self.fetcher.fetch_all(request.images)
            if len(payloads) != request.image_count:
                raise ImageBatchMismatchError(expected=request.image_count, fetched=len(payloads))

            stage = "invoking"
            notify(stage)
            prompt = build_prompt(len(payloads), self.prompt_template)
            response = self.model_client.invoke(prompt, payloads)
            cost, time_ms = response.cost_usd, response.time_ms

            stage = "validating"
            notify(stage)
            parsed = parse_model_response(response.raw_text)
            analysis = build_consolidated_analysis(parsed, payloads, response)
            if not analysis.validation_passed:
                critical = critical_issues(analysis.validation_issues)
                if critical:
                    raise CriticalValidationError(critical)

            extracted = None
            decision = None
            if not isinstance(parsed, ParseFailure):
                extracted = extract_gemstone_data(analysis)
                decision = self.primary_selector.select(
                    analysis.primary_image_selection,
                    analysis.processing_metadata.image_batch,
                    analysis.individual_analyses,
                )

            stage = "persisting"
            notify(stage)
            _, failures = save_analysis(self.connection, request.item_id, analysis, decision, extracted)

        except GemstoneAnalysisError as e:
            logger.error(f"Error analyzing gemstone {request.label} during {e.stage}: {e.message}")
            return ProcessingResult(
                item_id=request.item_id,
                success=False,
                error=e.message,
                stage=e.stage,
                image_count=request.image_count,
                cost_usd=cost,
                time_ms=time_ms,
            )
        except Exception as e:
            logger.exception(f"Unexpected error analyzing gemstone {request.label} during {stage}")
            return ProcessingResult(
                item_id=request.item_id,
                success=False,
                error=f"{type(e).__name__}: {e}",
                stage=stage,
                image_count=request.image_count,
                cost_usd=cost,
                time_ms=time_ms,
            )

        logger.info(
            f"Gemstone {request.label} analyzed ({analysis.validation_status}): "
            f"{request.image_count} images, ${cost:.4f}, {time_ms}ms"
        )

        return ProcessingResult(
            item_id=request.item_id,
            success=True,
            analysis=analysis,
            extracted=extracted,
            image_count=request.image_count,
            cost_usd=cost,
            time_ms=time_ms,
            persistence_failures=failures,
            primary_image=decision,
        )
