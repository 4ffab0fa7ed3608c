"""
Pydantic models for type safety and validation.

This module defines all data models used throughout the pipeline, from the
per-item analysis request down to the consolidated, persisted analysis.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ImageRef(BaseModel):
    """A stored image belonging to one gemstone."""

    id: str = Field(..., description="Image row identifier")
    url: str = Field(..., description="Public URL of the image")
    original_filename: Optional[str] = Field(None, description="Filename at upload time")
    order: int = Field(default=0, description="Display order within the gemstone")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        """Database UUIDs and integer keys are both accepted as strings."""
        return str(v)


class AnalysisRequest(BaseModel):
    """One gemstone and the ordered list of images to analyze together."""

    item_id: str = Field(..., description="Gemstone identifier")
    serial_number: Optional[str] = Field(None, description="Human-facing serial number")
    images: List[ImageRef] = Field(default_factory=list, description="Images in analysis order")

    @field_validator("item_id", mode="before")
    @classmethod
    def coerce_item_id(cls, v: Any) -> str:
        return str(v)

    @property
    def image_count(self) -> int:
        return len(self.images)

    @property
    def label(self) -> str:
        return self.serial_number or self.item_id


class ImagePayload(BaseModel):
    """An image downloaded and encoded for transmission to the model."""

    image_id: str
    filename: str
    encoded_bytes: str = Field(..., description="data: URI with base64 content")
    order: int = 0


class PerImageAnalysis(BaseModel):
    """Normalized analysis of one image inside the batch."""

    image_index: Optional[int] = Field(None, description="1-based position in the batch")
    classification: Optional[str] = None
    extracted_data: Dict[str, Any] = Field(default_factory=dict)
    confidence: Optional[float] = None
    notes: Optional[str] = None
    primary_suitability_score: Optional[float] = None


class GaugeReading(BaseModel):
    """One value read off a physical instrument visible in a photograph."""

    image_index: Optional[int] = None
    device_type: Optional[str] = None
    measurement_type: Optional[str] = None
    value: Optional[float] = None
    unit: Optional[str] = None
    confidence: Optional[float] = None
    display_text: str = ""


class PrimaryImageSelection(BaseModel):
    """The model's choice of display image, index is 1-based."""

    index: Optional[int] = None
    score: float = 0.0
    confidence: float = 0.0
    reasoning: Optional[str] = None
    sub_scores: Dict[str, Any] = Field(default_factory=dict)
    disqualified_images: List[Any] = Field(default_factory=list)


class PrimaryImageDecision(BaseModel):
    """A primary selection mapped back onto a concrete stored image."""

    image_id: str
    index: int
    score: float = 0.0
    reasoning: str = "Selected by AI analysis"
    needs_review: bool = False
    review_reason: Optional[str] = None


class OverallMetrics(BaseModel):
    confidence_score: float = 0.0
    data_completeness: float = 0.0
    cross_verification_score: float = 0.0
    images_analyzed: int = 0
    expected_images: int = 0
    gauge_readings_found: int = 0


class ImageBatchEntry(BaseModel):
    image_id: str
    filename: str
    order: int = 0


class ProcessingMetadata(BaseModel):
    image_count: int = 0
    time_ms: int = 0
    cost_usd: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model_version: Optional[str] = None
    timestamp: Optional[str] = None
    image_batch: List[ImageBatchEntry] = Field(default_factory=list)
    parse_error: Optional[str] = None


class ValidationResult(BaseModel):
    """Outcome of completeness validation. Issues can escalate, warnings never do."""

    passed: bool = True
    issues: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    expected_images: int = 0
    actual_analyses: int = 0
    gauge_readings_found: int = 0


class ConsolidatedAnalysis(BaseModel):
    """The merged result of analyzing all images of one gemstone in one model call."""

    validation_passed: bool = False
    validation_issues: List[str] = Field(default_factory=list)
    validation_warnings: List[str] = Field(default_factory=list)
    consolidated_data: Dict[str, Any] = Field(default_factory=dict)
    individual_analyses: List[PerImageAnalysis] = Field(default_factory=list)
    gauge_readings: List[GaugeReading] = Field(default_factory=list)
    data_verification: Dict[str, Any] = Field(default_factory=dict)
    primary_image_selection: PrimaryImageSelection = Field(default_factory=PrimaryImageSelection)
    overall_metrics: OverallMetrics = Field(default_factory=OverallMetrics)
    processing_metadata: ProcessingMetadata = Field(default_factory=ProcessingMetadata)
    raw_model_response: str = ""

    @property
    def validation_status(self) -> str:
        return "complete" if self.validation_passed else "incomplete"


class MeasurementSource(BaseModel):
    """One reading that was considered for an extracted field."""

    image_index: Optional[int] = None
    method: Optional[str] = None
    value: Any = None
    confidence: Optional[float] = None


class ExtractedField(BaseModel):
    value: Any = None
    confidence: Optional[float] = None
    sources: List[MeasurementSource] = Field(default_factory=list)


class ExtractedGemstoneAttributes(BaseModel):
    """Canonical per-gemstone attributes derived from one analysis run."""

    weight_carats: Optional[float] = None
    length_mm: Optional[float] = None
    width_mm: Optional[float] = None
    depth_mm: Optional[float] = None
    color: Optional[str] = None
    clarity: Optional[str] = None
    cut: Optional[str] = None
    extraction_confidence: float = Field(default=0.0, ge=0, le=1)
    extracted_at: Optional[str] = None
    strategy: Optional[str] = Field(None, description="Extraction strategy that produced the values")
    fields: Dict[str, ExtractedField] = Field(default_factory=dict)

    def attribute_values(self) -> Dict[str, Any]:
        """Return the seven gemstone attributes keyed by their manual column name."""
        return {
            "weight_carats": self.weight_carats,
            "length_mm": self.length_mm,
            "width_mm": self.width_mm,
            "depth_mm": self.depth_mm,
            "color": self.color,
            "clarity": self.clarity,
            "cut": self.cut,
        }


class CostRecord(BaseModel):
    """Append-only cost entry, used for reporting only."""

    item_id: str
    image_count: int
    cost_usd: float
    time_ms: int


class FewShotExample(BaseModel):
    """Model representing a few-shot example for the AI."""

    role: str = Field(..., description="Role in the conversation (user/assistant)")
    content: str = Field(..., description="Content of the message")

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        """Validate that role is either 'user' or 'assistant'."""
        if v not in ["user", "assistant", "system"]:
            raise ValueError("Role must be 'user', 'assistant', or 'system'")
        return v


class ModelUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ModelResponse(BaseModel):
    """Model representing a vision model reply."""

    raw_text: str = Field(..., description="Response content from the API")
    model: str = Field(..., description="Model used for the response")
    usage: ModelUsage = Field(default_factory=ModelUsage)
    cost_usd: float = 0.0
    time_ms: int = 0


class Config(BaseModel):
    """Application configuration model."""

    openai_api_key: str = Field(..., description="OpenAI API key")
    openai_base_url: Optional[str] = Field(None, description="Override for the OpenAI API base URL")
    model_name: str = Field(default="gpt-5-mini", description="Vision model to use")
    request_timeout: float = Field(default=180.0, gt=0, description="Model call timeout in seconds")
    db_name: str = Field(default="postgres")
    db_user: str = Field(default="postgres")
    db_password: str = Field(default="")
    db_host: str = Field(default="localhost")
    db_port: str = Field(default="5432")
    image_fetch_timeout: float = Field(default=30.0, gt=0)
    image_fetch_attempts: int = Field(default=3, gt=0)
    image_fetch_backoff: float = Field(default=0.5, ge=0)
    prompt_file: Optional[str] = Field(None, description="Optional prompt template override")
    few_shot_file: Optional[str] = Field(None, description="Optional YAML file with few-shot examples")
    primary_image_policy: Literal["flag", "reject"] = Field(default="flag")
    primary_image_min_score: float = Field(default=60.0, ge=0, le=100)
    log_level: str = Field(default="INFO")
    log_dir: str = Field(default="logs")

    model_config = ConfigDict(
        protected_namespaces=(),
        json_schema_extra={
            "example": {
                "openai_api_key": "sk-...",
                "model_name": "gpt-5-mini",
                "request_timeout": 180,
                "db_host": "localhost",
                "primary_image_policy": "flag",
            }
        }
    )

    def db_params(self) -> Dict[str, str]:
        """Connection keyword arguments for psycopg2.connect."""
        return {
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
            "host": self.db_host,
            "port": self.db_port,
        }


class ProcessingResult(BaseModel):
    """Model representing the outcome of analyzing one gemstone."""

    item_id: str
    success: bool = Field(..., description="Whether processing was successful")
    analysis: Optional[ConsolidatedAnalysis] = Field(None, description="Consolidated analysis if produced")
    extracted: Optional[ExtractedGemstoneAttributes] = None
    primary_image: Optional[PrimaryImageDecision] = None
    error: Optional[str] = Field(None, description="Error message if processing failed")
    stage: Optional[str] = Field(None, description="Pipeline stage that failed")
    image_count: int = 0
    cost_usd: float = 0.0
    time_ms: int = 0
    persistence_failures: List[str] = Field(default_factory=list)
