"""
Multi-Image Gemstone Analysis Package.

This package analyzes every photograph of a gemstone in a single OpenAI
vision request, validates that each image was accounted for, extracts
cross-verified measurements and stores the consolidated result.
"""

__version__ = "1.0.0"
__author__ = "PsiSquare"


from gemstone_analysis.config import load_config, get_project_root
from gemstone_analysis.logger import setup_logging
from gemstone_analysis.models import (
    AnalysisRequest,
    Config,
    ConsolidatedAnalysis,
    ExtractedGemstoneAttributes,
    FewShotExample,
    ProcessingResult,
)
from gemstone_analysis.data_extractor import extract_gemstone_data, should_update_field, count_data_sources
from gemstone_analysis.prompt_loader import build_prompt, load_prompt, load_few_shot_examples
from gemstone_analysis.response_parser import parse_model_response
from gemstone_analysis.validator import validate

__all__ = [
    "AnalysisRequest",
    "Config",
    "ConsolidatedAnalysis",
    "ExtractedGemstoneAttributes",
    "FewShotExample",
    "ProcessingResult",
    "load_config",
    "get_project_root",
    "setup_logging",
    "extract_gemstone_data",
    "should_update_field",
    "count_data_sources",
    "build_prompt",
    "load_prompt",
    "load_few_shot_examples",
    "parse_model_response",
    "validate",
]
