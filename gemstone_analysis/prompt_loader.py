"""
Prompt and few-shot example loader module.

This module renders the multi-image analysis prompt for an exact image
count, optionally from a template file, and loads few-shot examples from
YAML files in a format ready for the OpenAI API.
"""

import importlib.util
import logging
from typing import Any, Dict, List, Optional

import yaml

from gemstone_analysis.config import get_absolute_path
from gemstone_analysis.models import FewShotExample

logger = logging.getLogger(__name__)

IMAGE_COUNT_PLACEHOLDER = "{IMAGE_COUNT}"

SYSTEM_PROMPT = (
    "You are a precise gemstone analysis expert. Analyze all images and "
    "provide structured JSON measurements."
)

MULTI_IMAGE_ANALYSIS_PROMPT = """You are an expert gemstone analyst. I am providing {IMAGE_COUNT} images of ONE physical gemstone. Photos may show the stone itself, inventory labels, digital scales, calipers, analog thickness gauges, certificates or packaging.

**TASK: Analyze all {IMAGE_COUNT} images and return exactly {IMAGE_COUNT} per-image entries.**

For EACH image:
1. Classify it as one of: gemstone_beauty_shot, gemstone_photo, measurement_gauge, thickness_gauge, scale_reading, certificate, label, packaging, comparison, environment, other.
2. Transcribe any text (labels are often Russian/Cyrillic; normalize decimal commas to periods, e.g. "2,48" -> 2.48).
3. Read EVERY visible measuring device: digital caliper (length/width in mm), analog thickness gauge (depth in mm, read the needle against the scale), digital scale (weight in ct or g).
4. Give a confidence between 0.0 and 1.0 for the image and for every value read.

**PRIMARY IMAGE SELECTION (MANDATORY)**
Select ONE image for product display. Never select labels, gauges, scales, certificates or blurry images.
Score candidates 0-100: focus 0-25, lighting 0-25, background 0-20, color fidelity 0-20, composition 0-10.

**CROSS-VERIFICATION**
Combine readings of the same quantity from different sources (label, scale, caliper, certificate). Report the chosen value, its confidence and ALL sources. Do not average conflicting readings; list them as conflicts.

**RESPONSE FORMAT: ONLY one JSON object, no prose, no markdown.**
{
  "validation": {
    "total_images_provided": {IMAGE_COUNT},
    "total_images_analyzed": {IMAGE_COUNT},
    "analysis_complete": true,
    "missing_images": []
  },
  "individual_analyses": [
    {
      "image_index": 1,
      "image_classification": "scale_reading",
      "primary_suitability_score": 10,
      "extracted_data": {
        "text_extraction": {"raw_text": "", "translated_text": ""},
        "measurements": [
          {"device_type": "digital_scale", "measurement_type": "weight", "reading_value": 2.47, "unit": "ct", "display_text": "2.47 ct", "confidence": 0.98}
        ]
      },
      "confidence": 0.95,
      "analysis_notes": "Digital scale showing weight"
    }
  ],
  "consolidated_data": {
    "measurements_cross_verified": {
      "weight_ct": {"value": 2.47, "confidence": 0.97, "sources": [{"image_index": 1, "method": "digital scale", "value": 2.47, "confidence": 0.98}]},
      "length_mm": {"value": 8.83, "confidence": 0.95, "sources": []},
      "width_mm": {"value": 8.12, "confidence": 0.95, "sources": []},
      "depth_mm": {"value": 3.2, "confidence": 0.9, "sources": []}
    },
    "color": {"value": "green", "confidence": 0.85},
    "clarity": {"value": "VS1", "confidence": 0.7},
    "shape_cut": {"value": "oval", "confidence": 0.95},
    "all_gauge_readings": [
      {"image_index": 1, "device_type": "digital_scale", "measurement_type": "weight", "reading_value": 2.47, "unit": "ct", "display_text": "2.47 ct", "confidence": 0.98}
    ]
  },
  "data_verification": {
    "cross_verified_fields": [],
    "conflicting_fields": [],
    "verification_notes": ""
  },
  "primary_image_selection": {
    "selected_image_index": 2,
    "score": 92,
    "confidence": 0.9,
    "reasoning": "Sharp focus, neutral background, true color",
    "sub_scores": {"focus": 24, "lighting": 23, "background": 18, "color_fidelity": 18, "composition": 9},
    "disqualified_images": [1]
  },
  "overall_confidence": 0.9,
  "data_completeness": 0.85
}
"""

VALIDATION_CHECKLIST = """
**VALIDATION CHECKLIST (your response is rejected if any item fails):**
- individual_analyses contains EXACTLY {IMAGE_COUNT} entries
- image_index values are exactly 1 to {IMAGE_COUNT}, each used once, in the order the images were given
- every measuring device visible in any of the {IMAGE_COUNT} images has a gauge reading
- primary_image_selection names one product photo with a score and reasoning
- validation.total_images_analyzed equals {IMAGE_COUNT}
"""


def render(template: str, image_count: int) -> str:
    return template.replace(IMAGE_COUNT_PLACEHOLDER, str(image_count))


def build_prompt(image_count: int, template: Optional[str] = None) -> str:
    """
    Render the analysis instructions for an exact image count.

    The count is stated in the task framing and again in a validation
    checklist. A custom template without the placeholder still gets an
    explicit task line carrying the count.

    Args:
        image_count: Number of images attached to the request
        template: Optional template text using the {IMAGE_COUNT} placeholder

    Returns:
        str: Prompt text

    Raises:
        ValueError: If image_count is not positive
    """
    if image_count < 1:
        raise ValueError(f"image_count must be positive, got {image_count}")

    template = template if template is not None else MULTI_IMAGE_ANALYSIS_PROMPT

    if IMAGE_COUNT_PLACEHOLDER not in template:
        template = (
            "**TASK: Analyze all {IMAGE_COUNT} images of one gemstone.**\n\n" + template
        )

    return render(template, image_count).rstrip() + "\n" + render(VALIDATION_CHECKLIST, image_count)


def load_prompt(prompt_file: str) -> str:
    """
    Load a prompt template from a file (supports .txt and .py files).

    For .py files, it imports the module and calls get_prompt() or uses the
    MULTI_IMAGE_ANALYSIS_PROMPT constant.

    Args:
        prompt_file: Path to the prompt file

    Returns:
        str: Template text

    Raises:
        FileNotFoundError: If the prompt file doesn't exist
        IOError: If there's an error reading the file
    """
    prompt_path = get_absolute_path(prompt_file)

    if not prompt_path.exists():
        logger.error(f"Prompt file not found: {prompt_path}")
        raise FileNotFoundError(f"Prompt file not found: {prompt_path}")

    try:
        if prompt_path.suffix == ".py":
            logger.debug(f"Loading prompt from Python module: {prompt_path}")

            spec = importlib.util.spec_from_file_location("prompt_module", prompt_path)
            if spec is None or spec.loader is None:
                raise ImportError(f"Could not load module from {prompt_path}")

            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)

            if hasattr(module, "get_prompt"):
                prompt_content = module.get_prompt()
            elif hasattr(module, "MULTI_IMAGE_ANALYSIS_PROMPT"):
                prompt_content = module.MULTI_IMAGE_ANALYSIS_PROMPT
            else:
                raise AttributeError(
                    "Python module must have either get_prompt() function "
                    "or MULTI_IMAGE_ANALYSIS_PROMPT constant"
                )
        else:
            logger.debug(f"Loading prompt from text file: {prompt_path}")
            with open(prompt_path, "r", encoding="utf-8") as file:
                prompt_content = file.read()

        logger.debug(f"Loaded prompt from {prompt_path} ({len(prompt_content)} characters)")
        return prompt_content

    except Exception as e:
        logger.error(f"Error reading prompt file {prompt_path}: {e}")
        raise IOError(f"Error reading prompt file: {e}") from e


def load_few_shot_examples(few_shot_file: str) -> List[FewShotExample]:
    """
    Load few-shot examples from a YAML file.

    Args:
        few_shot_file: Path to the YAML file containing few-shot examples

    Returns:
        List[FewShotExample]: List of few-shot examples

    Raises:
        ValueError: If the YAML file is malformed
    """
    few_shot_path = get_absolute_path(few_shot_file)

    if not few_shot_path.exists():
        logger.warning(f"Few-shot examples file not found: {few_shot_path}")
        logger.info("Continuing without few-shot examples")
        return []

    try:
        with open(few_shot_path, "r", encoding="utf-8") as file:
            data = yaml.safe_load(file)
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML file {few_shot_path}: {e}")
        raise ValueError(f"Invalid YAML file: {e}") from e

    if not data or "examples" not in data:
        logger.warning(f"No 'examples' key found in {few_shot_path}")
        return []

    examples = []
    for example_data in data["examples"]:
        try:
            examples.append(FewShotExample(**example_data))
        except Exception as e:
            logger.warning(f"Skipping invalid example: {e}")

    logger.info(f"Loaded {len(examples)} few-shot examples from {few_shot_path}")
    return examples


def format_few_shot_for_api(examples: List[FewShotExample]) -> List[Dict[str, Any]]:
    """
    Format few-shot examples for use in OpenAI API messages.
    """
    return [{"role": example.role, "content": example.content} for example in examples]
