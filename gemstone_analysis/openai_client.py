"""
OpenAI vision client module.

This module sends one multi-image request per gemstone to the OpenAI Chat
Completions API and returns the raw reply text with usage and cost. Replies
are not parsed here; see response_parser.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from gemstone_analysis.exceptions import InvocationError
from gemstone_analysis.model_config import calculate_cost, get_model_config
from gemstone_analysis.models import (
    Config,
    FewShotExample,
    ImagePayload,
    ModelResponse,
    ModelUsage,
)
from gemstone_analysis.prompt_loader import SYSTEM_PROMPT, format_few_shot_for_api

logger = logging.getLogger(__name__)


def create_openai_client(config: Config) -> OpenAI:
    """
    Create an OpenAI client for the configured account.

    SDK-level retries are disabled; a failed model call fails the item.
    """
    kwargs: Dict[str, Any] = {"api_key": config.openai_api_key, "max_retries": 0}
    if config.openai_base_url:
        kwargs["base_url"] = config.openai_base_url
    return OpenAI(**kwargs)


def create_message_content(prompt: str, images: List[ImagePayload]) -> List[Dict[str, Any]]:
    """
    Create message content with the prompt followed by every image, in order.

    Args:
        prompt: Rendered analysis prompt
        images: Encoded images of one gemstone

    Returns:
        List[Dict[str, Any]]: Message content list
    """
    content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
    for image in images:
        content.append(
            {
                "type": "image_url",
                "image_url": {"url": image.encoded_bytes, "detail": "high"},
            }
        )
    return content


def build_request_params(
    prompt: str,
    images: List[ImagePayload],
    model_name: str,
    few_shot_examples: Optional[List[FewShotExample]] = None,
) -> Dict[str, Any]:
    """
    Build the keyword arguments for chat.completions.create.

    Args:
        prompt: Rendered analysis prompt
        images: Encoded images of one gemstone
        model_name: Catalogue model name
        few_shot_examples: Optional list of few-shot examples

    Returns:
        Dict[str, Any]: Request parameters
    """
    model = get_model_config(model_name)

    messages: List[Dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
    if few_shot_examples:
        messages.extend(format_few_shot_for_api(few_shot_examples))
        logger.debug(f"Added {len(few_shot_examples)} few-shot examples to request")
    messages.append({"role": "user", "content": create_message_content(prompt, images)})

    params: Dict[str, Any] = {
        "model": model["name"],
        "messages": messages,
        "max_completion_tokens": model["max_tokens"],
    }
    if model["json_mode"]:
        params["response_format"] = {"type": "json_object"}
    if model["reasoning_effort"]:
        params["reasoning_effort"] = model["reasoning_effort"]
    if model["supports_temperature"]:
        params["temperature"] = 0.1

    return params


class VisionModelClient:
    """Invokes a vision model once per gemstone, with every image attached."""

    def __init__(
        self,
        client: OpenAI,
        model_name: str,
        timeout: float = 180.0,
        few_shot_examples: Optional[List[FewShotExample]] = None,
    ):
        get_model_config(model_name)
        self.client = client
        self.model_name = model_name
        self.timeout = timeout
        self.few_shot_examples = few_shot_examples or []

    def invoke(self, prompt: str, images: List[ImagePayload]) -> ModelResponse:
        """
        Send one request carrying every image and return the reply text.

        Args:
            prompt: Rendered analysis prompt
            images: Encoded images of one gemstone

        Returns:
            ModelResponse: Raw reply text, token usage, cost and elapsed time

        Raises:
            InvocationError: On timeout, API failure or an empty reply
        """
        params = build_request_params(prompt, images, self.model_name, self.few_shot_examples)
        logger.info(f"Calling {self.model_name} with {len(images)} images")

        start = time.monotonic()
        try:
            response = self.client.chat.completions.create(timeout=self.timeout, **params)
        except openai.APITimeoutError as e:
            raise InvocationError(
                f"{self.model_name} timed out after {self.timeout:.0f}s",
                model_name=self.model_name,
                timed_out=True,
            ) from e
        except openai.OpenAIError as e:
            raise InvocationError(
                f"{self.model_name} request failed: {e}", model_name=self.model_name
            ) from e
        time_ms = int((time.monotonic() - start) * 1000)

        if not response.choices:
            raise InvocationError(
                f"{self.model_name} returned no choices", model_name=self.model_name
            )

        raw_text = response.choices[0].message.content
        if not raw_text:
            finish_reason = getattr(response.choices[0], "finish_reason", None)
            raise InvocationError(
                f"{self.model_name} returned empty content (finish_reason={finish_reason})",
                model_name=self.model_name,
            )

        usage = ModelUsage()
        if response.usage is not None:
            usage = ModelUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )

        cost = calculate_cost(
            self.model_name, usage.prompt_tokens, usage.completion_tokens, usage.total_tokens
        )
        logger.info(
            "OpenAI usage: model=%s, prompt_tokens=%s, completion_tokens=%s, cost=$%.4f, time=%dms",
            self.model_name,
            usage.prompt_tokens,
            usage.completion_tokens,
            cost,
            time_ms,
        )

        return ModelResponse(
            raw_text=raw_text,
            model=self.model_name,
            usage=usage,
            cost_usd=cost,
            time_ms=time_ms,
        )
