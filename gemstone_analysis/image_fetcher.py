"""
Image download and encoding module.

Images are fetched over HTTP and converted to base64 data URIs for the
vision model. All images of one gemstone are fetched concurrently; a single
image that cannot be downloaded fails the whole gemstone.
"""

import base64
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional

import requests

from gemstone_analysis.exceptions import ImageBatchMismatchError, TransientIOError
from gemstone_analysis.models import ImagePayload, ImageRef

logger = logging.getLogger(__name__)

USER_AGENT = "gemstone-analysis/1.0"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Download retry policy.

    Attempt n waits backoff_seconds * n before attempt n + 1. When
    relax_tls_on_final_attempt is set, the last attempt is made without TLS
    certificate verification.
    """

    max_attempts: int = 3
    backoff_seconds: float = 0.5
    relax_tls_on_final_attempt: bool = True

    def delay_after(self, attempt: int) -> float:
        return self.backoff_seconds * attempt

    def verify_tls(self, attempt: int) -> bool:
        return not (self.relax_tls_on_final_attempt and attempt >= self.max_attempts)


def guess_mime_type(url: str, content_type: Optional[str] = None) -> str:
    """Pick the MIME type from the response header, falling back to the URL."""
    if content_type and content_type.lower().startswith("image/"):
        return content_type.split(";")[0].strip().lower()

    path = url.lower().split("?")[0]
    if path.endswith(".png"):
        return "image/png"
    if path.endswith(".webp"):
        return "image/webp"
    if path.endswith(".gif"):
        return "image/gif"
    return "image/jpeg"


def to_data_uri(content: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(content).decode("utf-8")
    return f"data:{mime_type};base64,{encoded}"


def image_filename(image: ImageRef, position: int) -> str:
    if image.original_filename:
        return image.original_filename
    tail = image.url.split("?")[0].rstrip("/").split("/")[-1]
    return tail or f"image_{position}"


class ImageFetcher:
    """Downloads images with retry/backoff and encodes them as data URIs."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = USER_AGENT
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self._sleep = sleep

    def fetch(self, url: str) -> str:
        """
        Download one image and return it as a base64 data URI.

        Args:
            url: Public image URL

        Returns:
            str: data URI with the encoded image

        Raises:
            TransientIOError: If every attempt failed
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.policy.max_attempts + 1):
            verify = self.policy.verify_tls(attempt)
            if not verify:
                logger.warning(
                    "Final attempt %d/%d for %s is made WITHOUT TLS verification "
                    "(known CDN certificate issue fallback)",
                    attempt,
                    self.policy.max_attempts,
                    url,
                )
            try:
                response = self.session.get(url, timeout=self.timeout, verify=verify)
                if response.status_code != 200:
                    raise requests.HTTPError(
                        f"Failed to download image: HTTP {response.status_code}"
                    )
                mime_type = guess_mime_type(url, response.headers.get("Content-Type"))
                logger.debug(
                    "Downloaded %s (%d bytes) on attempt %d", url, len(response.content), attempt
                )
                return to_data_uri(response.content, mime_type)

            except requests.RequestException as e:
                last_error = e
                logger.warning(
                    "Image download failed (attempt %d/%d) for %s: %s",
                    attempt,
                    self.policy.max_attempts,
                    url,
                    e,
                )
                if attempt < self.policy.max_attempts:
                    self._sleep(self.policy.delay_after(attempt))

        raise TransientIOError(
            f"Failed to download {url} after {self.policy.max_attempts} attempts: {last_error}",
            url=url,
            attempts=self.policy.max_attempts,
        )

    def fetch_all(self, images: List[ImageRef]) -> List[ImagePayload]:
        """
        Download every image of one gemstone concurrently.

        All downloads are started at once and awaited together. The returned
        payloads keep the order of the input list.

        Raises:
            TransientIOError: If any image could not be downloaded
            ImageBatchMismatchError: If the payload count differs from the input
        """
        if not images:
            return []

        def _download(position: int, image: ImageRef) -> ImagePayload:
            filename = image_filename(image, position)
            logger.info("  Downloading image %d/%d: %s", position, len(images), filename)
            return ImagePayload(
                image_id=image.id,
                filename=filename,
                encoded_bytes=self.fetch(image.url),
                order=image.order,
            )

        with ThreadPoolExecutor(max_workers=len(images)) as executor:
            futures = [
                executor.submit(_download, position, image)
                for position, image in enumerate(images, start=1)
            ]
            errors = []
            payloads = []
            for future in futures:
                try:
                    payloads.append(future.result())
                except TransientIOError as e:
                    errors.append(e)

        if errors:
            raise errors[0]

        if len(payloads) != len(images):
            raise ImageBatchMismatchError(expected=len(images), fetched=len(payloads))

        return payloads
