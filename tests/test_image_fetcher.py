from unittest.mock import MagicMock

import pytest
import requests

from gemstone_analysis.exceptions import TransientIOError
from gemstone_analysis.image_fetcher import (
    USER_AGENT,
    ImageFetcher,
    RetryPolicy,
    guess_mime_type,
    image_filename,
)
from gemstone_analysis.models import ImageRef


def ok_response(content=b"abc", content_type="image/png"):
    response = MagicMock()
    response.status_code = 200
    response.content = content
    response.headers = {"Content-Type": content_type}
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def sleep():
    return MagicMock()


class TestRetryPolicy:
    def test_linear_backoff(self):
        policy = RetryPolicy()

        assert [policy.delay_after(n) for n in (1, 2)] == [0.5, 1.0]

    def test_only_final_attempt_skips_tls_verification(self):
        policy = RetryPolicy(max_attempts=3)

        assert [policy.verify_tls(n) for n in (1, 2, 3)] == [True, True, False]
        assert RetryPolicy(relax_tls_on_final_attempt=False).verify_tls(3) is True


class TestFetch:
    def test_returns_data_uri(self, session, sleep):
        session.get.return_value = ok_response()

        result = ImageFetcher(session=session, sleep=sleep).fetch("https://cdn.example.com/a.png")

        assert result == "data:image/png;base64,YWJj"
        session.get.assert_called_once_with("https://cdn.example.com/a.png", timeout=30.0, verify=True)
        sleep.assert_not_called()

    def test_retries_after_connection_error(self, session, sleep):
        session.get.side_effect = [requests.ConnectionError("reset"), ok_response()]

        result = ImageFetcher(session=session, sleep=sleep).fetch("https://cdn.example.com/a.png")

        assert result.startswith("data:image/png;base64,")
        assert session.get.call_count == 2
        sleep.assert_called_once_with(0.5)

    def test_non_200_is_retried(self, session, sleep):
        not_found = MagicMock(status_code=503)
        session.get.side_effect = [not_found, ok_response()]

        ImageFetcher(session=session, sleep=sleep).fetch("https://cdn.example.com/a.png")

        assert session.get.call_count == 2

    def test_exhausted_attempts_raise(self, session, sleep, caplog):
        session.get.side_effect = requests.ConnectionError("reset")

        with pytest.raises(TransientIOError) as exc_info:
            ImageFetcher(session=session, sleep=sleep).fetch("https://cdn.example.com/a.jpg")

        assert exc_info.value.attempts == 3
        assert exc_info.value.url == "https://cdn.example.com/a.jpg"
        assert exc_info.value.stage == "fetching"
        assert [c.kwargs["verify"] for c in session.get.call_args_list] == [True, True, False]
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]
        assert "WITHOUT TLS verification" in caplog.text


class TestFetchAll:
    def test_keeps_input_order(self, session, sleep):
        def get(url, **kwargs):
            return ok_response(content=url.encode())

        session.get.side_effect = get
        images = [
            ImageRef(id=str(i), url=f"https://cdn.example.com/{i}.jpg", original_filename=f"{i}.jpg", order=i)
            for i in range(5)
        ]

        payloads = ImageFetcher(session=session, sleep=sleep).fetch_all(images)

        assert [p.image_id for p in payloads] == ["0", "1", "2", "3", "4"]
        assert [p.filename for p in payloads] == ["0.jpg", "1.jpg", "2.jpg", "3.jpg", "4.jpg"]

    def test_one_failed_image_fails_the_batch(self, session, sleep):
        def get(url, **kwargs):
            if url.endswith("/bad.jpg"):
                raise requests.Timeout("timed out")
            return ok_response()

        session.get.side_effect = get
        images = [
            ImageRef(id="1", url="https://cdn.example.com/good.jpg"),
            ImageRef(id="2", url="https://cdn.example.com/bad.jpg"),
        ]

        with pytest.raises(TransientIOError, match="bad.jpg"):
            ImageFetcher(session=session, sleep=sleep).fetch_all(images)

    def test_empty_batch(self, session):
        assert ImageFetcher(session=session).fetch_all([]) == []


class TestSession:
    def test_user_agent_replaces_requests_default(self):
        fetcher = ImageFetcher(session=requests.Session())

        assert fetcher.session.headers["User-Agent"] == USER_AGENT


class TestHelpers:
    def test_guess_mime_type(self):
        assert guess_mime_type("https://x/a.jpg", "image/webp; charset=binary") == "image/webp"
        assert guess_mime_type("https://x/a.PNG?v=2", "application/octet-stream") == "image/png"
        assert guess_mime_type("https://x/a", None) == "image/jpeg"

    def test_image_filename_falls_back_to_url(self):
        assert image_filename(ImageRef(id="1", url="https://x/dir/photo.jpg?sig=abc"), 1) == "photo.jpg"
        assert image_filename(ImageRef(id="1", url="https://x/y", original_filename="IMG_1.HEIC"), 1) == "IMG_1.HEIC"
