"""Tests for the image provider client: backoff, retries and response parsing."""

import httpx
import pytest

from scenerun.errors import (
    GenerationFailedError,
    GenerationTimeoutError,
    PolicyViolationError,
    RateLimitError,
    UpstreamError,
)
from scenerun.services.image_client import ImageClient, ReferenceImage


def test_rate_limit_backoff_is_exponential_and_capped(ctx):
    client = ctx.image_client
    limit = RateLimitError("slow down")

    assert client.backoff_seconds(1, limit) == 2.5
    assert client.backoff_seconds(2, limit) == 5.0
    assert client.backoff_seconds(3, limit) == 10.0
    assert client.backoff_seconds(10, limit) == 60.0


def test_rate_limit_backoff_honors_retry_after_up_to_cap(ctx):
    client = ctx.image_client

    assert client.backoff_seconds(1, RateLimitError("x", retry_after=30)) == 30
    assert client.backoff_seconds(1, RateLimitError("x", retry_after=500)) == 60.0


def test_other_failures_back_off_linearly(ctx):
    client = ctx.image_client
    error = UpstreamError("bad gateway", upstream_status=502)

    assert client.backoff_seconds(1, error) == 2.0
    assert client.backoff_seconds(3, error) == 6.0
    assert client.backoff_seconds(9, error) == 10.0


def test_generate_success(ctx, image_provider):
    image = ctx.image_client.generate("a harbor", "k-1", aspect_ratio="9:16")

    assert image.data.startswith(b"\x89PNG")
    assert image.attempts == 1
    request = image_provider.requests[0]
    assert request["headers"]["x-goog-api-key"] == "k-1"
    assert request["json"]["generationConfig"]["imageConfig"]["aspectRatio"] == "9:16"
    assert request["json"]["contents"][0]["parts"][-1] == {"text": "a harbor"}


def test_reference_images_are_sent_before_prompt(ctx, image_provider):
    refs = [ReferenceImage(data=b"ref-%d" % i) for i in range(7)]

    ctx.image_client.generate("a harbor", "k-1", reference_images=refs)

    parts = image_provider.requests[0]["json"]["contents"][0]["parts"]
    # Capped at MAX_REFERENCE_IMAGES
    assert len(parts) == 6
    assert "inline_data" in parts[0]


def test_rate_limit_is_retried(ctx, image_provider, sleeps):
    image_provider.queue = [httpx.Response(429, json={"error": {"message": "quota"}})]

    image = ctx.image_client.generate("a harbor", "k-1")

    assert image.attempts == 2
    assert sleeps == [2.5]
    assert len(image_provider.requests) == 2


def test_server_errors_exhaust_attempts(ctx, image_provider, sleeps):
    image_provider.queue = [
        httpx.Response(503, json={"error": {"message": "overloaded"}}),
        httpx.Response(503, json={"error": {"message": "overloaded"}}),
    ]

    with pytest.raises(UpstreamError) as exc_info:
        ctx.image_client.generate("a harbor", "k-1")

    assert exc_info.value.upstream_status == 503
    assert not exc_info.value.permanent
    assert len(image_provider.requests) == 2
    assert sleeps == [2.0]


def test_client_errors_are_not_retried(ctx, image_provider, sleeps):
    image_provider.queue = [httpx.Response(400, json={"error": {"message": "API key not valid"}})]

    with pytest.raises(UpstreamError) as exc_info:
        ctx.image_client.generate("a harbor", "bad-key")

    assert exc_info.value.permanent
    assert exc_info.value.message == "API key not valid"
    assert len(image_provider.requests) == 1
    assert sleeps == []


def test_blocked_prompt_is_policy_violation(ctx, image_provider):
    image_provider.queue = [httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})]

    with pytest.raises(PolicyViolationError):
        ctx.image_client.generate("something forbidden", "k-1")
    assert len(image_provider.requests) == 1


def test_safety_finish_reason_is_policy_violation(ctx, image_provider):
    image_provider.queue = [
        httpx.Response(200, json={"candidates": [{"finishReason": "IMAGE_SAFETY", "content": {"parts": []}}]})
    ]

    with pytest.raises(PolicyViolationError):
        ctx.image_client.generate("something forbidden", "k-1")


def test_response_without_image_fails(ctx, image_provider):
    image_provider.queue = [
        httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "no image today"}]}}]})
    ]

    with pytest.raises(GenerationFailedError):
        ctx.image_client.generate("a harbor", "k-1")


def test_timeouts_are_retried_then_raised(test_settings, sleeps):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    client = ImageClient(test_settings, transport=httpx.MockTransport(handler), sleep=sleeps.append)

    with pytest.raises(GenerationTimeoutError):
        client.generate("a harbor", "k-1")
    assert len(calls) == 2
    assert sleeps == [2.0]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, content=b"<html>gateway</html>"),
        httpx.Response(200, json=["unexpected"]),
        httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "%%%"}}]}}]},
        ),
    ],
)
def test_malformed_success_body_fails_without_retry(ctx, image_provider, sleeps, response):
    image_provider.queue = [response]

    with pytest.raises(GenerationFailedError) as exc_info:
        ctx.image_client.generate("a harbor", "k-1")

    assert "Malformed image response" in exc_info.value.message
    assert len(image_provider.requests) == 1
    assert sleeps == []
