"""Tests for webhook payload parsing."""

from __future__ import annotations

from genqueue.schemas import QueueStatus, WebhookPayload


def test_success_statuses() -> None:
    assert WebhookPayload(request_id="r", status="OK").is_success
    assert WebhookPayload(request_id="r", status="completed").is_success
    assert not WebhookPayload(request_id="r", status="IN_PROGRESS").is_success


def test_error_statuses() -> None:
    assert WebhookPayload(request_id="r", status="ERROR").is_error
    assert WebhookPayload(request_id="r", status="failed").is_error
    # an error body wins over a success-like status
    payload = WebhookPayload(request_id="r", status="OK", error="boom")
    assert payload.is_error
    assert not payload.is_success


def test_error_message() -> None:
    assert WebhookPayload(error="boom").error_message() == "boom"
    assert WebhookPayload(error={"detail": "bad prompt"}).error_message() == "bad prompt"
    assert WebhookPayload(status="ERROR").error_message() == "Provider generation failed"


def test_artifact_urls_from_images_and_videos() -> None:
    payload = WebhookPayload.model_validate(
        {
            "request_id": "r",
            "status": "OK",
            "payload": {
                "images": [{"url": "https://cdn/1.png"}, {"content_type": "image/png"}],
                "video": {"url": "https://cdn/v.mp4"},
            },
            "gateway_request_id": "g",
        }
    )

    assert payload.artifact_urls() == ["https://cdn/1.png", "https://cdn/v.mp4"]


def test_artifact_urls_without_payload() -> None:
    assert WebhookPayload(request_id="r", status="OK").artifact_urls() == []


def test_terminal_statuses() -> None:
    assert QueueStatus.completed.is_terminal
    assert QueueStatus.failed.is_terminal
    assert not QueueStatus.queued.is_terminal
    assert not QueueStatus.processing.is_terminal
