"""Tests for image discovery in event payloads."""

from __future__ import annotations

from responses_turn.chat.streaming.images import (
    coerce_image_data_url,
    collect_image_candidates,
    looks_like_base64,
)

PNG_B64 = "iVBORw0KGgoAAAANSUhEUgAA" + "A" * 136


def test_coerce_accepts_data_urls_remote_urls_and_base64() -> None:
    assert coerce_image_data_url("data:image/webp;base64,AAAA") == "data:image/webp;base64,AAAA"
    assert coerce_image_data_url("https://cdn.example.com/a.png") == "https://cdn.example.com/a.png"
    assert coerce_image_data_url(PNG_B64, "image/jpeg") == f"data:image/jpeg;base64,{PNG_B64}"
    assert coerce_image_data_url("completed") is None
    assert coerce_image_data_url("") is None


def test_short_strings_are_not_base64_images() -> None:
    assert not looks_like_base64("QUJD")
    assert looks_like_base64(PNG_B64)


def test_only_recognized_fields_are_candidates() -> None:
    payload = {
        "id": "https://not-an-image.example.com",
        "item": {"result": PNG_B64, "status": "completed", "output_format": "jpeg"},
        "nested": {"images": [{"url": "https://cdn.example.com/b.png"}]},
    }

    fragments = collect_image_candidates(payload, source="test")

    assert [fragment.value for fragment in fragments] == [
        f"data:image/jpeg;base64,{PNG_B64}",
        "https://cdn.example.com/b.png",
    ]
    assert fragments[0].mime_type == "image/jpeg"
    assert {fragment.source for fragment in fragments} == {"test"}


def test_duplicates_collapse_to_one_fragment() -> None:
    payload = {"data": [{"b64_json": PNG_B64}, {"b64_json": PNG_B64}], "result": PNG_B64}

    assert len(collect_image_candidates(payload)) == 1


def test_self_referential_payload_terminates() -> None:
    payload: dict = {"result": PNG_B64}
    payload["self"] = payload
    payload["items"] = [payload]

    fragments = collect_image_candidates(payload)

    assert len(fragments) == 1


def test_depth_limit_stops_descent() -> None:
    payload: dict = {"result": PNG_B64}
    for _ in range(20):
        payload = {"wrapper": payload}

    assert collect_image_candidates(payload) == []
    assert len(collect_image_candidates(payload, max_depth=30)) == 1
