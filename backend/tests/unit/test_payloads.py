"""
Unit tests for per-device payload construction.
"""

import json

from pushhub.models import Campaign, DeviceRegistration
from pushhub.services.payloads import build_payload, stringify_data


def _campaign(**overrides):
    fields = dict(
        id=42,
        title="New release",
        body="Your favourite artist dropped a track",
        data={"track_id": 7, "artist": "Nova", "tags": ["house"]},
        type="music",
        image_url=None,
        deep_link=None,
        actions=[],
        category="releases",
        sound="default",
        badge=3,
    )
    fields.update(overrides)
    return Campaign(**fields)


def _device(platform):
    return DeviceRegistration(token=f"tok-{platform}", user_id="U1", platform=platform, device_id="d")


def test_stringify_data_encodes_non_strings():
    assert stringify_data({"a": "x", "b": 1, "c": {"d": True}}) == {
        "a": "x",
        "b": "1",
        "c": '{"d": true}',
    }


def test_common_sections():
    payload = build_payload(_campaign(), _device("android"))

    assert payload["notification"] == {
        "title": "New release",
        "body": "Your favourite artist dropped a track",
    }
    data = payload["data"]
    assert data["track_id"] == "7"
    assert data["artist"] == "Nova"
    assert json.loads(data["tags"]) == ["house"]
    assert data["notification_id"] == "42"
    assert data["type"] == "music"
    assert data["timestamp"].isdigit()
    assert all(isinstance(v, str) for v in data.values())


def test_android_section():
    payload = build_payload(_campaign(), _device("android"))

    assert "apns" not in payload
    android = payload["android"]
    assert android["priority"] == "high"
    assert android["notification"]["channel_id"] == "releases"
    assert android["notification"]["default_sound"] is True


def test_ios_section():
    payload = build_payload(_campaign(sound="chime"), _device("ios"))

    assert "android" not in payload
    apns = payload["apns"]
    assert apns["headers"] == {"apns-priority": "10", "apns-push-type": "alert"}
    aps = apns["payload"]["aps"]
    assert aps["alert"] == {"title": "New release", "body": "Your favourite artist dropped a track"}
    assert aps["badge"] == 3
    assert aps["sound"] == "chime.caf"
    assert aps["content-available"] == 1
    assert apns["payload"]["notification_type"] == "music"


def test_optional_image_deep_link_and_actions():
    campaign = _campaign(
        image_url="https://cdn.example.com/cover.jpg",
        deep_link="app://track/7",
        actions=[{"action": "play", "title": "Play"}],
    )
    payload = build_payload(campaign, _device("ios"))

    assert payload["notification"]["image"] == "https://cdn.example.com/cover.jpg"
    assert payload["data"]["deep_link"] == "app://track/7"
    assert json.loads(payload["data"]["actions"]) == [{"action": "play", "title": "Play"}]
    assert payload["apns"]["payload"]["deep_link"] == "app://track/7"
