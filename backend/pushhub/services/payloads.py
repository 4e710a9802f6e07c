"""Per-device notification payloads."""
import json
import time

from ..models.campaign import Campaign
from ..models.device_registration import DeviceRegistration


def stringify_data(data: dict | None) -> dict:
    """Provider data sections only carry strings; JSON-encode everything else."""
    result = {}
    for key, value in (data or {}).items():
        result[str(key)] = value if isinstance(value, str) else json.dumps(value)
    return result


def build_payload(campaign: Campaign, device: DeviceRegistration) -> dict:
    """Build the message for one device.

    Title, body and data are shared by all devices; android and ios each get
    their own platform section.
    """
    notification = {"title": campaign.title, "body": campaign.body}
    if campaign.image_url:
        notification["image"] = campaign.image_url

    data = stringify_data(campaign.data)
    data["notification_id"] = str(campaign.id)
    data["type"] = campaign.type or "general"
    data["timestamp"] = str(int(time.time() * 1000))
    if campaign.deep_link:
        data["deep_link"] = campaign.deep_link
    if campaign.actions:
        data["actions"] = json.dumps(campaign.actions)

    payload = {"notification": notification, "data": data}
    sound = campaign.sound or "default"

    if device.platform == "android":
        payload["android"] = {
            "priority": "high",
            "notification": {
                "channel_id": campaign.category or "default",
                "default_sound": sound == "default",
                "default_vibrate_timings": True,
                "click_action": "FLUTTER_NOTIFICATION_CLICK",
            },
            "data": {"click_action": "FLUTTER_NOTIFICATION_CLICK"},
        }
    elif device.platform == "ios":
        aps = {
            "alert": {"title": campaign.title, "body": campaign.body},
            "sound": "default" if sound == "default" else f"{sound}.caf",
            "content-available": 1,
        }
        if campaign.badge is not None:
            aps["badge"] = campaign.badge
        apns_payload = {"aps": aps, "notification_type": data["type"]}
        if campaign.deep_link:
            apns_payload["deep_link"] = campaign.deep_link
        payload["apns"] = {
            "headers": {"apns-priority": "10", "apns-push-type": "alert"},
            "payload": apns_payload,
        }

    return payload
