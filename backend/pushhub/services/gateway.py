"""Push gateway adapters.

The dispatcher only relies on :class:`PushGateway`: one token, one payload
and the device platform in, one :class:`GatewayResult` out. Each adapter is
responsible for telling a token the provider has permanently rejected apart
from everything else, which is treated as retryable.
"""
import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, runtime_checkable

import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from ..config import Settings
from ..utils.db_utils import mask_token

logger = logging.getLogger(__name__)

# Try to import aioapns, but don't fail if not installed
try:
    from aioapns import APNs, NotificationRequest, PushType
    APNS_AVAILABLE = True
except ImportError:
    APNS_AVAILABLE = False
    logger.warning("aioapns not installed - APNs gateway will be unavailable")


class DeliveryResult(str, enum.Enum):
    DELIVERED = "delivered"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of handing one notification to the provider."""

    result: DeliveryResult
    code: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def delivered(cls, detail: Optional[str] = None) -> "GatewayResult":
        return cls(DeliveryResult.DELIVERED, detail=detail)

    @classmethod
    def permanent(cls, code: str, detail: Optional[str] = None) -> "GatewayResult":
        return cls(DeliveryResult.PERMANENT_FAILURE, code=code, detail=detail)

    @classmethod
    def transient(cls, code: str, detail: Optional[str] = None) -> "GatewayResult":
        return cls(DeliveryResult.TRANSIENT_FAILURE, code=code, detail=detail)


def unsupported_platform(platform: Optional[str]) -> GatewayResult:
    return GatewayResult.transient("platform-unsupported", f"No push provider for platform {platform!r}")


@runtime_checkable
class PushGateway(Protocol):
    """Sends one notification payload to one device token."""

    async def send(self, token: str, payload: dict, platform: Optional[str] = None) -> GatewayResult: ...


class NullGateway:
    """Gateway used when push delivery is disabled.

    Sends fail as transient so a misconfigured deployment never retires tokens.
    """

    async def send(self, token: str, payload: dict, platform: Optional[str] = None) -> GatewayResult:
        logger.debug(f"Push delivery disabled; dropping notification for {mask_token(token)}")
        return GatewayResult.transient("gateway-disabled", "Push delivery is not configured")


class PlatformGateway:
    """Routes each send to the adapter registered for the device platform.

    A platform without an adapter gets a transient failure, never a
    permanent one, so its tokens stay registered.
    """

    def __init__(self, routes: Dict[str, PushGateway]):
        self.routes = {platform: gw for platform, gw in routes.items() if gw is not None}

    async def send(self, token: str, payload: dict, platform: Optional[str] = None) -> GatewayResult:
        gateway = self.routes.get(platform)
        if gateway is None:
            return unsupported_platform(platform)
        return await gateway.send(token, payload, platform=platform)

    async def close(self):
        closed = set()
        for gateway in self.routes.values():
            if id(gateway) in closed:
                continue
            closed.add(id(gateway))
            close = getattr(gateway, "close", None)
            if close is not None:
                await close()


# FCM HTTP v1 error statuses that mean the token will never work again
FCM_PERMANENT_ERRORS = {"UNREGISTERED", "NOT_FOUND"}
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"


def load_fcm_credentials(path: str):
    """Service account credentials scoped for FCM sends."""
    return service_account.Credentials.from_service_account_file(path, scopes=[FCM_SCOPE])


class FcmGateway:
    """Firebase Cloud Messaging (HTTP v1) gateway for Android and iOS tokens.

    ``credentials`` is a google-auth credentials object; its short-lived
    access token is refreshed whenever it has expired or FCM answered 401.
    One HTTP client is shared by every send.
    """

    def __init__(
        self,
        project_id: str,
        credentials,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.project_id = project_id
        self.credentials = credentials
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._token_lock = asyncio.Lock()
        self._token_stale = False

    @property
    def url(self) -> str:
        return f"https://fcm.googleapis.com/v1/projects/{self.project_id}/messages:send"

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token_stale or not self.credentials.valid:
                # google-auth refreshes synchronously over requests
                await asyncio.to_thread(self.credentials.refresh, GoogleAuthRequest())
                self._token_stale = False
                logger.info("FCM access token refreshed")
            return self.credentials.token

    async def send(self, token: str, payload: dict, platform: Optional[str] = None) -> GatewayResult:
        try:
            access_token = await self._access_token()
        except GoogleAuthError as e:
            logger.error(f"FCM credential refresh failed: {e}")
            return GatewayResult.transient("auth-error", str(e))

        message = dict(payload)
        message["token"] = token
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        try:
            response = await self._client.post(self.url, json={"message": message}, headers=headers)
        except httpx.TimeoutException as e:
            return GatewayResult.transient("timeout", str(e))
        except httpx.HTTPError as e:
            return GatewayResult.transient("network-error", str(e))

        if response.status_code < 400:
            name = _json_or_empty(response).get("name")
            logger.debug(f"FCM accepted {mask_token(token)}: {name}")
            return GatewayResult.delivered(name)

        if response.status_code == 401:
            self._token_stale = True

        return self.classify_error(response.status_code, _json_or_empty(response))

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def classify_error(status_code: int, body: dict) -> GatewayResult:
        """Map an FCM error response to a gateway result."""
        error = body.get("error") or {}
        status = error.get("status") or ""
        message = error.get("message") or f"HTTP {status_code}"

        fcm_code = ""
        for item in error.get("details") or []:
            if item.get("errorCode"):
                fcm_code = item["errorCode"]
                break

        if fcm_code in FCM_PERMANENT_ERRORS or status in FCM_PERMANENT_ERRORS or status_code == 404:
            return GatewayResult.permanent(fcm_code or status or "UNREGISTERED", message)

        # INVALID_ARGUMENT covers malformed payloads too; only the token variant is permanent
        if (fcm_code or status) == "INVALID_ARGUMENT" and "registration token" in message.lower():
            return GatewayResult.permanent("INVALID_ARGUMENT", message)

        return GatewayResult.transient(fcm_code or status or f"HTTP_{status_code}", message)


# APNs reasons that mean the token will never work again
APNS_PERMANENT_REASONS = {"BadDeviceToken", "Unregistered", "DeviceTokenNotForTopic"}


class ApnsGateway:
    """Apple Push Notification service gateway for iOS tokens."""

    def __init__(
        self,
        key_path: str,
        key_id: str,
        team_id: str,
        bundle_id: str,
        use_sandbox: bool = True,
        client=None,
    ):
        self.bundle_id = bundle_id
        self._client = client
        if self._client is None:
            if not APNS_AVAILABLE:
                raise RuntimeError("aioapns is not installed")
            self._client = APNs(
                key=key_path,
                key_id=key_id,
                team_id=team_id,
                topic=bundle_id,
                use_sandbox=use_sandbox,
            )
            logger.info(f"APNs client configured (sandbox={use_sandbox})")

    async def send(self, token: str, payload: dict, platform: Optional[str] = None) -> GatewayResult:
        # APNs answers BadDeviceToken for FCM tokens; that must not retire them
        if platform not in (None, "ios"):
            return unsupported_platform(platform)

        # The dispatcher builds the FCM-style envelope; APNs wants only the aps body
        apns = payload.get("apns") or {}
        message = dict(apns.get("payload") or {})
        if "aps" not in message:
            notification = payload.get("notification") or {}
            message["aps"] = {"alert": notification, "sound": "default"}
        for key, value in (payload.get("data") or {}).items():
            message.setdefault(key, value)

        request = NotificationRequest(
            device_token=token,
            message=message,
            push_type=PushType.ALERT,
        )
        try:
            response = await self._client.send_notification(request)
        except Exception as e:
            return GatewayResult.transient("network-error", str(e))

        if response.is_successful:
            return GatewayResult.delivered(getattr(response, "notification_id", None))

        reason = response.description or f"HTTP {response.status}"
        if reason in APNS_PERMANENT_REASONS or str(response.status) == "410":
            return GatewayResult.permanent(reason, reason)
        return GatewayResult.transient(reason, reason)


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return {}
    return body if isinstance(body, dict) else {}


def _build_fcm(settings: Settings) -> Optional[FcmGateway]:
    if not settings.fcm_credentials_file:
        return None
    try:
        credentials = load_fcm_credentials(settings.fcm_credentials_file)
    except (OSError, ValueError) as e:
        logger.error(f"Cannot load FCM service account {settings.fcm_credentials_file}: {e}")
        return None

    project_id = settings.fcm_project_id or getattr(credentials, "project_id", None)
    if not project_id:
        logger.error("FCM service account has no project id; set FCM_PROJECT_ID")
        return None
    return FcmGateway(
        project_id=project_id,
        credentials=credentials,
        timeout=settings.send_timeout_seconds,
    )


def _build_apns(settings: Settings) -> Optional[ApnsGateway]:
    if not all([settings.apns_key_path, settings.apns_key_id, settings.apns_team_id, settings.apns_bundle_id]):
        logger.warning("APNs gateway selected but not fully configured")
        return None
    if not APNS_AVAILABLE:
        logger.error("Cannot enable APNs gateway: aioapns not installed")
        return None
    return ApnsGateway(
        key_path=settings.apns_key_path,
        key_id=settings.apns_key_id,
        team_id=settings.apns_team_id,
        bundle_id=settings.apns_bundle_id,
        use_sandbox=settings.apns_use_sandbox,
    )


def build_gateway(settings: Settings) -> PushGateway:
    """Create the gateway selected by configuration.

    ``fcm`` sends both platforms through FCM. ``apns`` sends iOS tokens
    through APNs and Android tokens through FCM when a service account is
    configured. Anything else disables push.
    """
    kind = (settings.push_gateway or "none").lower()

    if kind == "fcm":
        fcm = _build_fcm(settings)
        routes = {"ios": fcm, "android": fcm}
    elif kind == "apns":
        routes = {"ios": _build_apns(settings), "android": _build_fcm(settings)}
    else:
        if kind != "none":
            logger.warning(f"Unknown push gateway '{kind}'; push disabled")
        routes = {}

    gateway = PlatformGateway(routes)
    if not gateway.routes:
        logger.info("Push notifications are disabled")
        return NullGateway()

    for platform in ("ios", "android"):
        if platform not in gateway.routes:
            logger.warning(f"No push provider configured for {platform} devices")
    return gateway
