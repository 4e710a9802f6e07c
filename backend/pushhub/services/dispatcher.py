"""Dispatch engine - fans one campaign out to every eligible device."""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import RegistryWriteError, ValidationError
from ..models.campaign import Campaign, CampaignStatus, CampaignTarget, resolve_status
from ..models.device_registration import NOTIFICATION_TYPES, DeviceRegistration
from ..utils.db_utils import mask_token, retry_on_lock
from .gateway import NullGateway, PushGateway
from .outcomes import DeliveryOutcome, classify, tally_outcomes
from .payloads import build_payload
from .registry import DeviceRegistry, device_registry
from .targets import TargetResolver, target_resolver

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 100
MAX_BODY_LENGTH = 500


@dataclass
class CampaignDraft:
    """A send request before it becomes a campaign."""

    title: str
    body: str
    data: dict = field(default_factory=dict)
    target_users: Optional[List[str]] = None
    broadcast: Optional[bool] = None
    type: str = "general"
    image_url: Optional[str] = None
    deep_link: Optional[str] = None
    actions: list = field(default_factory=list)
    category: str = "default"
    sound: str = "default"
    badge: int = 1
    created_by: str = "admin"

    @property
    def is_broadcast(self) -> bool:
        """Broadcast unless an explicit user list is given or broadcast is explicitly off."""
        if self.broadcast is not None:
            return self.broadcast
        return self.target_users is None

    def validate(self):
        """Raise ValidationError for any missing or malformed field."""
        title = (self.title or "").strip()
        body = (self.body or "").strip()
        if not title:
            raise ValidationError("title is required", field="title")
        if not body:
            raise ValidationError("body is required", field="body")
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(f"title must be at most {MAX_TITLE_LENGTH} characters", field="title")
        if len(body) > MAX_BODY_LENGTH:
            raise ValidationError(f"body must be at most {MAX_BODY_LENGTH} characters", field="body")
        if self.type not in NOTIFICATION_TYPES:
            raise ValidationError(
                f"type must be one of {', '.join(NOTIFICATION_TYPES)}", field="type"
            )
        if self.broadcast and self.target_users:
            raise ValidationError("target_users cannot be combined with broadcast", field="target_users")
        if self.data is not None and not isinstance(self.data, dict):
            raise ValidationError("data must be an object", field="data")


@dataclass
class DispatchSummary:
    """Result of one dispatch, safe to return to callers."""

    campaign_id: int
    status: CampaignStatus
    total_targets: int
    sent_count: int
    failed_count: int
    success_rate: float
    invalidated_tokens: List[str] = field(default_factory=list)
    failure_reasons: List[dict] = field(default_factory=list)


class DispatchEngine:
    """Drives a campaign from pending to a terminal status.

    Each device is sent to independently on a bounded pool; a failing device
    only ever shows up in the counters and never stops the others.
    """

    def __init__(
        self,
        gateway: Optional[PushGateway] = None,
        resolver: TargetResolver = target_resolver,
        registry: DeviceRegistry = device_registry,
        concurrency: int = 10,
        send_timeout: float = 10.0,
    ):
        self.gateway = gateway or NullGateway()
        self.resolver = resolver
        self.registry = registry
        self.concurrency = max(1, concurrency)
        self.send_timeout = send_timeout

    def configure(self, gateway: PushGateway, concurrency: int, send_timeout: float):
        """Swap in the configured gateway and fan-out limits."""
        self.gateway = gateway
        self.concurrency = max(1, concurrency)
        self.send_timeout = send_timeout
        logger.info(
            f"Dispatch engine configured: gateway={type(gateway).__name__} "
            f"concurrency={self.concurrency} timeout={send_timeout}s"
        )

    async def close(self):
        """Release the gateway's connections."""
        close = getattr(self.gateway, "close", None)
        if close is not None:
            await close()

    async def submit(self, session: AsyncSession, draft: CampaignDraft) -> DispatchSummary:
        """Create a campaign for ``draft`` and deliver it.

        Raises:
            ValidationError: before anything is stored or sent
        """
        draft.validate()

        campaign = await self._create_campaign(session, draft)

        targets = await self.resolver.resolve(session, campaign)
        if not targets:
            return await self._finish_without_targets(session, campaign)

        total = len(targets)
        campaign_id = campaign.id
        logger.info(f"Campaign {campaign_id}: sending to {total} device(s)")

        outcomes = await self._send_all(campaign, targets)
        tally = tally_outcomes(outcomes)

        invalidated: List[str] = []
        if tally.invalid_tokens:
            try:
                await self.registry.deactivate_many(session, tally.invalid_tokens, reason="token_expired")
                invalidated = sorted(tally.invalid_tokens)
            except RegistryWriteError as e:
                logger.error(f"Campaign {campaign_id}: could not retire invalid tokens: {e}")
                # The failed write rolled the session back; reload the pending row
                await session.refresh(campaign)

        campaign.total_targets = total
        campaign.sent_count = tally.sent
        campaign.failed_count = tally.failed
        campaign.status = resolve_status(total, tally.sent, tally.failed).value
        campaign.sent_at = datetime.utcnow()
        await retry_on_lock(session.commit)

        logger.info(
            f"Campaign {campaign.id} {campaign.status}: {tally.sent}/{campaign.total_targets} delivered, "
            f"{tally.failed} failed, {len(invalidated)} token(s) retired"
        )
        return DispatchSummary(
            campaign_id=campaign.id,
            status=CampaignStatus(campaign.status),
            total_targets=campaign.total_targets,
            sent_count=tally.sent,
            failed_count=tally.failed,
            success_rate=tally.success_rate,
            invalidated_tokens=[mask_token(t) for t in invalidated],
            failure_reasons=[
                {"token": mask_token(o.token), "result": o.result.value, "code": o.code, "error": o.detail}
                for o in tally.failures
            ],
        )

    async def _create_campaign(self, session: AsyncSession, draft: CampaignDraft) -> Campaign:
        """Store the campaign as pending so an interrupted dispatch stays auditable."""
        broadcast = draft.is_broadcast
        user_ids = [] if broadcast else sorted({str(u) for u in (draft.target_users or []) if u})
        campaign = Campaign(
            title=draft.title.strip(),
            body=draft.body.strip(),
            data=draft.data or {},
            is_broadcast=broadcast,
            type=draft.type,
            image_url=draft.image_url,
            deep_link=draft.deep_link,
            actions=draft.actions or [],
            category=draft.category or "default",
            sound=draft.sound or "default",
            badge=draft.badge,
            created_by=draft.created_by or "admin",
            status=CampaignStatus.PENDING.value,
            targets=[CampaignTarget(user_id=u) for u in user_ids],
        )
        session.add(campaign)
        await retry_on_lock(session.commit)
        logger.info(f"Campaign {campaign.id} created ({draft.type}, broadcast={broadcast})")
        return campaign

    async def _finish_without_targets(self, session: AsyncSession, campaign: Campaign) -> DispatchSummary:
        campaign.total_targets = 0
        campaign.sent_count = 0
        campaign.failed_count = 0
        campaign.status = resolve_status(0, 0, 0).value
        campaign.sent_at = datetime.utcnow()
        await retry_on_lock(session.commit)
        logger.warning(f"Campaign {campaign.id}: no eligible devices")
        return DispatchSummary(
            campaign_id=campaign.id,
            status=CampaignStatus.NO_TARGETS,
            total_targets=0,
            sent_count=0,
            failed_count=0,
            success_rate=0.0,
        )

    async def _send_all(self, campaign: Campaign, targets: List[DeviceRegistration]) -> List[DeliveryOutcome]:
        semaphore = asyncio.Semaphore(self.concurrency)
        total = len(targets)

        async def _deliver(index: int, device: DeviceRegistration) -> DeliveryOutcome:
            async with semaphore:
                try:
                    payload = build_payload(campaign, device)
                    result = await asyncio.wait_for(
                        self.gateway.send(device.token, payload, platform=device.platform),
                        timeout=self.send_timeout,
                    )
                except Exception as e:
                    outcome = classify(device.token, error=e)
                else:
                    outcome = classify(device.token, result)

            if outcome.delivered:
                logger.debug(f"Device {index}/{total} delivered: {mask_token(device.token)}")
            else:
                logger.warning(
                    f"Device {index}/{total} {outcome.result.value}: {mask_token(device.token)} "
                    f"({outcome.code}: {outcome.detail})"
                )
            return outcome

        return await asyncio.gather(
            *(_deliver(i, device) for i, device in enumerate(targets, start=1))
        )


# Global instance, configured at startup
dispatch_engine = DispatchEngine()
