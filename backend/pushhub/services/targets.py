"""Target resolution - which devices a campaign goes to."""
import logging
from typing import List

from sqlalchemy.ext.asyncio import AsyncSession

from ..models.campaign import Campaign
from ..models.device_registration import DeviceRegistration
from .registry import BROADCAST, DeviceRegistry, device_registry

logger = logging.getLogger(__name__)


class TargetResolver:
    """Selects eligible devices for a campaign."""

    def __init__(self, registry: DeviceRegistry = device_registry):
        self.registry = registry

    async def resolve(self, session: AsyncSession, campaign: Campaign) -> List[DeviceRegistration]:
        """Eligible registrations, most recently active first, each token at most once.

        The default registry already yields unique tokens (token is the primary
        key); the check here holds for any registry plugged in.
        """
        selector = BROADCAST if campaign.is_broadcast else campaign.target_user_ids
        registrations = await self.registry.resolve_active_targets(
            session, selector, campaign.type or "general"
        )

        seen = set()
        targets = []
        for registration in registrations:
            if registration.token in seen:
                continue
            seen.add(registration.token)
            targets.append(registration)

        logger.info(
            f"Campaign {campaign.id}: {len(targets)} eligible device(s) "
            f"({'broadcast' if campaign.is_broadcast else f'{len(campaign.target_user_ids)} user(s)'})"
        )
        return targets


# Global instance
target_resolver = TargetResolver()
