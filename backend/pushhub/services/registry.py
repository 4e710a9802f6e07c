"""Device registry - the single writer of push token registrations.

Every mutation is one SQL statement keyed by token (an ``INSERT ... ON
CONFLICT`` upsert or a conditional ``UPDATE``), so concurrent register and
deactivate calls for the same token cannot interleave a read-modify-write.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Union

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import RegistryWriteError, ValidationError
from ..models.device_registration import (
    INVALIDATION_REASONS,
    PLATFORMS,
    DeviceRegistration,
    merge_notification_settings,
)
from ..utils.db_utils import mask_token, retry_on_lock

logger = logging.getLogger(__name__)

# Target selector meaning "every owner"
BROADCAST = "all"


class DeviceRegistry:
    """Stores, retires and selects device registrations."""

    def _insert(self, session: AsyncSession):
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(DeviceRegistration)
        if dialect == "sqlite":
            return sqlite_insert(DeviceRegistration)
        raise RegistryWriteError(
            "register", "", RuntimeError(f"Unsupported dialect for upsert: {dialect}")
        )

    async def _write(self, session: AsyncSession, stmt, operation: str, token: str) -> int:
        """Execute and commit one registry statement, returning the affected row count."""

        async def _execute() -> int:
            try:
                result = await session.execute(stmt)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            return result.rowcount

        try:
            return await retry_on_lock(_execute)
        except SQLAlchemyError as e:
            logger.error(f"Registry {operation} failed for {mask_token(token)}: {e}")
            raise RegistryWriteError(operation, mask_token(token), e) from e

    async def register(
        self,
        session: AsyncSession,
        token: str,
        user_id: str,
        platform: str,
        device_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        settings: Optional[dict] = None,
    ) -> DeviceRegistration:
        """Create or overwrite the registration for a token.

        A token already owned by another user moves to ``user_id``; the
        registration always comes back active.

        Raises:
            ValidationError: missing token/user or unknown platform
            RegistryWriteError: the upsert could not be stored
        """
        if not token or not token.strip():
            raise ValidationError("token is required", field="token")
        if not user_id or not str(user_id).strip():
            raise ValidationError("user_id is required", field="user_id")
        if platform not in PLATFORMS:
            raise ValidationError(
                f"platform must be one of {', '.join(PLATFORMS)}", field="platform"
            )

        metadata = metadata or {}
        now = datetime.utcnow()
        values = {
            "token": token,
            "user_id": str(user_id),
            "platform": platform,
            "device_id": device_id or "unknown",
            "device_model": metadata.get("device_model") or "unknown",
            "os_version": metadata.get("os_version") or "unknown",
            "app_version": metadata.get("app_version") or "1.0.0",
            "is_active": True,
            "notification_settings": merge_notification_settings(settings),
            "last_active_at": now,
            "invalidated_at": None,
            "invalidation_reason": None,
            "updated_at": now,
        }

        stmt = self._insert(session).values(created_at=now, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[DeviceRegistration.token],
            set_={key: stmt.excluded[key] for key in values if key != "token"},
        )
        await self._write(session, stmt, "register", token)

        registration = await session.get(DeviceRegistration, token, populate_existing=True)
        logger.info(
            f"Device registered: {mask_token(token)} user={user_id} platform={platform}"
        )
        return registration

    async def deactivate(
        self,
        session: AsyncSession,
        token: str,
        reason: str = "other",
        user_id: Optional[str] = None,
    ) -> bool:
        """Retire a registration.

        Only an active registration is touched, so repeating the call keeps
        the first invalidation timestamp and reason. When ``user_id`` is
        given the token must also belong to that user.

        Returns:
            True if the registration transitioned to inactive
        """
        if not token:
            raise ValidationError("token is required", field="token")
        self._check_reason(reason)

        conditions = [
            DeviceRegistration.token == token,
            DeviceRegistration.is_active.is_(True),
        ]
        if user_id is not None:
            conditions.append(DeviceRegistration.user_id == str(user_id))

        now = datetime.utcnow()
        stmt = (
            update(DeviceRegistration)
            .where(*conditions)
            .values(
                is_active=False,
                invalidated_at=now,
                invalidation_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        changed = await self._write(session, stmt, "deactivate", token) > 0
        if changed:
            logger.info(f"Device deactivated: {mask_token(token)} ({reason})")
        else:
            logger.debug(f"Deactivate no-op for {mask_token(token)}")
        return changed

    async def deactivate_many(
        self,
        session: AsyncSession,
        tokens: Iterable[str],
        reason: str = "token_expired",
    ) -> int:
        """Retire a batch of registrations in one statement.

        Returns:
            Number of registrations that transitioned to inactive
        """
        self._check_reason(reason)
        tokens = sorted(set(t for t in tokens if t))
        if not tokens:
            return 0

        now = datetime.utcnow()
        stmt = (
            update(DeviceRegistration)
            .where(
                DeviceRegistration.token.in_(tokens),
                DeviceRegistration.is_active.is_(True),
            )
            .values(
                is_active=False,
                invalidated_at=now,
                invalidation_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        count = await self._write(session, stmt, "deactivate", tokens[0])
        logger.info(f"Deactivated {count} of {len(tokens)} invalid tokens ({reason})")
        return count

    async def touch(self, session: AsyncSession, token: str, user_id: Optional[str] = None) -> bool:
        """Record device activity. Returns False if no such registration."""
        conditions = [DeviceRegistration.token == token]
        if user_id is not None:
            conditions.append(DeviceRegistration.user_id == str(user_id))
        now = datetime.utcnow()
        stmt = (
            update(DeviceRegistration)
            .where(*conditions)
            .values(last_active_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return await self._write(session, stmt, "touch", token) > 0

    async def update_settings(self, session: AsyncSession, user_id: str, settings: dict) -> int:
        """Apply notification settings to every registration the user owns.

        Returns:
            Number of registrations updated
        """
        if not user_id:
            raise ValidationError("user_id is required", field="user_id")
        stmt = (
            update(DeviceRegistration)
            .where(DeviceRegistration.user_id == str(user_id))
            .values(
                notification_settings=merge_notification_settings(settings),
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        count = await self._write(session, stmt, "update_settings", "")
        logger.info(f"Notification settings updated on {count} device(s) for user {user_id}")
        return count

    async def resolve_active_targets(
        self,
        session: AsyncSession,
        user_ids: Union[Sequence[str], str],
        notification_type: str,
    ) -> List[DeviceRegistration]:
        """Active registrations opted in to ``notification_type``.

        ``user_ids`` is either a list of owners or :data:`BROADCAST`. An empty
        list selects nobody. Results are ordered most recently active first.
        """
        query = select(DeviceRegistration).where(DeviceRegistration.is_active.is_(True))

        if user_ids != BROADCAST:
            owners = sorted({str(u) for u in user_ids if u})
            if not owners:
                return []
            query = query.where(DeviceRegistration.user_id.in_(owners))

        # Registry writes are bulk UPDATEs; refresh anything already in the session
        query = query.order_by(
            DeviceRegistration.last_active_at.desc(),
            DeviceRegistration.token,
        ).execution_options(populate_existing=True)
        result = await session.execute(query)
        return [r for r in result.scalars().all() if r.accepts(notification_type)]

    async def get(self, session: AsyncSession, token: str) -> Optional[DeviceRegistration]:
        return await session.get(DeviceRegistration, token, populate_existing=True)

    async def count_by_platform(self, session: AsyncSession) -> dict:
        """Registration counts per platform: ``{platform: {"total": n, "active": n}}``."""
        result = await session.execute(
            select(
                DeviceRegistration.platform,
                func.count(DeviceRegistration.token),
                func.sum(case((DeviceRegistration.is_active.is_(True), 1), else_=0)),
            ).group_by(DeviceRegistration.platform)
        )
        return {
            platform: {"total": total or 0, "active": int(active or 0)}
            for platform, total, active in result.all()
        }

    @staticmethod
    def _check_reason(reason: str):
        if reason not in INVALIDATION_REASONS:
            raise ValidationError(
                f"reason must be one of {', '.join(INVALIDATION_REASONS)}", field="reason"
            )


# Global instance
device_registry = DeviceRegistry()
