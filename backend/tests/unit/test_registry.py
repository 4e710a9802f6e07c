"""
Unit tests for the device registry.

Covers token upserts, deactivation idempotency, target resolution and
bulk settings updates.
"""

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushhub.database import Base, build_engine
from pushhub.exceptions import RegistryWriteError, ValidationError
from pushhub.models import DeviceRegistration
from pushhub.services.registry import BROADCAST, DeviceRegistry, device_registry


async def _count(session):
    result = await session.execute(select(func.count(DeviceRegistration.token)))
    return result.scalar()


class TestRegister:
    """Tests for register()."""

    @pytest.mark.asyncio
    async def test_register_creates_active_registration(self, db_session, register):
        reg = await register("T1", user_id="U1", platform="ios")

        assert reg.token == "T1"
        assert reg.user_id == "U1"
        assert reg.platform == "ios"
        assert reg.is_active is True
        assert reg.device_model == "unknown"
        assert reg.app_version == "1.0.0"
        assert reg.notification_settings["enabled"] is True
        assert reg.notification_settings["types"]["music"] is True

    @pytest.mark.asyncio
    async def test_reregister_same_token_updates_in_place(self, db_session, register):
        await register("T1", metadata={"device_model": "Pixel 7", "app_version": "1.0.0"})
        reg = await register("T1", metadata={"device_model": "Pixel 8", "app_version": "2.0.0"})

        assert await _count(db_session) == 1
        assert reg.device_model == "Pixel 8"
        assert reg.app_version == "2.0.0"
        assert reg.is_active is True

    @pytest.mark.asyncio
    async def test_reregister_moves_token_to_new_owner(self, db_session, register):
        await register("T1", user_id="U1")
        reg = await register("T1", user_id="U2")

        assert await _count(db_session) == 1
        assert reg.user_id == "U2"

    @pytest.mark.asyncio
    async def test_reregister_reactivates_and_clears_invalidation(self, db_session, register):
        await register("T1")
        await device_registry.deactivate(db_session, "T1", reason="token_expired")

        reg = await register("T1")

        assert reg.is_active is True
        assert reg.invalidated_at is None
        assert reg.invalidation_reason is None

    @pytest.mark.asyncio
    async def test_register_requires_token(self, db_session):
        with pytest.raises(ValidationError) as exc_info:
            await device_registry.register(db_session, token="", user_id="U1", platform="ios")
        assert exc_info.value.field == "token"
        assert await _count(db_session) == 0

    @pytest.mark.asyncio
    async def test_register_requires_user(self, db_session):
        with pytest.raises(ValidationError) as exc_info:
            await device_registry.register(db_session, token="T1", user_id="", platform="ios")
        assert exc_info.value.field == "user_id"

    @pytest.mark.asyncio
    async def test_register_rejects_unknown_platform(self, db_session):
        with pytest.raises(ValidationError) as exc_info:
            await device_registry.register(db_session, token="T1", user_id="U1", platform="windows")
        assert exc_info.value.field == "platform"

    @pytest.mark.asyncio
    async def test_register_keeps_explicit_disable(self, db_session, register):
        reg = await register("T1", settings={"enabled": False, "types": {"promotion": False}})

        assert reg.notification_settings["enabled"] is False
        assert reg.notification_settings["types"]["promotion"] is False
        assert reg.notification_settings["types"]["general"] is True


class TestDeactivate:
    """Tests for deactivate() and deactivate_many()."""

    @pytest.mark.asyncio
    async def test_deactivate_marks_inactive_with_reason(self, db_session, register):
        await register("T1")

        changed = await device_registry.deactivate(db_session, "T1", reason="app_uninstalled")
        reg = await device_registry.get(db_session, "T1")

        assert changed is True
        assert reg.is_active is False
        assert reg.invalidation_reason == "app_uninstalled"
        assert reg.invalidated_at is not None

    @pytest.mark.asyncio
    async def test_deactivate_twice_keeps_first_reason_and_timestamp(self, db_session, register):
        await register("T1")
        await device_registry.deactivate(db_session, "T1", reason="token_expired")
        first = await device_registry.get(db_session, "T1")
        first_at, first_reason = first.invalidated_at, first.invalidation_reason

        changed = await device_registry.deactivate(db_session, "T1", reason="user_disabled")
        second = await device_registry.get(db_session, "T1")

        assert changed is False
        assert second.invalidated_at == first_at
        assert second.invalidation_reason == first_reason

    @pytest.mark.asyncio
    async def test_deactivate_unknown_token_is_noop(self, db_session):
        assert await device_registry.deactivate(db_session, "missing", reason="other") is False

    @pytest.mark.asyncio
    async def test_deactivate_scoped_to_owner(self, db_session, register):
        await register("T1", user_id="U1")

        changed = await device_registry.deactivate(db_session, "T1", reason="user_disabled", user_id="U2")
        reg = await device_registry.get(db_session, "T1")

        assert changed is False
        assert reg.is_active is True

    @pytest.mark.asyncio
    async def test_deactivate_rejects_unknown_reason(self, db_session, register):
        await register("T1")
        with pytest.raises(ValidationError):
            await device_registry.deactivate(db_session, "T1", reason="bored")

    @pytest.mark.asyncio
    async def test_deactivate_many_counts_only_transitions(self, db_session, register):
        await register("T1")
        await register("T2")
        await register("T3")
        await device_registry.deactivate(db_session, "T3", reason="other")

        count = await device_registry.deactivate_many(db_session, ["T1", "T2", "T3", "missing"])

        assert count == 2
        for token in ("T1", "T2"):
            reg = await device_registry.get(db_session, token)
            assert reg.is_active is False
            assert reg.invalidation_reason == "token_expired"
        t3 = await device_registry.get(db_session, "T3")
        assert t3.invalidation_reason == "other"

    @pytest.mark.asyncio
    async def test_deactivate_many_empty_is_noop(self, db_session):
        assert await device_registry.deactivate_many(db_session, []) == 0


class TestResolveActiveTargets:
    """Tests for resolve_active_targets()."""

    @pytest.mark.asyncio
    async def test_explicit_users(self, db_session, register):
        await register("T1", user_id="U1")
        await register("T2", user_id="U2")
        await register("T3", user_id="U3")

        targets = await device_registry.resolve_active_targets(db_session, ["U1", "U3"], "general")

        assert sorted(t.token for t in targets) == ["T1", "T3"]

    @pytest.mark.asyncio
    async def test_broadcast_selects_every_owner(self, db_session, register):
        await register("T1", user_id="U1")
        await register("T2", user_id="U2")

        targets = await device_registry.resolve_active_targets(db_session, BROADCAST, "general")

        assert sorted(t.token for t in targets) == ["T1", "T2"]

    @pytest.mark.asyncio
    async def test_empty_user_list_is_not_broadcast(self, db_session, register):
        await register("T1", user_id="U1")

        assert await device_registry.resolve_active_targets(db_session, [], "general") == []

    @pytest.mark.asyncio
    async def test_excludes_inactive(self, db_session, register):
        await register("T1")
        await register("T2")
        await device_registry.deactivate(db_session, "T1", reason="token_expired")

        targets = await device_registry.resolve_active_targets(db_session, BROADCAST, "general")

        assert [t.token for t in targets] == ["T2"]

    @pytest.mark.asyncio
    async def test_respects_type_opt_out(self, db_session, register):
        await register("T1", settings={"types": {"promotion": False}})
        await register("T2")

        promo = await device_registry.resolve_active_targets(db_session, BROADCAST, "promotion")
        music = await device_registry.resolve_active_targets(db_session, BROADCAST, "music")

        assert [t.token for t in promo] == ["T2"]
        assert sorted(t.token for t in music) == ["T1", "T2"]

    @pytest.mark.asyncio
    async def test_respects_global_disable(self, db_session, register):
        await register("T1", settings={"enabled": False})

        assert await device_registry.resolve_active_targets(db_session, BROADCAST, "general") == []


class TestUpdateSettings:
    """Tests for update_settings()."""

    @pytest.mark.asyncio
    async def test_applies_to_all_devices_of_user(self, db_session, register):
        await register("T1", user_id="U1")
        await register("T2", user_id="U1")
        await register("T3", user_id="U2")

        count = await device_registry.update_settings(db_session, "U1", {"types": {"music": False}})
        targets = await device_registry.resolve_active_targets(db_session, BROADCAST, "music")

        assert count == 2
        assert [t.token for t in targets] == ["T3"]

    @pytest.mark.asyncio
    async def test_requires_user(self, db_session):
        with pytest.raises(ValidationError):
            await device_registry.update_settings(db_session, "", {})


class TestTouchAndStats:
    """Tests for touch() and count_by_platform()."""

    @pytest.mark.asyncio
    async def test_touch_updates_last_active(self, db_session, register):
        reg = await register("T1")
        before = reg.last_active_at

        assert await device_registry.touch(db_session, "T1") is True
        after = await device_registry.get(db_session, "T1")

        assert after.last_active_at >= before

    @pytest.mark.asyncio
    async def test_touch_unknown_token(self, db_session):
        assert await device_registry.touch(db_session, "missing") is False

    @pytest.mark.asyncio
    async def test_count_by_platform(self, db_session, register):
        await register("T1", platform="ios")
        await register("T2", platform="android")
        await register("T3", platform="android")
        await device_registry.deactivate(db_session, "T3", reason="other")

        counts = await device_registry.count_by_platform(db_session)

        assert counts == {
            "ios": {"total": 1, "active": 1},
            "android": {"total": 2, "active": 1},
        }


class TestWriteFailures:
    """Storage errors surface as RegistryWriteError."""

    @pytest.mark.asyncio
    async def test_storage_error_is_wrapped(self, db_session, register, monkeypatch):
        from sqlalchemy.exc import OperationalError

        await register("T1")

        async def _boom(*args, **kwargs):
            raise OperationalError("UPDATE", {}, Exception("disk I/O error"))

        monkeypatch.setattr(db_session, "execute", _boom)

        with pytest.raises(RegistryWriteError) as exc_info:
            await device_registry.deactivate(db_session, "T1", reason="other")
        assert exc_info.value.operation == "deactivate"


@pytest_asyncio.fixture
async def file_sessions(tmp_path):
    """Session factory on a file-backed SQLite database shared by many connections."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'registry.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


class CommitLog(DeviceRegistry):
    """Registry recording which writer each committed statement came from."""

    def __init__(self):
        self.commits = []

    async def _write(self, session, stmt, operation, token):
        count = await super()._write(session, stmt, operation, token)
        self.commits.append((session.info.get("writer"), count))
        return count


class TestConcurrentWrites:
    """register and deactivate on one token from separate connections."""

    PLATFORMS = {"U1": "ios", "U2": "android", "U3": "ios"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempt", range(5))
    async def test_last_writer_wins_on_single_row(self, file_sessions, attempt):
        registry = CommitLog()

        async def run(writer, call):
            async with file_sessions() as session:
                session.info["writer"] = writer
                await call(session)

        def registering(user_id):
            return run(
                ("register", user_id),
                lambda s: registry.register(s, "T1", user_id, self.PLATFORMS[user_id], device_id=f"dev-{user_id}"),
            )

        def deactivating():
            return run(("deactivate", None), lambda s: registry.deactivate(s, "T1", reason="app_uninstalled"))

        await asyncio.gather(
            registering("U1"),
            deactivating(),
            registering("U2"),
            deactivating(),
            registering("U3"),
        )

        async with file_sessions() as session:
            result = await session.execute(select(DeviceRegistration))
            rows = result.scalars().all()

        assert len(rows) == 1
        row = rows[0]

        effective = [writer for writer, count in registry.commits if count]
        last_kind, _ = effective[-1]
        last_owner = [user for kind, user in effective if kind == "register"][-1]

        assert row.user_id == last_owner
        assert row.platform == self.PLATFORMS[last_owner]
        assert row.device_id == f"dev-{last_owner}"
        if last_kind == "register":
            assert row.is_active is True
            assert row.invalidated_at is None
            assert row.invalidation_reason is None
        else:
            assert row.is_active is False
            assert row.invalidated_at is not None
            assert row.invalidation_reason == "app_uninstalled"
