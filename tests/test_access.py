"""
Tests for the access guard: token resolution, role checks and cron secrets.
"""
from typing import Any
from unittest.mock import patch

import jwt
import pytest

from courierx.core.access import OPERATION_ROLES, AccessGuard
from courierx.core.errors import Forbidden, Unauthorized
from courierx.core.lifecycle import Actor
from tests.conftest import JWT_SECRET, grant_role, make_token


@pytest.fixture
def guard() -> AccessGuard:
    return AccessGuard(jwt_secret=JWT_SECRET, cron_secret="s3cret")


@pytest.fixture
def db_guard(session_factory: Any) -> AccessGuard:
    return AccessGuard(session_factory=session_factory, jwt_secret=JWT_SECRET, cron_secret="s3cret")


class TestResolveActor:
    @pytest.mark.asyncio
    async def test_token_resolves_to_actor_with_stored_roles(self, db_guard: AccessGuard, session_factory: Any) -> None:
        await grant_role(session_factory, "ops-7", "warehouse_operator")

        actor = await db_guard.resolve_actor(f"Bearer {make_token('ops-7')}")

        assert actor.user_id == "ops-7"
        assert actor.roles == {"customer", "warehouse_operator"}
        assert actor.is_staff
        assert not actor.is_admin

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "header",
        [
            None,
            "",
            "Bearer ",
            "Basic dXNlcjpwYXNz",
            "Bearer not-a-jwt",
            f"Bearer {make_token('user-1', secret='some-other-secret-entirely-0001')}",
            f"Bearer {make_token('user-1', exp=1)}",
        ],
    )
    async def test_bad_credentials_rejected(self, guard: AccessGuard, header: Any) -> None:
        with pytest.raises(Unauthorized):
            await guard.resolve_actor(header)

    @pytest.mark.asyncio
    async def test_token_without_subject_rejected(self, guard: AccessGuard) -> None:
        token = jwt.encode({"role": "admin"}, JWT_SECRET, algorithm="HS256")
        with pytest.raises(Unauthorized):
            await guard.resolve_actor(f"Bearer {token}")


class TestAuthorize:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "operation, roles, allowed",
        [
            ("booking.create", (), True),
            ("wallet.add_funds", (), True),
            ("shipment.admin_action", (), False),
            ("shipment.admin_action", ("warehouse_operator",), True),
            ("shipment.dispatch", ("warehouse_operator",), False),
            ("shipment.dispatch", ("admin",), True),
            ("manifest.create", ("admin",), True),
        ],
    )
    def test_role_sets(self, guard: AccessGuard, operation: str, roles: Any, allowed: bool) -> None:
        actor = Actor.user("someone", roles)
        if allowed:
            guard.authorize(actor, operation)
        else:
            with pytest.raises(Forbidden):
                guard.authorize(actor, operation)

    @pytest.mark.unit
    def test_unknown_operation_denied(self, guard: AccessGuard, admin: Actor) -> None:
        assert "shipment.delete" not in OPERATION_ROLES
        with pytest.raises(Forbidden):
            guard.authorize(admin, "shipment.delete")

    @pytest.mark.unit
    def test_system_actor_never_passes_user_checks(self, guard: AccessGuard) -> None:
        with pytest.raises(Forbidden):
            guard.authorize(Actor.system("domestic_sync"), "booking.create")

    @pytest.mark.unit
    def test_denial_does_not_name_missing_role(self, guard: AccessGuard, customer: Actor) -> None:
        with pytest.raises(Forbidden) as exc_info:
            guard.authorize(customer, "shipment.dispatch")
        assert exc_info.value.to_dict(detailed=False) == {"success": False, "error": "Forbidden"}

    @pytest.mark.unit
    def test_every_decision_is_audited(self, guard: AccessGuard, customer: Actor) -> None:
        with patch("courierx.core.access.audit_logger") as audit:
            guard.authorize(customer, "booking.create")
            with pytest.raises(Forbidden):
                guard.authorize(customer, "manifest.create")

        decisions = [
            (call.kwargs["actor"], call.kwargs["operation"], call.kwargs["decision"])
            for call in audit.info.call_args_list
        ]
        assert decisions == [
            ("user-1", "booking.create", "allow"),
            ("user-1", "manifest.create", "deny"),
        ]
        assert all("timestamp" in call.kwargs for call in audit.info.call_args_list)


class TestCronSecret:
    @pytest.mark.unit
    def test_matching_secret_yields_system_actor(self, guard: AccessGuard) -> None:
        actor = guard.verify_cron_secret("Bearer s3cret", "cron.domestic_sync")
        assert actor.is_system
        assert actor.source == "domestic_sync"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "header",
        [None, "", "Bearer", "Bearer wrong", "s3cret", "Bearer s3cret-and-more", "Bearer s3cret-2025-rotated"],
    )
    def test_wrong_or_missing_secret_rejected(self, guard: AccessGuard, header: Any) -> None:
        with pytest.raises(Unauthorized):
            guard.verify_cron_secret(header, "cron.domestic_sync")

    @pytest.mark.unit
    def test_previous_secret_rejected_after_rotation(self) -> None:
        guard = AccessGuard(jwt_secret=JWT_SECRET, cron_secret="s3cret-v2")

        with pytest.raises(Unauthorized):
            guard.verify_cron_secret("Bearer s3cret", "cron.domestic_sync")
        assert guard.verify_cron_secret("Bearer s3cret-v2", "cron.domestic_sync").is_system

    @pytest.mark.unit
    @pytest.mark.parametrize("configured", ["", None])
    def test_unconfigured_secret_denies_everything(self, configured: Any) -> None:
        guard = AccessGuard(jwt_secret=JWT_SECRET, cron_secret="")
        guard.cron_secret = configured
        for header in (None, "Bearer ", "Bearer anything"):
            with pytest.raises(Unauthorized):
                guard.verify_cron_secret(header, "cron.simulation_worker")
