import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from conftest import make_user
from taskflow.core.errors import (
    AlreadyConsumed,
    ConsistencyViolation,
    EmailMismatch,
    Expired,
    InvalidState,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from taskflow.db.repositories import invitations as invitation_repo
from taskflow.db.repositories import memberships
from taskflow.services import invitations as service
from taskflow.services import projects as project_service
from taskflow.services.invitations import INVITATION_TTL, as_utc, utcnow
from taskflow.services.roles import resolve_role

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def world(mock_db):
    owner = await make_user(mock_db, "owner@x.com", "Olivia")
    bob = await make_user(mock_db, "bob@x.com", "Bob")
    project = await project_service.create_project(owner["user_id"], "Apollo")
    return {"db": mock_db, "owner": owner, "bob": bob, "project": project}


async def _invite(world, email="bob@x.com", role="member"):
    return await service.create_invitation(
        world["owner"]["user_id"], world["project"]["project_id"], email, role
    )


async def _force_expiry(db, invitation_id):
    await db["invitations"].update_one(
        {"invitation_id": invitation_id},
        {"$set": {"expires_at": utcnow() - timedelta(minutes=1)}},
    )


async def _membership_count(db, project_id, user_id):
    return await db["project_members"].count_documents({"project_id": project_id, "user_id": user_id})


class TestCreate:
    async def test_new_invitation_is_pending_for_seven_days(self, world):
        inv = await _invite(world, email="  Bob@X.com ")
        assert inv["status"] == "pending"
        assert inv["email"] == "bob@x.com"
        assert inv["expires_at"] - inv["created_at"] == INVITATION_TTL == timedelta(days=7)
        assert inv["invited_by"] == world["owner"]["user_id"]
        assert inv["accepted_at"] is None

    async def test_tokens_are_opaque_and_unique(self, world):
        first = await _invite(world, email="a@x.com")
        second = await _invite(world, email="b@x.com")
        assert first["token"] != second["token"]
        assert len(first["token"]) == 64
        assert "a@x.com" not in first["token"]
        assert first["invitation_id"] not in first["token"]

    async def test_unknown_project(self, world):
        with pytest.raises(NotFound):
            await service.create_invitation(world["owner"]["user_id"], "missing", "bob@x.com", "member")

    @pytest.mark.parametrize("role", ["collaborator", "member", "viewer", None])
    async def test_only_owner_may_invite(self, world, role):
        carol = await make_user(world["db"], "carol@x.com")
        pid = world["project"]["project_id"]
        if role:
            await memberships.upsert(pid, carol["user_id"], role)
        with pytest.raises(PermissionDenied):
            await service.create_invitation(carol["user_id"], pid, "dave@x.com", "viewer")

    @pytest.mark.parametrize("role", ["owner", "admin", "", None])
    async def test_role_must_be_grantable(self, world, role):
        with pytest.raises(ValidationError):
            await _invite(world, role=role)

    async def test_email_is_required(self, world):
        with pytest.raises(ValidationError):
            await _invite(world, email="not-an-email")

    async def test_cannot_invite_existing_member(self, world):
        await memberships.upsert(world["project"]["project_id"], world["bob"]["user_id"], "viewer")
        with pytest.raises(ConsistencyViolation):
            await _invite(world)

    async def test_cannot_invite_the_owner(self, world):
        with pytest.raises(ConsistencyViolation):
            await _invite(world, email="owner@x.com")

    async def test_reinvite_supersedes_previous_pending(self, world):
        first = await _invite(world, role="viewer")
        second = await _invite(world, role="collaborator")

        rows = await invitation_repo.list_for_project(world["project"]["project_id"])
        pending = [r for r in rows if r["status"] == "pending"]
        assert [r["invitation_id"] for r in pending] == [second["invitation_id"]]

        old = await invitation_repo.get(first["invitation_id"])
        assert old["status"] == "revoked"
        assert old["revoked_reason"] == "superseded"
        assert old["superseded_by"] == second["invitation_id"]


class TestTokenLookup:
    async def test_pending_token_returns_project(self, world):
        inv = await _invite(world)
        found, project = await service.get_invitation_for_token(inv["token"])
        assert found["invitation_id"] == inv["invitation_id"]
        assert project["name"] == "Apollo"

    async def test_unknown_token(self, world):
        with pytest.raises(NotFound):
            await service.get_invitation_for_token("nope")

    async def test_expired_token_reports_context(self, world):
        inv = await _invite(world)
        await _force_expiry(world["db"], inv["invitation_id"])
        with pytest.raises(Expired) as excinfo:
            await service.get_invitation_for_token(inv["token"])
        assert excinfo.value.extra["project_name"] == "Apollo"
        assert excinfo.value.extra["role"] == "member"

    async def test_revoked_token(self, world):
        inv = await _invite(world)
        await service.revoke_invitation(world["owner"]["user_id"], inv["invitation_id"])
        with pytest.raises(AlreadyConsumed) as excinfo:
            await service.get_invitation_for_token(inv["token"])
        assert excinfo.value.status == "revoked"


class TestAccept:
    async def test_accept_grants_invited_role(self, world):
        inv = await _invite(world, role="collaborator")
        result = await service.accept_invitation(inv["token"], world["bob"]["user_id"])

        assert result["membership"]["role"] == "collaborator"
        assert result["project"]["project_id"] == world["project"]["project_id"]
        stored = await invitation_repo.get(inv["invitation_id"])
        assert stored["status"] == "accepted"
        assert stored["accepted_at"] is not None
        assert stored["accepted_by"] == world["bob"]["user_id"]
        assert stored["membership_synced"] is True
        assert await resolve_role(world["bob"]["user_id"], world["project"]["project_id"]) == "collaborator"

    async def test_email_match_ignores_case(self, world):
        inv = await _invite(world, email="BOB@X.COM")
        result = await service.accept_invitation(inv["token"], world["bob"]["user_id"])
        assert result["invitation"]["status"] == "accepted"

    async def test_wrong_account_is_rejected_and_invitation_stays_pending(self, world):
        inv = await _invite(world)
        carol = await make_user(world["db"], "carol@x.com")
        with pytest.raises(EmailMismatch):
            await service.accept_invitation(inv["token"], carol["user_id"])
        assert (await invitation_repo.get(inv["invitation_id"]))["status"] == "pending"
        assert await resolve_role(carol["user_id"], world["project"]["project_id"]) is None

    async def test_unknown_token(self, world):
        with pytest.raises(NotFound):
            await service.accept_invitation("missing", world["bob"]["user_id"])

    async def test_second_accept_is_rejected(self, world):
        inv = await _invite(world)
        await service.accept_invitation(inv["token"], world["bob"]["user_id"])
        with pytest.raises(AlreadyConsumed) as excinfo:
            await service.accept_invitation(inv["token"], world["bob"]["user_id"])
        assert excinfo.value.status == "accepted"
        pid = world["project"]["project_id"]
        assert await _membership_count(world["db"], pid, world["bob"]["user_id"]) == 1

    async def test_concurrent_accepts_produce_one_membership(self, world):
        inv = await _invite(world)
        results = await asyncio.gather(
            service.accept_invitation(inv["token"], world["bob"]["user_id"]),
            service.accept_invitation(inv["token"], world["bob"]["user_id"]),
            return_exceptions=True,
        )
        successes = [r for r in results if isinstance(r, dict)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], AlreadyConsumed)
        pid = world["project"]["project_id"]
        assert await _membership_count(world["db"], pid, world["bob"]["user_id"]) == 1

    async def test_expiry_between_check_and_claim_is_rejected(self, world, monkeypatch):
        inv = await _invite(world)
        checked_at = utcnow()
        # First reading passes the status check; the claim happens after expiry
        clock = iter([checked_at])
        monkeypatch.setattr(service, "utcnow", lambda: next(clock, checked_at + timedelta(days=8)))

        with pytest.raises(Expired):
            await service.accept_invitation(inv["token"], world["bob"]["user_id"])
        assert (await invitation_repo.get(inv["invitation_id"]))["status"] == "expired"
        pid = world["project"]["project_id"]
        assert await _membership_count(world["db"], pid, world["bob"]["user_id"]) == 0

    async def test_expired_invitation_cannot_be_accepted(self, world):
        inv = await _invite(world)
        await _force_expiry(world["db"], inv["invitation_id"])
        with pytest.raises(Expired):
            await service.accept_invitation(inv["token"], world["bob"]["user_id"])
        # Lazy expiry is persisted once observed
        assert (await invitation_repo.get(inv["invitation_id"]))["status"] == "expired"
        assert await resolve_role(world["bob"]["user_id"], world["project"]["project_id"]) is None

    async def test_revoked_invitation_cannot_be_accepted(self, world):
        inv = await _invite(world)
        await service.revoke_invitation(world["owner"]["user_id"], inv["invitation_id"])
        with pytest.raises(AlreadyConsumed) as excinfo:
            await service.accept_invitation(inv["token"], world["bob"]["user_id"])
        assert excinfo.value.status == "revoked"

    async def test_accept_over_existing_membership_updates_role(self, world):
        inv = await _invite(world, role="collaborator")
        pid = world["project"]["project_id"]
        await memberships.upsert(pid, world["bob"]["user_id"], "viewer")

        result = await service.accept_invitation(inv["token"], world["bob"]["user_id"])
        assert result["membership"]["role"] == "collaborator"
        assert await _membership_count(world["db"], pid, world["bob"]["user_id"]) == 1


class TestRevoke:
    async def test_revoke_pending(self, world):
        inv = await _invite(world)
        revoked = await service.revoke_invitation(world["owner"]["user_id"], inv["invitation_id"])
        assert revoked["status"] == "revoked"
        assert revoked["revoked_by"] == world["owner"]["user_id"]

    async def test_revoke_twice(self, world):
        inv = await _invite(world)
        await service.revoke_invitation(world["owner"]["user_id"], inv["invitation_id"])
        with pytest.raises(InvalidState):
            await service.revoke_invitation(world["owner"]["user_id"], inv["invitation_id"])

    async def test_revoke_accepted(self, world):
        inv = await _invite(world)
        await service.accept_invitation(inv["token"], world["bob"]["user_id"])
        with pytest.raises(InvalidState) as excinfo:
            await service.revoke_invitation(world["owner"]["user_id"], inv["invitation_id"])
        assert excinfo.value.extra["status"] == "accepted"

    async def test_revoke_expired(self, world):
        inv = await _invite(world)
        await _force_expiry(world["db"], inv["invitation_id"])
        with pytest.raises(InvalidState):
            await service.revoke_invitation(world["owner"]["user_id"], inv["invitation_id"])

    async def test_only_owner_may_revoke(self, world):
        inv = await _invite(world)
        carol = await make_user(world["db"], "carol@x.com")
        await memberships.upsert(world["project"]["project_id"], carol["user_id"], "collaborator")
        with pytest.raises(PermissionDenied):
            await service.revoke_invitation(carol["user_id"], inv["invitation_id"])

    async def test_unknown_invitation(self, world):
        with pytest.raises(NotFound):
            await service.revoke_invitation(world["owner"]["user_id"], "missing")


class TestResend:
    async def test_resend_keeps_token_and_extends_window(self, world):
        inv = await _invite(world)
        soon = utcnow() + timedelta(hours=1)
        await world["db"]["invitations"].update_one(
            {"invitation_id": inv["invitation_id"]}, {"$set": {"expires_at": soon}}
        )

        updated = await service.resend_invitation(world["owner"]["user_id"], inv["invitation_id"])
        assert updated["token"] == inv["token"]
        assert updated["status"] == "pending"
        assert updated["resend_count"] == 1
        assert as_utc(updated["expires_at"]) > utcnow() + timedelta(days=6)

    async def test_resend_expired_issues_new_invitation(self, world):
        inv = await _invite(world, role="viewer")
        await _force_expiry(world["db"], inv["invitation_id"])

        fresh = await service.resend_invitation(world["owner"]["user_id"], inv["invitation_id"])
        assert fresh["invitation_id"] != inv["invitation_id"]
        assert fresh["token"] != inv["token"]
        assert fresh["role"] == "viewer"
        assert fresh["resent_from"] == inv["invitation_id"]
        assert (await invitation_repo.get(inv["invitation_id"]))["status"] == "expired"

        with pytest.raises(Expired):
            await service.accept_invitation(inv["token"], world["bob"]["user_id"])
        result = await service.accept_invitation(fresh["token"], world["bob"]["user_id"])
        assert result["membership"]["role"] == "viewer"

    async def test_resend_to_corrected_email_rotates_token(self, world):
        inv = await _invite(world, email="bobby@x.com")
        updated = await service.resend_invitation(
            world["owner"]["user_id"], inv["invitation_id"], email="Bob@x.com"
        )
        assert updated["invitation_id"] == inv["invitation_id"]
        assert updated["email"] == "bob@x.com"
        assert updated["token"] != inv["token"]

        with pytest.raises(NotFound):
            await service.accept_invitation(inv["token"], world["bob"]["user_id"])
        result = await service.accept_invitation(updated["token"], world["bob"]["user_id"])
        assert result["invitation"]["status"] == "accepted"

    async def test_resend_accepted_is_rejected(self, world):
        inv = await _invite(world)
        await service.accept_invitation(inv["token"], world["bob"]["user_id"])
        with pytest.raises(InvalidState):
            await service.resend_invitation(world["owner"]["user_id"], inv["invitation_id"])

    async def test_resend_expired_to_address_that_joined_since(self, world):
        inv = await _invite(world, role="viewer")
        await _force_expiry(world["db"], inv["invitation_id"])
        pid = world["project"]["project_id"]
        await memberships.upsert(pid, world["bob"]["user_id"], "collaborator")

        with pytest.raises(ConsistencyViolation):
            await service.resend_invitation(world["owner"]["user_id"], inv["invitation_id"])
        rows = await invitation_repo.list_for_project(pid)
        assert [r["invitation_id"] for r in rows] == [inv["invitation_id"]]
        assert await resolve_role(world["bob"]["user_id"], pid) == "collaborator"

    async def test_resend_live_to_address_that_joined_since(self, world):
        inv = await _invite(world)
        await memberships.upsert(world["project"]["project_id"], world["bob"]["user_id"], "viewer")
        with pytest.raises(ConsistencyViolation):
            await service.resend_invitation(world["owner"]["user_id"], inv["invitation_id"])

    async def test_resend_revoked_is_rejected(self, world):
        inv = await _invite(world)
        await service.revoke_invitation(world["owner"]["user_id"], inv["invitation_id"])
        with pytest.raises(InvalidState):
            await service.resend_invitation(world["owner"]["user_id"], inv["invitation_id"])

    async def test_only_owner_may_resend(self, world):
        inv = await _invite(world)
        with pytest.raises(PermissionDenied):
            await service.resend_invitation(world["bob"]["user_id"], inv["invitation_id"])


class TestListing:
    async def test_project_list_reports_lazy_expiry(self, world):
        inv = await _invite(world)
        await _force_expiry(world["db"], inv["invitation_id"])
        rows = await service.list_project_invitations(world["owner"]["user_id"], world["project"]["project_id"])
        assert [r["status"] for r in rows] == ["expired"]

    async def test_project_list_is_owner_only(self, world):
        pid = world["project"]["project_id"]
        await memberships.upsert(pid, world["bob"]["user_id"], "collaborator")
        with pytest.raises(PermissionDenied):
            await service.list_project_invitations(world["bob"]["user_id"], pid)

    async def test_my_invitations_skip_expired_and_foreign(self, world):
        live = await _invite(world)
        other_project = await project_service.create_project(world["owner"]["user_id"], "Zeus")
        stale = await service.create_invitation(
            world["owner"]["user_id"], other_project["project_id"], "bob@x.com", "viewer"
        )
        await _force_expiry(world["db"], stale["invitation_id"])
        await _invite(world, email="someone@x.com")

        mine = await service.list_my_invitations(world["bob"]["user_id"])
        assert [m["invitation_id"] for m in mine] == [live["invitation_id"]]
        assert mine[0]["project"]["name"] == "Apollo"


class TestDelivery:
    async def test_delivery_sends_invitation_details(self, world, sent_emails):
        inv = await _invite(world, role="viewer")
        assert await service.deliver_invitation(inv) is None
        assert len(sent_emails) == 1
        email = sent_emails[0]
        assert email["to"] == "bob@x.com"
        assert email["project_name"] == "Apollo"
        assert email["inviter_name"] == "Olivia"
        assert email["role"] == "viewer"
        assert email["token"] == inv["token"]

    async def test_delivery_failure_is_a_warning(self, world, monkeypatch):
        monkeypatch.setattr(service, "send_project_invitation_email", lambda *args: (False, "SMTP down"))
        inv = await _invite(world)
        assert await service.deliver_invitation(inv) == "SMTP down"
        assert (await invitation_repo.get(inv["invitation_id"]))["status"] == "pending"


class TestExpirySweep:
    async def test_flips_only_overdue_pending(self, world):
        overdue = await _invite(world)
        live = await _invite(world, email="carol@x.com")
        await _force_expiry(world["db"], overdue["invitation_id"])

        assert await service.expire_stale_invitations() == 1
        assert (await invitation_repo.get(overdue["invitation_id"]))["status"] == "expired"
        assert (await invitation_repo.get(live["invitation_id"]))["status"] == "pending"

    async def test_leaves_terminal_states_alone(self, world):
        inv = await _invite(world)
        await service.revoke_invitation(world["owner"]["user_id"], inv["invitation_id"])
        await _force_expiry(world["db"], inv["invitation_id"])

        assert await service.expire_stale_invitations() == 0
        assert (await invitation_repo.get(inv["invitation_id"]))["status"] == "revoked"


class TestRepair:
    async def test_restores_membership_for_half_finished_accept(self, world):
        inv = await _invite(world, role="collaborator")
        await world["db"]["invitations"].update_one(
            {"invitation_id": inv["invitation_id"]},
            {"$set": {
                "status": "accepted",
                "accepted_at": utcnow(),
                "accepted_by": world["bob"]["user_id"],
                "membership_synced": False,
            }},
        )

        assert await service.repair_accepted_invitations() == 1
        pid = world["project"]["project_id"]
        assert await resolve_role(world["bob"]["user_id"], pid) == "collaborator"
        assert (await invitation_repo.get(inv["invitation_id"]))["membership_synced"] is True

    async def test_does_not_resurrect_removed_member(self, world):
        inv = await _invite(world)
        await service.accept_invitation(inv["token"], world["bob"]["user_id"])
        pid = world["project"]["project_id"]
        await project_service.remove_member(world["owner"]["user_id"], pid, world["bob"]["user_id"])

        assert await service.repair_accepted_invitations() == 0
        assert await resolve_role(world["bob"]["user_id"], pid) is None
