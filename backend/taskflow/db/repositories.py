"""
Thin data-access layer over the MongoDB collections.

The access-control core only needs get/create/update/delete-by-id plus a few
narrow lookups (membership by pair, invitation by token, a compare-and-swap on
invitation status, a membership upsert). Driver errors are translated here so
nothing above this module sees a raw ``PyMongoError``.
"""
from datetime import datetime, timezone
import functools
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..core.errors import ConsistencyViolation, StorageError
from .mongo import db

logger = logging.getLogger(__name__)

NO_ID = {"_id": 0}


def translate_errors(func):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except DuplicateKeyError as e:
            raise ConsistencyViolation("Conflicting record already exists") from e
        except PyMongoError as e:
            logger.exception("Storage failure in %s", func.__qualname__)
            raise StorageError("Storage backend unavailable") from e
    return wrapper


def _opts(session) -> dict:
    return {"session": session} if session is not None else {}


async def _collect(cursor) -> list[dict]:
    return [doc async for doc in cursor]


class UserRepository:
    collection = "users"

    @translate_errors
    async def get(self, user_id: str) -> dict | None:
        return await db()[self.collection].find_one({"user_id": user_id}, NO_ID)

    @translate_errors
    async def get_by_email(self, email: str) -> dict | None:
        return await db()[self.collection].find_one({"email": email.strip().lower()}, NO_ID)

    @translate_errors
    async def create(self, doc: dict) -> dict:
        await db()[self.collection].insert_one(dict(doc))
        return doc

    @translate_errors
    async def touch_login(self, user_id: str, when: datetime):
        await db()[self.collection].update_one({"user_id": user_id}, {"$set": {"last_login_at": when}})


class ProjectRepository:
    collection = "projects"

    @translate_errors
    async def get(self, project_id: str) -> dict | None:
        return await db()[self.collection].find_one({"project_id": project_id}, NO_ID)

    @translate_errors
    async def create(self, doc: dict) -> dict:
        await db()[self.collection].insert_one(dict(doc))
        return doc

    @translate_errors
    async def update(self, project_id: str, fields: dict) -> dict | None:
        return await db()[self.collection].find_one_and_update(
            {"project_id": project_id},
            {"$set": fields},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    @translate_errors
    async def delete(self, project_id: str) -> bool:
        result = await db()[self.collection].delete_one({"project_id": project_id})
        return result.deleted_count > 0

    @translate_errors
    async def transfer_owner(self, project_id: str, current_owner_id: str, new_owner_id: str, when: datetime, session=None) -> dict | None:
        """Swap owner_id only if it still points at the current owner."""
        return await db()[self.collection].find_one_and_update(
            {"project_id": project_id, "owner_id": current_owner_id},
            {"$set": {"owner_id": new_owner_id, "updated_at": when}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
            **_opts(session),
        )

    @translate_errors
    async def list_owned(self, owner_id: str) -> list[dict]:
        return await _collect(db()[self.collection].find({"owner_id": owner_id}, NO_ID))

    @translate_errors
    async def list_by_ids(self, project_ids: list[str]) -> list[dict]:
        if not project_ids:
            return []
        return await _collect(db()[self.collection].find({"project_id": {"$in": project_ids}}, NO_ID))


class MembershipRepository:
    collection = "project_members"

    @translate_errors
    async def get(self, project_id: str, user_id: str, session=None) -> dict | None:
        return await db()[self.collection].find_one(
            {"project_id": project_id, "user_id": user_id}, NO_ID, **_opts(session)
        )

    @translate_errors
    async def list_for_project(self, project_id: str) -> list[dict]:
        return await _collect(db()[self.collection].find({"project_id": project_id}, NO_ID))

    @translate_errors
    async def list_for_user(self, user_id: str) -> list[dict]:
        return await _collect(db()[self.collection].find({"user_id": user_id}, NO_ID))

    @translate_errors
    async def upsert(self, project_id: str, user_id: str, role: str, session=None) -> tuple[dict, bool]:
        """Create or update the (project, user) row. Returns (row, created)."""
        result = await db()[self.collection].update_one(
            {"project_id": project_id, "user_id": user_id},
            {"$setOnInsert": {"joined_at": datetime.now(timezone.utc)},
             "$set": {"role": role}},
            upsert=True,
            **_opts(session),
        )
        row = await self.get(project_id, user_id, session=session)
        return row, result.upserted_id is not None

    @translate_errors
    async def update_role(self, project_id: str, user_id: str, role: str) -> dict | None:
        return await db()[self.collection].find_one_and_update(
            {"project_id": project_id, "user_id": user_id},
            {"$set": {"role": role, "updated_at": datetime.now(timezone.utc)}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    @translate_errors
    async def delete(self, project_id: str, user_id: str, session=None) -> bool:
        result = await db()[self.collection].delete_one({"project_id": project_id, "user_id": user_id}, **_opts(session))
        return result.deleted_count > 0

    @translate_errors
    async def delete_for_project(self, project_id: str) -> int:
        result = await db()[self.collection].delete_many({"project_id": project_id})
        return result.deleted_count


class TaskRepository:
    collection = "tasks"

    @translate_errors
    async def get(self, task_id: str) -> dict | None:
        return await db()[self.collection].find_one({"task_id": task_id}, NO_ID)

    @translate_errors
    async def create(self, doc: dict) -> dict:
        await db()[self.collection].insert_one(dict(doc))
        return doc

    @translate_errors
    async def update(self, task_id: str, fields: dict) -> dict | None:
        return await db()[self.collection].find_one_and_update(
            {"task_id": task_id},
            {"$set": fields},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    @translate_errors
    async def delete(self, task_id: str) -> bool:
        result = await db()[self.collection].delete_one({"task_id": task_id})
        return result.deleted_count > 0

    @translate_errors
    async def list_for_project(self, project_id: str) -> list[dict]:
        cursor = db()[self.collection].find({"project_id": project_id}, NO_ID, sort=[("created_at", 1)])
        return await _collect(cursor)

    @translate_errors
    async def list_personal(self, creator_id: str) -> list[dict]:
        cursor = db()[self.collection].find({"project_id": None, "creator_id": creator_id}, NO_ID, sort=[("created_at", 1)])
        return await _collect(cursor)

    @translate_errors
    async def delete_for_project(self, project_id: str) -> int:
        result = await db()[self.collection].delete_many({"project_id": project_id})
        return result.deleted_count


class InvitationRepository:
    collection = "invitations"

    @translate_errors
    async def get(self, invitation_id: str) -> dict | None:
        return await db()[self.collection].find_one({"invitation_id": invitation_id}, NO_ID)

    @translate_errors
    async def get_by_token(self, token: str) -> dict | None:
        return await db()[self.collection].find_one({"token": token}, NO_ID)

    @translate_errors
    async def create(self, doc: dict) -> dict:
        await db()[self.collection].insert_one(dict(doc))
        return doc

    @translate_errors
    async def compare_and_set(self, invitation_id: str, expected: dict, fields: dict, session=None) -> dict | None:
        """
        Apply ``fields`` only if the stored record still matches ``expected``.
        Returns the updated record, or None if another writer got there first.
        """
        query = {"invitation_id": invitation_id, **expected}
        return await db()[self.collection].find_one_and_update(
            query,
            {"$set": fields},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
            **_opts(session),
        )

    @translate_errors
    async def find_pending(self, project_id: str, email: str) -> dict | None:
        return await db()[self.collection].find_one(
            {"project_id": project_id, "email": email, "status": "pending"}, NO_ID
        )

    @translate_errors
    async def list_for_project(self, project_id: str) -> list[dict]:
        cursor = db()[self.collection].find({"project_id": project_id}, NO_ID, sort=[("created_at", -1)])
        return await _collect(cursor)

    @translate_errors
    async def list_pending_for_email(self, email: str) -> list[dict]:
        cursor = db()[self.collection].find({"email": email, "status": "pending"}, NO_ID, sort=[("created_at", -1)])
        return await _collect(cursor)

    @translate_errors
    async def list_unsynced_accepted(self) -> list[dict]:
        return await _collect(db()[self.collection].find({"status": "accepted", "membership_synced": False}, NO_ID))

    @translate_errors
    async def expire_overdue(self, now: datetime) -> int:
        result = await db()[self.collection].update_many(
            {"status": "pending", "expires_at": {"$lte": now}},
            {"$set": {"status": "expired"}},
        )
        return result.modified_count

    @translate_errors
    async def revoke_pending_for_project(self, project_id: str, reason: str) -> int:
        result = await db()[self.collection].update_many(
            {"project_id": project_id, "status": "pending"},
            {"$set": {"status": "revoked", "revoked_reason": reason, "revoked_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count


users = UserRepository()
projects = ProjectRepository()
memberships = MembershipRepository()
tasks = TaskRepository()
invitations = InvitationRepository()
