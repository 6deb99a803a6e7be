from ..core.errors import ConsistencyViolation


def ensure_not_owner(project: dict, target_user_id: str):
    """
    The owner is not a membership row: member-management calls (remove,
    change role, direct add) must never target them. Ownership only moves
    through transfer_ownership.
    """
    if target_user_id == project.get("owner_id"):
        raise ConsistencyViolation(
            "The project owner cannot be removed or have their role changed; transfer ownership instead"
        )
