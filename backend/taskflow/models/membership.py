from pydantic import BaseModel, EmailStr
from typing import Literal

# Project roles. "owner" is implicit from Project.owner_id and never stored here.
ProjectRole = Literal["owner", "collaborator", "member", "viewer"]

class MemberAdd(BaseModel):
    # Either an existing account's email or its user_id
    email: EmailStr | None = None
    user_id: str | None = None
    # Validated by the service so unknown roles surface as a 400, not a 422
    role: str

class MemberRoleUpdate(BaseModel):
    role: str

class OwnershipTransfer(BaseModel):
    user_id: str
