from fastapi import APIRouter, HTTPException, Depends
from datetime import datetime, timezone
import uuid

from ..core.errors import ConsistencyViolation
from ..core.security import verify_password, create_access_token, hash_password
from ..db.repositories import users
from ..dependencies.auth import get_current_user
from ..models.user import UserCreate, LoginBody, UserPublic

router = APIRouter(prefix="/auth", tags=["auth"])


def _public(user: dict) -> dict:
    return {k: v for k, v in user.items() if k != "password_hash"}


@router.post("/register", status_code=201)
async def register(body: UserCreate):
    email = body.email.strip().lower()
    if await users.get_by_email(email):
        raise HTTPException(status_code=400, detail="User with this email already exists")

    doc = {
        "user_id": str(uuid.uuid4()),
        "email": email,
        "name": body.name.strip(),
        "password_hash": hash_password(body.password),
        "created_at": datetime.now(timezone.utc),
        "last_login_at": None,
    }
    try:
        await users.create(doc)
    except ConsistencyViolation:
        # Lost a race with another registration for the same email
        raise HTTPException(status_code=400, detail="User with this email already exists")

    token = create_access_token({"sub": doc["user_id"]})
    return {"user": _public(doc), "access_token": token, "token_type": "bearer"}

@router.post("/login")
async def login(body: LoginBody):
    user = await users.get_by_email(body.email)
    if not user or not verify_password(body.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid email/password")

    await users.touch_login(user["user_id"], datetime.now(timezone.utc))
    token = create_access_token({"sub": user["user_id"]})
    return {"access_token": token, "token_type": "bearer"}

@router.get("/me", response_model=UserPublic)
async def me(user=Depends(get_current_user)):
    return _public(user)
