from pydantic import BaseModel, EmailStr
from datetime import datetime

class UserCreate(BaseModel):
    email: EmailStr
    password: str
    name: str

class LoginBody(BaseModel):
    email: EmailStr
    password: str

class UserPublic(BaseModel):
    user_id: str
    email: EmailStr
    name: str
    created_at: datetime
    last_login_at: datetime | None = None
