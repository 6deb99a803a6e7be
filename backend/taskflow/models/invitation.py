from pydantic import BaseModel, EmailStr

class InvitationCreate(BaseModel):
    email: EmailStr
    # Checked against the invitable roles by the service (400 on anything else)
    role: str

class InvitationResend(BaseModel):
    # Corrected address; omitted means resend to the original one
    email: EmailStr | None = None
