from typing import Optional

from pydantic import BaseModel


class SendOtpResponse(BaseModel):
    success: bool
    signature: str
    expiresAt: int
    # present only when no outbound channel is configured
    otp: Optional[str] = None


class UserOut(BaseModel):
    id: str
    username: str
    email: str
    name: str
    role: str


class VerifyOtpResponse(BaseModel):
    success: bool
    token: str
    user: UserOut


class SessionOut(UserOut):
    exp: int


class HealthOut(BaseModel):
    status: str
    time: str


class ConfigReport(BaseModel):
    env: str
    channel: str
    fallback_secret: bool
    admin_email: str
    otp_ttl_seconds: int
    session_ttl_seconds: int
    settings_present: dict[str, bool]
