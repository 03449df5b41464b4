"""
Auth schemas
"""
from datetime import datetime
from typing import Optional
from pydantic import EmailStr, Field

from storefront.schemas.base import CamelModel


class RegisterRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field("", max_length=100)


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class VerifyEmailRequest(CamelModel):
    email: EmailStr
    otp: str = Field(..., pattern=r"^\d{6}$")


class ResendOtpRequest(CamelModel):
    email: EmailStr


class PasswordChangeRequest(CamelModel):
    current_password: str
    new_password: str = Field(..., min_length=1, max_length=128)


class PasswordResetRequest(CamelModel):
    email: EmailStr


class PasswordResetConfirm(CamelModel):
    token: str = Field(..., min_length=1, max_length=200)
    new_password: str = Field(..., min_length=1, max_length=128)


class UserResponse(CamelModel):
    id: int
    email: str
    first_name: str
    last_name: str
    role: str
    email_verified: bool
    created_at: Optional[datetime] = None


class AuthResponse(CamelModel):
    """
    Tokens travel as HttpOnly cookies. access_token is echoed in the body
    for API clients that send a Bearer header instead.
    """
    success: bool = True
    message: Optional[str] = None
    user: UserResponse
    access_token: Optional[str] = None
    token_type: str = "bearer"


class MessageResponse(CamelModel):
    success: bool = True
    message: str
