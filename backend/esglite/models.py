import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class CamelModel(BaseModel):
    # Clients send camelCase; accept snake_case too.
    model_config = ConfigDict(populate_by_name=True)


class SignupPayload(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("password")
    @classmethod
    def _password_rules(cls, v: str) -> str:
        if any(ord(ch) < 32 for ch in v):
            raise ValueError("password contains control characters")
        if v.strip() != v:
            raise ValueError("password must not have surrounding spaces")
        if not re.search(r"[a-z]", v):
            raise ValueError("password must include a lowercase letter")
        if not re.search(r"[A-Z]", v):
            raise ValueError("password must include an uppercase letter")
        if not re.search(r"\d", v):
            raise ValueError("password must include a digit")
        return v


class SignupResponse(BaseModel):
    id: str
    email: EmailStr


class SigninPayload(CamelModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    captcha_token: Optional[str] = Field(default=None, alias="captchaToken")
    totp_code: Optional[str] = Field(default=None, alias="totpCode", max_length=12)
    backup_code: Optional[str] = Field(default=None, alias="backupCode", max_length=16)


class CaptchaVerifyPayload(BaseModel):
    token: Optional[str] = None
    action: Optional[str] = Field(default=None, max_length=64)


class CodePayload(CamelModel):
    code: Optional[str] = Field(default=None, max_length=16)
    captcha_token: Optional[str] = Field(default=None, alias="captchaToken")


class BackupCodesResponse(BaseModel):
    codes: List[str]


class TotpSetupResponse(BaseModel):
    secret: str
    otpauth: str


class TotpStatusResponse(BaseModel):
    enabled: bool
