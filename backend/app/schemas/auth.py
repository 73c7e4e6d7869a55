from pydantic import BaseModel, EmailStr, Field


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class RefreshRequest(BaseModel):
    refresh_token: str


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    name: str
    household_name: str  # creates the household with the registrant as primary guardian
    phone: str | None = Field(None, max_length=30)


class RegisterWithInvitationRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    password_confirm: str = Field(min_length=8)
    name: str
    invitation_code: str


class PinLoginRequest(BaseModel):
    child_name: str
    household_name: str
    pin: str


class TotpSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
