"""
Pydantic schemas for authentication and account endpoints.
"""
from pydantic import BaseModel, EmailStr, Field, field_validator


class SignupRequest(BaseModel):
    """Request schema for user signup."""
    full_name: str = Field(..., min_length=1, max_length=200, description="User's full name")
    email: EmailStr = Field(..., description="User's email address")
    password: str = Field(..., description="User's password (8 to 72 bytes)")

    @field_validator("password")
    @classmethod
    def validate_password_length(cls, v: str) -> str:
        """Validate password length in bytes (bcrypt limit is 72 bytes)."""
        password_bytes = v.encode("utf-8")
        if len(password_bytes) > 72:
            raise ValueError("Password too long (bcrypt limit 72 bytes)")
        if len(password_bytes) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v

    model_config = {
        "json_schema_extra": {
            "example": {
                "full_name": "Jane Doe",
                "email": "jane.doe@example.com",
                "password": "SecurePass123",
            }
        }
    }


class SignupResponse(BaseModel):
    message: str
    user_id: int
    trial_ends_at: str


class DeleteAccountRequest(BaseModel):
    """Request schema for account deletion. The user retypes their email."""
    confirmEmail: str = Field(..., min_length=1, description="Account email, typed again to confirm")
