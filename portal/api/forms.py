"""Form payloads for the HTML-form endpoints, validated with pydantic."""

from __future__ import annotations

from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, EmailStr, Field, ValidationError, field_validator, model_validator

F = TypeVar("F", bound="FormModel")


class FormModel(BaseModel):
    # Field name -> user-facing message used for any validation error on that field.
    error_messages: ClassVar[Dict[str, str]] = {}


class LoginForm(FormModel):
    error_messages: ClassVar[Dict[str, str]] = {
        "email": "Email is not valid",
        "password": "Password cannot be blank",
    }

    email: EmailStr
    password: str = Field(min_length=1)


def _passwords_match(password: str, confirm_password: str) -> None:
    if password != confirm_password:
        raise ValueError("Passwords do not match")


class SignupForm(FormModel):
    error_messages: ClassVar[Dict[str, str]] = {
        "email": "Email is not valid",
        "password": "Password must be at least 4 characters long",
    }

    email: EmailStr
    password: str = Field(min_length=4)
    confirm_password: str = Field(default="", alias="confirmPassword")

    @model_validator(mode="after")
    def _check_confirmation(self) -> "SignupForm":
        _passwords_match(self.password, self.confirm_password)
        return self


class PasswordForm(FormModel):
    error_messages: ClassVar[Dict[str, str]] = {
        "password": "Password must be at least 4 characters long",
    }

    password: str = Field(min_length=4)
    confirm_password: str = Field(default="", alias="confirmPassword")

    @model_validator(mode="after")
    def _check_confirmation(self) -> "PasswordForm":
        _passwords_match(self.password, self.confirm_password)
        return self


class ForgotForm(FormModel):
    error_messages: ClassVar[Dict[str, str]] = {"email": "Please enter a valid email address."}

    email: EmailStr


class ProfileForm(FormModel):
    error_messages: ClassVar[Dict[str, str]] = {"email": "Please enter a valid email address."}

    email: EmailStr
    name: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        v = (v or "").strip()
        return v or None


class ContactForm(FormModel):
    error_messages: ClassVar[Dict[str, str]] = {
        "name": "Name cannot be blank",
        "email": "Email is not valid",
        "message": "Message cannot be blank",
    }

    name: str = Field(min_length=1)
    email: EmailStr
    message: str = Field(min_length=1)

    @field_validator("name", "message", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


def validate_form(model: Type[F], data: Mapping[str, Any]) -> Tuple[Optional[F], List[str]]:
    """
    Validate submitted form fields. Returns (form, []) or (None, messages).
    """
    payload = {k: v for k, v in data.items() if isinstance(v, str)}
    try:
        return model.model_validate(payload), []
    except ValidationError as e:
        messages: List[str] = []
        for err in e.errors():
            loc = err.get("loc") or ()
            field = str(loc[0]) if loc else ""
            msg = model.error_messages.get(field)
            if msg is None:
                ctx_error = (err.get("ctx") or {}).get("error")
                msg = str(ctx_error) if ctx_error else str(err.get("msg") or "Invalid input")
            if msg not in messages:
                messages.append(msg)
        return None, messages
