from __future__ import annotations

from portal.api.forms import (
    ContactForm,
    ForgotForm,
    LoginForm,
    PasswordForm,
    ProfileForm,
    SignupForm,
    validate_form,
)


def test_login_form_messages() -> None:
    form, errors = validate_form(LoginForm, {"email": "nope", "password": ""})
    assert form is None
    assert errors == ["Email is not valid", "Password cannot be blank"]

    form, errors = validate_form(LoginForm, {"email": "a@example.com", "password": "x", "_csrf": "t"})
    assert errors == []
    assert form.email == "a@example.com"


def test_signup_form_checks_length_and_confirmation() -> None:
    _, errors = validate_form(SignupForm, {"email": "a@example.com", "password": "abc", "confirmPassword": "abc"})
    assert errors == ["Password must be at least 4 characters long"]

    _, errors = validate_form(SignupForm, {"email": "a@example.com", "password": "abcd", "confirmPassword": "abce"})
    assert errors == ["Passwords do not match"]

    form, errors = validate_form(SignupForm, {"email": "a@example.com", "password": "abcd", "confirmPassword": "abcd"})
    assert errors == []
    assert form.password == "abcd"


def test_password_form_confirmation() -> None:
    _, errors = validate_form(PasswordForm, {"password": "abcd", "confirmPassword": ""})
    assert errors == ["Passwords do not match"]


def test_profile_form_blank_name_is_none() -> None:
    form, errors = validate_form(ProfileForm, {"email": "a@example.com", "name": "   "})
    assert errors == []
    assert form.name is None


def test_contact_form_requires_all_fields() -> None:
    _, errors = validate_form(ContactForm, {"name": "  ", "email": "x", "message": ""})
    assert errors == ["Name cannot be blank", "Email is not valid", "Message cannot be blank"]

    form, _ = validate_form(ContactForm, {"name": " Ann ", "email": "a@example.com", "message": " hi "})
    assert (form.name, form.message) == ("Ann", "hi")


def test_forgot_form_requires_valid_email() -> None:
    form, errors = validate_form(ForgotForm, {"email": "not-an-email"})
    assert form is None
    assert errors == ["Please enter a valid email address."]
    form, errors = validate_form(ForgotForm, {"email": "alice@example.com"})
    assert form is not None and errors == []
