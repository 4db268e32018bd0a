"""Auth API — account and session flows.

Learn: Routes for the account lifecycle:
- POST /auth/sign-up            → unverified user + verification token
- GET  /auth/verify?token=      → consume verification token
- POST /auth/resend-activation  → fresh verification token
- POST /auth/forgot-password    → reset token (same reply for unknown emails)
- POST /auth/reset-password     → consume reset token, set new password
- POST /auth/login              → session JWT (body + httpOnly "token" cookie)
- POST /auth/logout             → clear the session cookie
"""

from fastapi import APIRouter, Depends, Query, Response

from warden.api.schemas import (
    EmailRequest,
    LoginRequest,
    ResetPasswordRequest,
    SignUpRequest,
    UserResponse,
    success,
)
from warden.auth.dependencies import get_services
from warden.auth.identity import SESSION_COOKIE
from warden.services.container import Services

router = APIRouter(prefix="/auth")


@router.post("/sign-up", status_code=201)
async def sign_up(body: SignUpRequest, services: Services = Depends(get_services)):
    """Register a new (unverified) account."""
    user, role = await services.accounts.sign_up(body.name, body.email, body.password)
    return success(
        "Registration is successful! Please check your email to verify your account.",
        UserResponse.from_record(user, role).model_dump(mode="json"),
    )


@router.get("/verify")
async def verify(
    token: str = Query(..., min_length=1, max_length=64),
    services: Services = Depends(get_services),
):
    """Consume a verify-account token."""
    user = await services.accounts.verify_account(token)
    return success(
        "Account verified successfully.",
        UserResponse.from_record(user).model_dump(mode="json"),
    )


@router.post("/resend-activation")
async def resend_activation(body: EmailRequest, services: Services = Depends(get_services)):
    """Replace the verification token of a still-unverified account."""
    await services.accounts.resend_activation(body.email)
    return success("A new verification link has been sent to your email.")


@router.post("/forgot-password")
async def forgot_password(body: EmailRequest, services: Services = Depends(get_services)):
    """Issue a reset-password token if the email is registered."""
    await services.accounts.forgot_password(body.email)
    return success(
        "If an account exists for that email, a password reset link has been sent."
    )


@router.post("/reset-password")
async def reset_password(
    body: ResetPasswordRequest, services: Services = Depends(get_services)
):
    """Consume a reset-password token and set the new password."""
    await services.accounts.reset_password(body.token, body.password)
    return success("Password has been reset successfully.")


@router.post("/login")
async def login(
    body: LoginRequest,
    response: Response,
    services: Services = Depends(get_services),
):
    """Email/password → session token (also set as an httpOnly cookie)."""
    result = await services.accounts.login(body.email, body.password)
    response.set_cookie(
        SESSION_COOKIE,
        value=result.token,
        httponly=True,
        samesite="lax",
        secure=services.settings.secure_cookies,
        max_age=result.max_age_seconds,
    )
    return success("Login successful.", {"token": result.token})


@router.post("/logout")
async def logout(response: Response):
    """Clear the session cookie. JWTs are stateless; the token itself
    stays valid until it expires."""
    response.delete_cookie(SESSION_COOKIE)
    return success("Logout successful.")
