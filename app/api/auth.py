# =============================================================================
# Dashboard Auth — Signup, Login, Me, Logout
# =============================================================================
#
# Email/password accounts for the dashboard. A successful signup or login
# sets an HttpOnly `session` cookie; key management routes require it.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response

from app.api.deps import get_credential_store, get_optional_session
from app.config import settings
from app.db.models import Session
from app.models.requests import CredentialsRequest
from app.models.responses import AuthResultResponse, MeResponse, UserResponse
from app.services.credentials import CredentialStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        path="/",
        samesite="none",
        secure=settings.session_cookie_secure,
    )


@router.post("/signup", response_model=AuthResultResponse, summary="Create an account")
async def signup(
    request: CredentialsRequest,
    response: Response,
    store: CredentialStore = Depends(get_credential_store),
) -> AuthResultResponse:
    user = await store.create_user(request.email, request.password)
    login_session = await store.create_session(user.id)
    _set_session_cookie(response, login_session.token)
    return AuthResultResponse(user=UserResponse.model_validate(user))


@router.post("/login", response_model=AuthResultResponse, summary="Log in")
async def login(
    request: CredentialsRequest,
    response: Response,
    store: CredentialStore = Depends(get_credential_store),
) -> AuthResultResponse:
    user = await store.verify_password(request.email, request.password)
    login_session = await store.create_session(user.id)
    _set_session_cookie(response, login_session.token)
    logger.info("User logged in: id=%s", user.id)
    return AuthResultResponse(user=UserResponse.model_validate(user))


@router.get("/me", response_model=MeResponse, summary="Current session")
async def me(
    login_session: Session | None = Depends(get_optional_session),
    store: CredentialStore = Depends(get_credential_store),
) -> MeResponse:
    """Never fails: an anonymous caller just gets authenticated=false."""
    if login_session is None:
        return MeResponse(authenticated=False)

    user = await store.get_user(login_session.user_id)
    if user is None:
        return MeResponse(authenticated=False)

    return MeResponse(
        authenticated=True,
        user=UserResponse.model_validate(user),
        expires_at=login_session.expires_at,
    )


@router.post("/logout", response_model=AuthResultResponse, summary="Log out")
async def logout(
    response: Response,
    login_session: Session | None = Depends(get_optional_session),
    store: CredentialStore = Depends(get_credential_store),
) -> AuthResultResponse:
    if login_session is not None:
        await store.delete_session(login_session.token)
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        httponly=True,
        samesite="none",
        secure=settings.session_cookie_secure,
    )
    return AuthResultResponse()
