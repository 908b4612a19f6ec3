"""
Authentication routes and dependencies
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Header, Depends, Cookie
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from database import get_db
from crud.user import UserRepository
from auth_utils import hash_password, verify_password, create_jwt, decode_jwt, TOKEN_TTL
from backend.auth.user import Principal
from utils.shared_utils import get_cached
from utils.validation import validate_email, validate_password_strength

logger = logging.getLogger(__name__)

# Create auth router
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])

PRINCIPAL_CACHE_TTL = 300


# Request models
class SignupRequest(BaseModel):
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


def _token_response(user_id: str) -> JSONResponse:
    """JSON body carries the bearer token; the same token is set as an httpOnly cookie."""
    token = create_jwt(user_id)
    response = JSONResponse(
        content={
            "ok": True,
            "user_id": user_id,
            "token": token,
        }
    )
    response.set_cookie(
        key="auth_token",
        value=token,
        httponly=True,
        secure=True,
        samesite="Lax",
        max_age=int(TOKEN_TTL.total_seconds()),
    )
    return response


@auth_router.post("/signup")
async def signup(request: SignupRequest, db: AsyncSession = Depends(get_db)):
    """Create a new user account"""
    if not validate_email(request.email):
        raise HTTPException(status_code=400, detail="Invalid email format")

    try:
        validate_password_strength(request.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    user_repo = UserRepository(db)

    existing_user = await user_repo.get_user_by_email(request.email)
    if existing_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = await user_repo.create_user({
        "email": request.email,
        "hashed_password": hash_password(request.password),
        "is_active": True,
    })
    logger.info(f"Created user {user.id}")

    return _token_response(user.id)


@auth_router.post("/login")
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Login and get JWT token"""
    user_repo = UserRepository(db)

    user = await user_repo.get_user_by_email(request.email)
    if not user or not user.hashed_password:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not verify_password(request.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")

    return _token_response(user.id)


@auth_router.post("/logout")
async def logout():
    """Logout and clear auth token cookie"""
    response = JSONResponse(
        content={
            "ok": True,
            "message": "Logged out successfully"
        }
    )
    response.set_cookie(
        key="auth_token",
        value="",
        httponly=True,
        secure=True,
        samesite="Lax",
        max_age=0
    )
    return response


def _extract_token(auth_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization.replace("Bearer ", "", 1).strip() or None
    return auth_token or None


async def _load_principal(user_id: str, db: AsyncSession) -> dict:
    """
    Fetch the profile behind a token, cached for five minutes.

    Raises:
        HTTPException: If user is not found or inactive
    """
    user_repo = UserRepository(db)

    async def fetch_user():
        user = await user_repo.get_user_by_id(user_id)
        if not user:
            raise HTTPException(status_code=401, detail="User not found")
        return {
            "user_id": user.id,
            "email": user.email,
            "is_admin": bool(user.is_admin),
            "is_active": bool(user.is_active),
        }

    return await get_cached(
        key=f"principal:{user_id}",
        fallback_func=fetch_user,
        ttl_seconds=PRINCIPAL_CACHE_TTL,
    )


async def get_optional_principal(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db)
) -> Optional[Principal]:
    """
    Resolve the caller, or None when no credential was sent.

    Authentication priority:
    1. Authorization header (Bearer token) for API consumers
    2. auth_token cookie set by login/signup

    A credential that is present but invalid is still rejected with 401.
    """
    token = _extract_token(auth_token, authorization)
    if not token:
        return None

    payload = decode_jwt(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    data = await _load_principal(str(user_id), db)
    if not data.get("is_active", True):
        raise HTTPException(status_code=401, detail="User account is inactive")

    return Principal(user_id=data["user_id"], email=data["email"], is_admin=data["is_admin"])


# Dependency for protected routes
async def get_current_principal(
    principal: Optional[Principal] = Depends(get_optional_principal),
) -> Principal:
    if principal is None:
        raise HTTPException(status_code=401, detail="Missing authentication token")
    return principal


@auth_router.get("/me")
async def get_current_user_info(principal: Principal = Depends(get_current_principal)):
    """Get current user information from JWT token"""
    return {
        "ok": True,
        "user_id": principal.user_id,
        "email": principal.email,
        "is_admin": principal.is_admin,
    }
