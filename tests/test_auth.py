"""
Tests for authentication: UserRepository, password strength, JWT handling.

Tests cover:
- User creation and lookup (emails are lowercased)
- Password strength validation on signup
- JWT security (missing secret key)
- Token expiration handling for header and cookie credentials
"""
from unittest.mock import patch

import pytest

from auth_utils import hash_password, verify_password, create_jwt, create_expired_jwt
from crud.user import UserRepository


@pytest.mark.asyncio
async def test_create_and_get_user(test_db):
    """
    Test creating a new user and retrieving it by email.
    """
    user_repo = UserRepository(test_db)
    hashed_pwd = hash_password("test_password_123")

    created_user = await user_repo.create_user({
        "email": "Test@Example.com",
        "hashed_password": hashed_pwd,
        "is_active": True,
    })

    # Verify user was created with correct attributes
    assert created_user.email == "test@example.com"
    assert created_user.hashed_password == hashed_pwd
    assert created_user.is_active is True
    assert created_user.is_admin is False
    assert len(created_user.id) == 36

    retrieved_user = await user_repo.get_user_by_email("TEST@example.com")
    assert retrieved_user is not None
    assert retrieved_user.id == created_user.id
    assert (await user_repo.get_user_by_id(created_user.id)).email == "test@example.com"


@pytest.mark.asyncio
async def test_login_verification(test_db):
    """
    Test password verification for login.
    """
    user_repo = UserRepository(test_db)
    test_password = "secure_password_456"
    await user_repo.create_user({
        "email": "login_test@example.com",
        "hashed_password": hash_password(test_password),
    })

    retrieved_user = await user_repo.get_user_by_email("login_test@example.com")

    assert verify_password(test_password, retrieved_user.hashed_password) is True
    assert verify_password("wrong_password", retrieved_user.hashed_password) is False


@pytest.mark.asyncio
async def test_strong_password_signup_and_me(async_client):
    """
    A 12+ character password with all complexity rules succeeds, and the
    returned token resolves the caller on /api/auth/me.
    """
    response = await async_client.post(
        "/api/auth/signup",
        json={"email": "test_strong@example.com", "password": "StrongPass123!"}
    )

    assert response.status_code == 200
    response_data = response.json()
    assert response_data["ok"] is True
    assert "user_id" in response_data
    assert "auth_token" in response.cookies

    me = await async_client.get(
        "/api/auth/me",
        headers={"Authorization": f"Bearer {response_data['token']}"}
    )
    assert me.status_code == 200
    assert me.json()["email"] == "test_strong@example.com"
    assert me.json()["is_admin"] is False


@pytest.mark.asyncio
async def test_duplicate_signup_is_rejected(async_client):
    payload = {"email": "dup@example.com", "password": "StrongPass123!"}

    assert (await async_client.post("/api/auth/signup", json=payload)).status_code == 200
    response = await async_client.post("/api/auth/signup", json=payload)

    assert response.status_code == 400
    assert "already registered" in response.json()["detail"]


@pytest.mark.asyncio
async def test_weak_password_rejection_min_length(async_client):
    response = await async_client.post(
        "/api/auth/signup",
        json={"email": "test_short@example.com", "password": "ShortPass1!"}
    )

    assert response.status_code == 400
    assert "12 characters" in response.json()["detail"].lower()


@pytest.mark.asyncio
@pytest.mark.parametrize("password, missing_type", [
    ("lowercasepass123!", "uppercase"),
    ("NOLOWERCASE123!", "lowercase"),
    ("NoDigitsSpecial!", "digit"),
    ("NoSpecialChars123", "special"),
])
async def test_weak_password_rejection_missing_complexity(async_client, password, missing_type):
    response = await async_client.post(
        "/api/auth/signup",
        json={"email": f"test_{missing_type}@example.com", "password": password}
    )

    assert response.status_code == 400, f"Password '{password}' should be rejected for missing {missing_type}"
    assert missing_type in response.json()["detail"].lower()


@pytest.mark.asyncio
async def test_login_with_wrong_password(async_client):
    await async_client.post("/api/auth/signup", json={"email": "a@example.com", "password": "StrongPass123!"})

    response = await async_client.post("/api/auth/login", json={"email": "a@example.com", "password": "WrongPass123!"})

    assert response.status_code == 401


def test_jwt_security_missing_key():
    """
    create_jwt() raises a ValueError when settings.jwt_secret_key is None or empty.
    """
    with patch('auth_utils.settings.jwt_secret_key', None):
        with pytest.raises(ValueError, match="JWT_SECRET_KEY is not set"):
            create_jwt("test_user_id")

    with patch('auth_utils.settings.jwt_secret_key', ""):
        with pytest.raises(ValueError, match="JWT_SECRET_KEY is not set"):
            create_jwt("test_user_id")


@pytest.mark.asyncio
async def test_authentication_failure_expired_token(async_client):
    """
    A protected endpoint returns 401 for an expired JWT, via cookie or header.
    """
    signup_response = await async_client.post(
        "/api/auth/signup",
        json={"email": "test_expired@example.com", "password": "TestPassword123!"}
    )
    user_id = signup_response.json()["user_id"]
    expired_token = create_expired_jwt(user_id, expired_seconds_ago=1)

    async_client.cookies.set("auth_token", expired_token)
    response = await async_client.get("/api/auth/me")
    assert response.status_code == 401
    assert "expired" in response.json()["detail"].lower() or "invalid" in response.json()["detail"].lower()

    async_client.cookies.clear()
    response = await async_client.get("/api/auth/me", headers={"Authorization": f"Bearer {expired_token}"})
    assert response.status_code == 401
