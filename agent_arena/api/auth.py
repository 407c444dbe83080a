"""Authentication API: login endpoint."""

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from agent_arena.services.auth import authenticate_admin, create_access_token

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    username: str
    password: str
    totp_code: str | None = None


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


@router.post("/login", response_model=LoginResponse)
def login(body: LoginRequest):
    if not authenticate_admin(body.username, body.password, body.totp_code):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )
    return LoginResponse(access_token=create_access_token(subject=body.username))
