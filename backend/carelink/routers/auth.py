from fastapi import APIRouter, Depends, HTTPException

from carelink.auth import create_access_token, require_authenticated_user
from carelink.models import AuthLoginRequest, AuthLoginResponse, AuthMeResponse
from carelink.services.care_store import care_store

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    user = care_store.authenticate(user_id, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token, expires_at = create_access_token(user_id=user.id)
    return AuthLoginResponse(access_token=token, user_id=user.id, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(user_id: str = Depends(require_authenticated_user)):
    return AuthMeResponse(user_id=user_id)
