"""
Authentication router for the signed-in user's profile.

Session tokens are minted by the web app with the shared JWT secret; this
router only reads and updates the backend's copy of the user.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_record, get_auth_context
from services.credits import get_credit_balance

router = APIRouter()


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    credits: int = 0


class UpdateProfileRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get current user profile and credit balance."""
    user = await ensure_user_record(db, auth)
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        credits=await get_credit_balance(user.id, db),
    )


@router.patch("/profile", response_model=CurrentUserResponse)
async def update_profile(
    request: UpdateProfileRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user = await ensure_user_record(db, auth)
    user.name = request.name.strip()
    await db.commit()
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        credits=await get_credit_balance(user.id, db),
    )


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
