"""Profile procedures for the signed-in user."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from coursecove.platform.authorization import (
    AUTHENTICATED,
    Pipeline,
    ProcedureContext,
    StageLevel,
    procedure,
)
from coursecove.services.profile_service import get_user, serialize_profile, update_profile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/profile", tags=["profile"])

profile_update = (
    Pipeline.builder()
    .up_to(StageLevel.AUTHENTICATED)
    .rate_limit("profile.update", "MUTATION")
    .build()
)


class ProfileUpdateRequest(BaseModel):
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)


@router.get("/me")
def get_my_profile(ctx: ProcedureContext = Depends(procedure(AUTHENTICATED))):
    return serialize_profile(get_user(ctx.db, ctx.user_id))


@router.patch("/me")
def update_my_profile(
    body: ProfileUpdateRequest,
    ctx: ProcedureContext = Depends(procedure(profile_update, requires=StageLevel.AUTHENTICATED)),
):
    user = update_profile(ctx.db, ctx.user_id, first_name=body.first_name, last_name=body.last_name)
    ctx.db.commit()
    return serialize_profile(user)
