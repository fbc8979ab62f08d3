"""
Pattern API Endpoints

Pixel-text previews on the contribution graph and the elevated-tier
generator that turns a preview into real backdated commits.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.database import get_db
from models import User
from routers.commits import dispatch_bulk_job
from services import pattern_mapper

router = APIRouter(prefix="/v1/patterns", tags=["patterns"])


class PatternRequest(BaseModel):
    text: str = Field(..., min_length=1)
    intensity: int = Field(3, ge=1, le=4)
    alignment: str = "center"
    spacing: int = Field(1, ge=0, le=3)
    endDate: Optional[date] = None


class ValidateRequest(BaseModel):
    text: str = ""


@router.get("/templates")
def get_templates():
    return {"templates": pattern_mapper.list_templates()}


@router.post("/validate")
def validate_text(payload: ValidateRequest):
    return pattern_mapper.validate_pattern_text(payload.text)


@router.post("/preview")
def preview(payload: PatternRequest, current_user: User = Depends(get_current_user)):
    """Grid plus the dates that would be committed; writes nothing."""
    return pattern_mapper.preview_pattern(
        payload.text,
        intensity=payload.intensity,
        alignment=payload.alignment,
        spacing=payload.spacing,
        end_date=payload.endDate,
        tz=current_user.tz,
    )


@router.post("/generate")
def generate(
    payload: PatternRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return dispatch_bulk_job(db, "pattern", current_user, payload.model_dump(mode="json"))
