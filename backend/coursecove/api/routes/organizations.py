"""Public organization lookups used during onboarding."""

from fastapi import APIRouter, Depends, Query

from coursecove.platform.authorization import PUBLIC, ProcedureContext, procedure
from coursecove.utils.slug import check_slug_availability, slugify, suggest_slug

router = APIRouter(prefix="/api/organizations", tags=["organizations"])


@router.get("/slug-availability")
def slug_availability(
    slug: str = Query(..., max_length=100),
    ctx: ProcedureContext = Depends(procedure(PUBLIC)),
):
    result = check_slug_availability(ctx.db, slug)
    body = {
        "slug": slug,
        "valid": result.valid,
        "available": result.available,
        "reason": result.reason.value if result.reason else None,
        "message": result.message,
    }
    if not result.available:
        body["suggestion"] = suggest_slug(ctx.db, slugify(slug) or slug)
    return body
