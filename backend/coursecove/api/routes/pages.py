"""
Server-rendered page entry points.

Each page declares a DAL guard; a failed guard redirects (307) to
sign-in, onboarding or the unauthorized page instead of returning an
error body.
"""

from fastapi import APIRouter, Depends

from coursecove.platform.authorization import ProcedureContext
from coursecove.platform.dal import page_guard, require_admin, require_org, require_staff, verify_session

router = APIRouter(tags=["pages"])


def _page(name: str, ctx: ProcedureContext) -> dict:
    return {
        "page": name,
        "user_id": ctx.user_id,
        "organization": ctx.organization.name if ctx.organization else None,
        "role": ctx.org_role,
    }


@router.get("/app/schedule")
def schedule_page(ctx: ProcedureContext = Depends(page_guard(require_org))):
    return _page("schedule", ctx)


@router.get("/app/dashboard")
def dashboard_page(ctx: ProcedureContext = Depends(page_guard(require_staff))):
    return _page("dashboard", ctx)


@router.get("/app/settings")
def settings_page(ctx: ProcedureContext = Depends(page_guard(require_admin))):
    return _page("settings", ctx)


@router.get("/onboarding")
def onboarding_page(ctx: ProcedureContext = Depends(page_guard(verify_session))):
    return _page("onboarding", ctx)
