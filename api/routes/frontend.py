"""
Server-rendered HTML pages.

Routes:
    GET /                      → search.html (search form + paged results)
    GET /grants/{id}           → grant.html (one grant with its amendments)
    GET /recipients/{id}       → entity.html (recipient profile + grants)
    GET /institutes/{id}       → entity.html (institute profile + grants)
    GET /bookmarks             → bookmarks.html (signed-in users only)
    GET /login                 → login.html
    GET /reset-password        → reset_password.html (target of reset emails)

Pages reuse the JSON endpoints' query helpers so both surfaces return the
same rows for the same inputs. Charts are drawn client-side from
/api/analytics/trends.
"""

import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.auth import get_current_user
from api.database import get_db
from api.models import GrantSearchRequest
from api.routes.bookmarks import list_bookmarks
from api.routes.entities import fetch_entity, fetch_entity_grants
from api.routes.grants import fetch_grant, run_search
from api.routes.reference import load_filter_options
from utils.config import ORG_NAMES
from utils.query import GRANT_SORT_FIELDS, build_pagination, clamp_pagination

logger = logging.getLogger(__name__)

router = APIRouter(tags=["frontend"])

# Templates instance is set by create_app() after mounting.
_templates: Jinja2Templates | None = None


def set_templates(t: Jinja2Templates) -> None:
    global _templates
    _templates = t


def _tmpl() -> Jinja2Templates:
    if _templates is None:
        raise RuntimeError("Templates not initialised, call set_templates() first")
    return _templates


def _render(request: Request, name: str, context: dict[str, Any],
            status_code: int = 200) -> HTMLResponse:
    return _tmpl().TemplateResponse(
        request, name, {"org_names": ORG_NAMES, **context}, status_code=status_code
    )


def _search_body(request: Request) -> dict[str, Any]:
    """Translate search-form query params into a GrantSearchRequest body."""
    params = request.query_params
    return {
        "searchTerms": {
            "recipient": params.get("recipient", ""),
            "institute": params.get("institute", ""),
            "grant": params.get("grant", ""),
        },
        "filters": {
            "dateRange": {
                "from": params.get("from") or None,
                "to": params.get("to") or None,
            },
            "valueRange": {
                "min": params.get("min") or None,
                "max": params.get("max") or None,
            },
            "agencies": params.getlist("agency"),
            "countries": params.getlist("country"),
            "provinces": params.getlist("province"),
            "cities": params.getlist("city"),
        },
        "sortConfig": {
            "field": params.get("sort", "agreement_start_date"),
            "direction": params.get("dir", "desc"),
        },
        "pagination": {"page": params.get("page", 1), "limit": params.get("limit", 20)},
    }


# ── Routes ────────────────────────────────────────────────────────────────────

@router.get("/", response_class=HTMLResponse, include_in_schema=False)
def search_page(
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
) -> HTMLResponse:
    raw = _search_body(request)
    errors: list[dict[str, Any]] = []
    try:
        body = GrantSearchRequest.model_validate(raw)
    except ValidationError as exc:
        errors = jsonable_encoder(exc.errors())
        body = GrantSearchRequest()

    rows, total = run_search(conn, body, user)
    page, limit, _ = clamp_pagination(body.pagination.page, body.pagination.limit)
    return _render(
        request,
        "search.html",
        {
            "user": user,
            "form": raw,
            "errors": errors,
            "options": load_filter_options(conn),
            "sort_fields": sorted(GRANT_SORT_FIELDS),
            "grants": rows,
            "pagination": build_pagination(total, page, limit),
        },
    )


@router.get("/grants/{grant_id}", response_class=HTMLResponse, include_in_schema=False)
def grant_page(
    grant_id: int,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
) -> HTMLResponse:
    grant = fetch_grant(conn, grant_id, user)
    if grant is None:
        raise HTTPException(status_code=404, detail=f"Grant {grant_id} not found")
    return _render(request, "grant.html", {"user": user, "grant": grant})


def _entity_page(request, conn, user, kind: str, entity_id: int) -> HTMLResponse:
    entity = fetch_entity(conn, kind, entity_id, user)
    if entity is None:
        raise HTTPException(
            status_code=404, detail=f"{kind.capitalize()} {entity_id} not found"
        )
    return _render(
        request,
        "entity.html",
        {
            "user": user,
            "kind": kind,
            "entity": entity,
            "grants": fetch_entity_grants(conn, kind, entity_id, user),
        },
    )


@router.get("/recipients/{recipient_id}", response_class=HTMLResponse,
            include_in_schema=False)
def recipient_page(
    recipient_id: int,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
) -> HTMLResponse:
    return _entity_page(request, conn, user, "recipient", recipient_id)


@router.get("/institutes/{institute_id}", response_class=HTMLResponse,
            include_in_schema=False)
def institute_page(
    institute_id: int,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
) -> HTMLResponse:
    return _entity_page(request, conn, user, "institute", institute_id)


@router.get("/bookmarks", response_class=HTMLResponse, include_in_schema=False)
def bookmarks_page(
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
):
    if user is None:
        return RedirectResponse("/login?next=/bookmarks", status_code=303)
    saved = list_bookmarks(
        sort=request.query_params.get("sort", "bookmarked_at"),
        direction=request.query_params.get("dir", "desc"),
        conn=conn,
        user=user,
    )
    return _render(request, "bookmarks.html", {"user": user, "saved": saved})


@router.get("/login", response_class=HTMLResponse, include_in_schema=False)
def login_page(
    request: Request,
    user: dict[str, Any] | None = Depends(get_current_user),
) -> HTMLResponse:
    return _render(
        request, "login.html",
        {"user": user, "next": request.query_params.get("next", "/")},
    )


@router.get("/reset-password", response_class=HTMLResponse, include_in_schema=False)
def reset_password_page(request: Request) -> HTMLResponse:
    return _render(
        request, "reset_password.html",
        {"user": None, "token": request.query_params.get("token", "")},
    )


# ── Error pages ───────────────────────────────────────────────────────────────

def register_error_handlers(app: FastAPI) -> None:
    """HTML error pages for browser routes; API routes keep JSON bodies."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if request.url.path.startswith("/api") or _templates is None:
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail},
                headers=getattr(exc, "headers", None),
            )
        return _render(
            request,
            "error.html",
            {"user": None, "status_code": exc.status_code, "message": exc.detail},
            status_code=exc.status_code,
        )
