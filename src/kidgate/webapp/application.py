"""FastAPI frontend for kid sign-in and the kid-area route gate.

Parents authenticate with the hosted identity provider; its session lands in
the Starlette session as ``parent_user_id``.  Kids sign in here with a PIN
and carry a signed ``kid_session`` cookie that :class:`KidSessionMiddleware`
checks on every ``/kids/<childId>/...`` page.  Deploy with
``uvicorn kidgate.webapp:app``.
"""

from __future__ import annotations

import math
from html import escape as html_escape
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.middleware.sessions import SessionMiddleware

from ..exceptions import LoginRejected
from ..models import IssuedSession, KidSession
from ..ops import StructuredLogger
from ..routes import KID_SECTIONS, kid_dashboard_path
from ..security import LoginThrottle, hash_pin, is_legacy_pin_hash, is_valid_login_key, is_valid_pin, verify_pin
from ..tokens import issue_session, refresh_session, remaining_seconds, verify
from .config import SETTINGS, Settings, settings_warnings
from .middleware import KidSessionMiddleware
from .persistence import ChildProfile, find_child_by_login_key, get_child, list_children, update_pin_hash


# ---------------------------------------------------------------------------
# FastAPI application setup
# ---------------------------------------------------------------------------
router = APIRouter()


def create_app(settings: Settings = SETTINGS) -> FastAPI:
    application = FastAPI(title="KidGate")
    application.state.settings = settings
    application.state.logger = StructuredLogger(path=Path(settings.log_file) if settings.log_file else None)
    application.state.diagnostics = StructuredLogger(enabled=settings.debug_sessions)
    application.state.throttle = LoginThrottle()
    for warning in settings_warnings(settings):
        application.state.logger.log("startup.warning", message=warning)

    application.add_middleware(
        KidSessionMiddleware,
        settings=settings,
        logger=application.state.logger,
        diagnostics=application.state.diagnostics,
    )
    # Added last so it wraps the kid gate; parent sessions are readable everywhere.
    application.add_middleware(
        SessionMiddleware,
        secret_key=settings.parent_session_secret,
        same_site="lax",
        https_only=settings.secure_cookies,
        max_age=None,
    )
    application.include_router(router)
    return application


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _logger(request: Request) -> StructuredLogger:
    return request.app.state.logger


def _throttle(request: Request) -> LoginThrottle:
    return request.app.state.throttle


def render_page(title: str, inner: str, *, status_code: int = 200) -> HTMLResponse:
    html = f"""<!doctype html>
<html lang='en'>
<head><meta charset='utf-8'><meta name='viewport' content='width=device-width, initial-scale=1'><title>{html_escape(title)}</title></head>
<body><main class='container'>{inner}</main></body>
</html>"""
    return HTMLResponse(html, status_code=status_code)


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------
def client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return "unknown"


def parent_user_id(request: Request) -> Optional[str]:
    return request.session.get("parent_user_id")


def require_parent(request: Request) -> Optional[RedirectResponse]:
    if getattr(request.state, "auth_bypassed", False):
        return None
    if not parent_user_id(request):
        return RedirectResponse(_settings(request).parent_login_path, status_code=302)
    return None


def current_kid_session(request: Request) -> Optional[KidSession]:
    """Return the verified kid session for this request, if any."""

    gated = getattr(request.state, "kid_session", None)
    if gated is not None:
        return gated
    settings = _settings(request)
    token = request.cookies.get(settings.cookie_name)
    if not token:
        return None
    result = verify(token, secret=settings.kid_session_secret, logger=request.app.state.diagnostics)
    return result.session if result.valid else None


def set_session_cookie(response: Response, issued: IssuedSession, settings: Settings) -> None:
    response.set_cookie(
        issued.cookie_name,
        issued.token,
        max_age=issued.max_age,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(settings.cookie_name, path="/")


def _minutes_phrase(seconds: int) -> str:
    minutes = max(1, math.ceil(seconds / 60))
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


def _check_throttles(throttle: LoginThrottle, ip: str, rate_key: str) -> None:
    network = throttle.check_global(ip)
    if network.locked:
        raise LoginRejected(
            f"Too many login attempts from your network. Please try again in {_minutes_phrase(network.remaining_seconds)}.",
            status_code=429,
            retry_after=network.remaining_seconds,
        )
    target = throttle.check(rate_key)
    if target.locked:
        raise LoginRejected(
            f"Too many failed attempts. Please try again in {_minutes_phrase(target.remaining_seconds)}.",
            status_code=429,
            retry_after=target.remaining_seconds,
        )


def _authenticate_child(
    throttle: LoginThrottle,
    child: Optional[ChildProfile],
    pin: str,
    *,
    ip: str,
    rate_key: str,
    not_found: LoginRejected,
    wrong_pin_message: str,
) -> ChildProfile:
    if child is None:
        throttle.record_failure(rate_key)
        throttle.record_global_failure(ip)
        raise not_found
    if not verify_pin(pin, child.pin_hash):
        failure = throttle.record_failure(rate_key)
        network = throttle.record_global_failure(ip)
        if network.locked:
            raise LoginRejected(
                f"Too many login attempts from your network. Please try again in {_minutes_phrase(network.remaining_seconds)}.",
                status_code=429,
                retry_after=network.remaining_seconds,
            )
        if failure.locked:
            raise LoginRejected(
                f"Too many failed attempts. Account locked for {_minutes_phrase(failure.remaining_seconds)}.",
                status_code=429,
                retry_after=failure.remaining_seconds,
            )
        raise LoginRejected(wrong_pin_message, status_code=401, attemptsRemaining=failure.attempts_remaining)
    throttle.record_success(rate_key)
    throttle.clear_global(ip)
    if is_legacy_pin_hash(child.pin_hash):
        child = update_pin_hash(child.id, hash_pin(pin))
    return child


def _is_form(request: Request) -> bool:
    content_type = request.headers.get("content-type", "")
    return content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data"))


def _login_response(request: Request, child: ChildProfile) -> Response:
    settings = _settings(request)
    issued = issue_session(child, secret=settings.kid_session_secret)
    _logger(request).log("kid_login.success", child_id=child.id)
    if _is_form(request):
        redirect = RedirectResponse(kid_dashboard_path(child.id), status_code=302)
        set_session_cookie(redirect, issued, settings)
        return redirect
    response = JSONResponse(
        {
            "data": {
                "session": issued.session.summary(),
                "message": f"Welcome back, {child.name}!",
            }
        }
    )
    set_session_cookie(response, issued, settings)
    return response


def _rejected(request: Request, exc: LoginRejected, **fields: Any) -> Response:
    _logger(request).log("kid_login.rejected", status=exc.status_code, reason=exc.message, **fields)
    if _is_form(request):
        return render_page("Kid Sign-In", _kid_login_form(exc.message), status_code=exc.status_code)
    return JSONResponse(exc.to_payload(), status_code=exc.status_code)


async def _login_body(request: Request) -> Dict[str, Any]:
    if _is_form(request):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        body = await request.json()
    except ValueError as exc:
        raise LoginRejected("Request body must be JSON", status_code=400) from exc
    if not isinstance(body, dict):
        raise LoginRejected("Request body must be a JSON object", status_code=400)
    return body


# ---------------------------------------------------------------------------
# Kid authentication API
# ---------------------------------------------------------------------------
@router.post("/api/kids/auth/login")
async def kid_login(request: Request) -> Response:
    ip = client_ip(request)
    throttle = _throttle(request)
    try:
        body = await _login_body(request)
        child_id = body.get("childId")
        pin = body.get("pin")
        if not child_id or not isinstance(child_id, str):
            raise LoginRejected("Child ID is required", status_code=400)
        if not is_valid_pin(pin):
            raise LoginRejected("PIN must be exactly 4 digits", status_code=400)
        rate_key = LoginThrottle.target_key(ip, child_id)
        _check_throttles(throttle, ip, rate_key)
        child = _authenticate_child(
            throttle,
            get_child(child_id),
            pin,
            ip=ip,
            rate_key=rate_key,
            not_found=LoginRejected("Child profile not found", status_code=404),
            wrong_pin_message="Incorrect PIN",
        )
    except LoginRejected as exc:
        return _rejected(request, exc, ip=ip)
    return _login_response(request, child)


@router.post("/api/kids/auth/login-key")
async def kid_login_with_key(request: Request) -> Response:
    ip = client_ip(request)
    throttle = _throttle(request)
    try:
        body = await _login_body(request)
        login_key = body.get("loginKey")
        pin = body.get("pin")
        if not is_valid_login_key(login_key):
            raise LoginRejected("Invalid login key format. Should be XXXX-XXXX-XXXX", status_code=400)
        if not is_valid_pin(pin):
            raise LoginRejected("PIN must be exactly 4 digits", status_code=400)
        normalized = login_key.upper()
        rate_key = LoginThrottle.target_key(ip, f"key:{normalized}")
        _check_throttles(throttle, ip, rate_key)
        # Unknown keys and wrong PINs look the same to the caller.
        child = _authenticate_child(
            throttle,
            find_child_by_login_key(normalized),
            pin,
            ip=ip,
            rate_key=rate_key,
            not_found=LoginRejected("Invalid login key or PIN", status_code=401),
            wrong_pin_message="Invalid login key or PIN",
        )
    except LoginRejected as exc:
        return _rejected(request, exc, ip=ip)
    return _login_response(request, child)


@router.post("/api/kids/auth/logout")
def kid_logout(request: Request) -> JSONResponse:
    session = current_kid_session(request)
    _logger(request).log("kid_logout", child_id=session.child_id if session else None)
    response = JSONResponse({"data": {"message": "Signed out"}})
    clear_session_cookie(response, _settings(request))
    return response


@router.get("/api/kids/auth/session")
def kid_session_status(request: Request) -> JSONResponse:
    session = current_kid_session(request)
    if session is None:
        return JSONResponse({"error": "No active kid session"}, status_code=401)
    return JSONResponse(
        {
            "data": {
                "session": session.summary(),
                "isTeenMode": session.is_teen_mode,
                "remainingSeconds": remaining_seconds(session),
            }
        }
    )


@router.post("/api/kids/auth/refresh")
def kid_session_refresh(request: Request) -> JSONResponse:
    settings = _settings(request)
    session = current_kid_session(request)
    if session is None:
        response = JSONResponse({"error": "No active kid session"}, status_code=401)
        clear_session_cookie(response, settings)
        return response
    issued = refresh_session(session, secret=settings.kid_session_secret)
    if issued is None:
        return JSONResponse({"data": {"session": session.summary(), "refreshed": False}})
    _logger(request).log("kid_session.refresh", child_id=session.child_id)
    response = JSONResponse({"data": {"session": issued.session.summary(), "refreshed": True}})
    set_session_cookie(response, issued, settings)
    return response


# ---------------------------------------------------------------------------
# Kid-facing pages
# ---------------------------------------------------------------------------
def _kid_login_form(error: Optional[str] = None) -> str:
    notice = f"<p class='error'>{html_escape(error)}</p>" if error else ""
    return f"""
    <div class='card'>
      <h3>Kid Sign-In</h3>
      {notice}
      <form method='post' action='/api/kids/auth/login-key'>
        <label>Login key</label><input name='loginKey' placeholder='XXXX-XXXX-XXXX' autocomplete='username' required>
        <label style='margin-top:8px;'>PIN</label><input name='pin' inputmode='numeric' maxlength='4' autocomplete='current-password' required>
        <button type='submit' style='margin-top:10px;'>Let's go</button>
      </form>
    </div>
    """


@router.get("/kids/login", response_class=HTMLResponse)
def kid_login_page(request: Request) -> Response:
    session = current_kid_session(request)
    if session is not None:
        return RedirectResponse(kid_dashboard_path(session.child_id), status_code=302)
    return render_page("Kid Sign-In", _kid_login_form())


@router.get("/kids/{child_id}/{section}", response_class=HTMLResponse)
@router.get("/kids/{child_id}/{section}/{rest:path}", response_class=HTMLResponse)
def kid_area(request: Request, child_id: str, section: str, rest: str = "") -> HTMLResponse:
    if section not in KID_SECTIONS:
        return render_page("Not found", "<div class='card'><p>Page not found.</p></div>", status_code=404)
    session: Optional[KidSession] = getattr(request.state, "kid_session", None)
    name = html_escape(session.name if session and session.name else child_id)
    inner = f"""
    <div class='card'>
      <h3>{html_escape(section.title())}</h3>
      <p class='muted'>Signed in as {name}.</p>
    </div>
    """
    return render_page(f"{section.title()} · {name}", inner)


# ---------------------------------------------------------------------------
# Parent-facing pages
# ---------------------------------------------------------------------------
@router.get("/login", response_class=HTMLResponse)
def parent_login_page(request: Request) -> HTMLResponse:
    inner = """
    <div class='card'>
      <h3>Parent Sign-In</h3>
      <p class='muted'>Continue with your household account to manage budgets and kids.</p>
    </div>
    """
    return render_page("Sign In", inner)


@router.get("/dashboard", response_class=HTMLResponse)
def parent_dashboard(request: Request) -> Response:
    if (redirect := require_parent(request)) is not None:
        return redirect
    rows = "".join(
        f"<li><a href='{kid_dashboard_path(child.id)}'>{html_escape(child.name)}</a></li>"
        for child in list_children(parent_user_id(request) or "")
    )
    inner = f"<div class='card'><h3>Household dashboard</h3><ul class='kids'>{rows}</ul></div>"
    return render_page("Dashboard", inner)


@router.get("/", response_class=HTMLResponse)
def landing(request: Request) -> HTMLResponse:
    inner = """
    <div class='grid'>
      <div class='card'><h3>Kids</h3><a href='/kids/login'><button>Kid Sign-In</button></a></div>
      <div class='card'><h3>Parents</h3><a href='/login'><button>Parent Sign-In</button></a></div>
    </div>
    """
    return render_page("KidGate", inner)


@router.get("/healthz")
def healthz(request: Request) -> Dict[str, Any]:
    settings = _settings(request)
    return {
        "status": "ok",
        "audit_mode": settings.audit_mode,
        "fallback_secret": settings.uses_fallback_secret,
    }


app = create_app()

__all__ = [
    "app",
    "client_ip",
    "create_app",
    "current_kid_session",
    "render_page",
    "require_parent",
    "router",
]
