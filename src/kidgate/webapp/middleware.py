"""Request gate for kid-area routes.

Runs before every request.  Paths under ``/kids/<childId>/<section>`` need a
valid ``kid_session`` cookie for the same child; every other path is left to
the parent session layer untouched.  Failures always end in a redirect.
"""
from __future__ import annotations

from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response
from starlette.types import ASGIApp

from ..ops import StructuredLogger
from ..routes import kid_dashboard_path, match_kid_route
from ..tokens import verify
from .config import Settings


class KidSessionMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        *,
        settings: Settings,
        logger: StructuredLogger,
        diagnostics: Optional[StructuredLogger] = None,
    ) -> None:
        super().__init__(app)
        self.settings = settings
        self.logger = logger
        self.diagnostics = diagnostics

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.kid_session = None
        request.state.auth_bypassed = False
        if self.settings.audit_mode:
            request.state.auth_bypassed = True
            self.logger.log("kid_gate.bypass", path=request.url.path)
            return await call_next(request)

        route = match_kid_route(request.url.path)
        if route is None:
            return await call_next(request)

        try:
            redirect = self._gate(request, route.child_id)
        except Exception as exc:
            self.logger.log("kid_gate.error", path=request.url.path, error=type(exc).__name__)
            redirect = self._login_redirect(request.url.path, "error", clear_cookie=True)
        if redirect is not None:
            return redirect
        self.logger.log("kid_gate.allow", path=request.url.path, child_id=route.child_id)
        return await call_next(request)

    def _gate(self, request: Request, requested_child: str) -> Optional[Response]:
        path = request.url.path
        token = request.cookies.get(self.settings.cookie_name)
        if not token:
            return self._login_redirect(path, "missing", clear_cookie=False)

        result = verify(token, secret=self.settings.kid_session_secret, logger=self.diagnostics)
        if not result.valid:
            return self._login_redirect(path, "invalid", clear_cookie=True)

        if result.child_id != requested_child:
            target = kid_dashboard_path(result.child_id or "")
            self.logger.log(
                "kid_gate.redirect",
                path=path,
                reason="other_child",
                child_id=result.child_id,
                target=target,
            )
            return RedirectResponse(target, status_code=302)

        request.state.kid_session = result.session
        return None

    def _login_redirect(self, path: str, reason: str, *, clear_cookie: bool) -> Response:
        self.logger.log("kid_gate.redirect", path=path, reason=reason, target=self.settings.kid_login_path)
        response = RedirectResponse(self.settings.kid_login_path, status_code=302)
        if clear_cookie:
            response.delete_cookie(self.settings.cookie_name, path="/")
        return response


__all__ = ["KidSessionMiddleware"]
