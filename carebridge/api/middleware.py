from __future__ import annotations

import json
from typing import Callable, Optional
from urllib.parse import parse_qs

from fastapi import Request, Response

from carebridge.api.error_handling import decision_response
from carebridge.config import Settings
from carebridge.logging import get_logger, set_correlation_id
from carebridge.service.csrf import CSRFTokenManager, TokenValidation
from carebridge.service.decisions import GuardReason

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
PROTECTED_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})


async def add_correlation_id(request: Request, call_next):
    """Tag each request with a correlation id for structured logs.

    Taken from ``X-Request-ID`` when the client sends one, otherwise a new
    UUID; echoed back in the same response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


class CSRFProtection:
    """HTTP middleware applying the double-submit token lifecycle.

    Safe requests get a fresh token in a cookie, in ``request.state.csrf_token``
    and in the response header. Protected requests must echo a token in the
    header or the body field; single-use paths consume it.
    """

    def __init__(
        self,
        settings: Settings,
        manager: Optional[CSRFTokenManager | Callable[[], CSRFTokenManager]] = None,
    ) -> None:
        self.settings = settings
        self._manager = manager
        self.exempt_paths = frozenset(settings.csrf_exempt_paths)
        self.single_use_paths = frozenset(settings.csrf_single_use_paths)

    @property
    def manager(self) -> CSRFTokenManager:
        if isinstance(self._manager, CSRFTokenManager):
            return self._manager
        if self._manager is not None:
            return self._manager()
        from carebridge.service.runtime import get_runtime

        return get_runtime().csrf

    def _single_use(self, path: str) -> bool:
        return self.settings.csrf_single_use or path in self.single_use_paths

    async def _extract_token(self, request: Request) -> Optional[str]:
        token = request.headers.get(self.settings.csrf_header_name)
        if token:
            return token
        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type not in ("application/json", "application/x-www-form-urlencoded"):
            return None
        body = await request.body()
        if not body:
            return None
        field = self.settings.csrf_body_field
        if content_type == "application/json":
            try:
                payload = json.loads(body)
            except ValueError:
                return None
            value = payload.get(field) if isinstance(payload, dict) else None
            return value if isinstance(value, str) else None
        values = parse_qs(body.decode("utf-8", errors="replace")).get(field)
        return values[0] if values else None

    def _set_cookie(self, response: Response, token: str, max_age: int) -> None:
        response.set_cookie(
            self.settings.csrf_cookie_name,
            token,
            max_age=max_age,
            path="/",
            httponly=True,
            secure=self.settings.cookie_secure,
            samesite="strict",
        )

    async def __call__(self, request: Request, call_next):
        path = request.url.path
        method = request.method.upper()
        if path in self.exempt_paths:
            return await call_next(request)

        if method in SAFE_METHODS:
            manager = self.manager
            issued = manager.issue()
            request.state.csrf_token = issued.token
            response = await call_next(request)
            self._set_cookie(response, issued.token, issued.expires_in)
            response.headers[self.settings.csrf_header_name] = issued.token
            return response

        if method not in PROTECTED_METHODS:
            return await call_next(request)
        # Header-authenticated calls cannot be forged by a third-party origin
        if request.headers.get("Authorization") or request.headers.get("X-Admin-Token"):
            return await call_next(request)

        manager = self.manager
        token = await self._extract_token(request)
        result = manager.validate(token)
        if result.valid and self._single_use(path) and not manager.consume(token):
            result = TokenValidation.rejected(GuardReason.ALREADY_CONSUMED_TOKEN)
        if not result.valid:
            logger.warning(
                "csrf_validation_failed",
                path=path,
                method=method,
                reason=result.reason.value,
                csrf=token,
            )
            return decision_response(result.decision())
        request.state.csrf_validated = True
        return await call_next(request)
