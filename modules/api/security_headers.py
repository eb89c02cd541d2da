"""
Security headers middleware.

API отдаёт только JSON и токены, поэтому политика строгая всегда:
ответы не кешируются и не встраиваются в чужие страницы.
"""

from typing import Any, Callable, Optional

from fastapi import Request, Response


async def security_headers_middleware(request: Request, call_next: Callable) -> Response:
    response = await call_next(request)

    runtime: Optional[Any] = getattr(request.app.state, "runtime", None)
    cfg = getattr(runtime, "config", None)
    env = getattr(cfg, "env", "development")

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    response.headers["Cross-Origin-Resource-Policy"] = "same-origin"
    # Токены в ответах не должны оседать в кешах
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"

    if request.url.scheme == "https" or env == "production":
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    return response
