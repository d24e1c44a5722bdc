# app/middleware/security.py
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request

DOC_PATHS = {"/docs", "/redoc", "/openapi.json", "/docs/oauth2-redirect"}

API_CSP = (
    "default-src 'none'; "
    "img-src 'self' data:; "
    "base-uri 'none'; "
    "frame-ancestors 'none'"
)

# Swagger UI loads its assets from jsdelivr and uses inline scripts
DOCS_CSP = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
    "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
    "img-src 'self' data: https:; "
    "object-src 'none'; "
    "frame-ancestors 'none'"
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Security headers for API responses, with a relaxed CSP on the docs pages."""

    def __init__(self, app, hsts: bool = False, static_prefix: str = "/output"):
        super().__init__(app)
        self.hsts = hsts
        self.static_prefix = static_prefix.rstrip("/") + "/"

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cross-Origin-Resource-Policy"] = "same-origin"

        # Task state changes underneath the client; never cache API JSON
        if not request.url.path.startswith(self.static_prefix):
            response.headers["Cache-Control"] = "no-store"

        if self.hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        response.headers["Content-Security-Policy"] = DOCS_CSP if request.url.path in DOC_PATHS else API_CSP
        return response
