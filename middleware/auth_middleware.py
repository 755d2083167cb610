"""
Authentication middleware: early logging of unauthenticated requests.
Actual token and session validation is done by FastAPI dependencies.
"""
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from typing import List

from core.logger import logger
from services.audit_service import client_ip

# Public routes that don't require authentication
PUBLIC_ROUTES: List[str] = [
    "/",
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/auth/register",
    "/api/auth/login",
    "/api/auth/verify-otp",
    "/api/auth/resend-otp",
]


class AuthRequiredMiddleware(BaseHTTPMiddleware):
    """
    Logs requests to protected routes that carry no credentials.

    Nothing is blocked here; the dependencies answer with the proper error.
    """

    def __init__(self, app, public_routes: List[str] = None):
        """
        Initialize authentication middleware.

        Args:
            app: FastAPI application
            public_routes: List of public routes (paths) that don't require auth
        """
        super().__init__(app)
        self.public_routes = public_routes or PUBLIC_ROUTES

    def is_public(self, path: str) -> bool:
        path = path.rstrip("/") or "/"
        return path in self.public_routes or any(
            route != "/" and path.startswith(route + "/") for route in self.public_routes
        )

    async def dispatch(self, request: Request, call_next):
        """Process request with authentication check."""
        path = request.url.path

        if self.is_public(path) or request.method == "OPTIONS":
            return await call_next(request)

        if not request.headers.get("authorization"):
            logger.warning(f"Request without authentication headers: {request.method} {path} from {client_ip(request) or 'unknown'}")

        return await call_next(request)
