"""
Security middleware for rate limiting, CORS, and other security features.
"""
from fastapi import Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import time
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from core.logger import logger
from services.audit_service import client_ip

# (path, limit, window seconds, message)
RouteLimit = Tuple[str, int, int, str]


def default_route_limits(login: int, otp: int, signup: int) -> List[RouteLimit]:
    """Tighter per-IP limits on the credential endpoints."""
    return [
        ("/api/auth/login", login, 15 * 60, "Too many login attempts. Please try again after 15 minutes."),
        ("/api/auth/verify-otp", otp, 5 * 60, "Too many OTP attempts. Please try again after 5 minutes."),
        ("/api/auth/resend-otp", otp, 5 * 60, "Too many OTP attempts. Please try again after 5 minutes."),
        ("/api/auth/register", signup, 60 * 60, "Too many accounts created. Please try again after an hour."),
    ]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limiting middleware."""

    def __init__(
        self,
        app,
        requests_per_minute: int = 60,
        requests_per_hour: int = 1000,
        route_limits: Optional[List[RouteLimit]] = None,
    ):
        """
        Initialize rate limiting middleware.

        Args:
            app: FastAPI application
            requests_per_minute: Max requests per minute per IP
            requests_per_hour: Max requests per hour per IP
            route_limits: Extra per-IP limits for specific POST paths
        """
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour
        self.route_limits = route_limits or []
        self.minute_requests: Dict[str, list] = defaultdict(list)
        self.hour_requests: Dict[str, list] = defaultdict(list)
        self.route_requests: Dict[Tuple[str, str], list] = defaultdict(list)
        self.cleanup_interval = 300  # Clean up old entries every 5 minutes
        self.last_cleanup = time.time()

    async def dispatch(self, request: Request, call_next):
        """Process request with rate limiting."""
        ip = client_ip(request) or "unknown"

        # Clean up old entries periodically
        current_time = time.time()
        if current_time - self.last_cleanup > self.cleanup_interval:
            self._cleanup_old_entries(current_time)
            self.last_cleanup = current_time

        message = self._check_route_limit(ip, request, current_time)
        if message is None and not self._check_rate_limit(ip, current_time):
            message = "Rate limit exceeded. Please try again later."

        if message is not None:
            logger.warning(f"Rate limit exceeded for IP: {ip} on {request.method} {request.url.path}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"success": False, "message": message, "error": "RateLimitExceeded"},
            )

        return await call_next(request)

    def _check_route_limit(self, client_ip: str, request: Request, current_time: float) -> Optional[str]:
        if request.method != "POST":
            return None
        path = request.url.path.rstrip("/")
        for route, limit, window, message in self.route_limits:
            if path != route:
                continue
            key = (route, client_ip)
            self.route_requests[key] = [t for t in self.route_requests[key] if current_time - t < window]
            if len(self.route_requests[key]) >= limit:
                return message
            self.route_requests[key].append(current_time)
        return None

    def _check_rate_limit(self, client_ip: str, current_time: float) -> bool:
        """Check if request is within rate limits."""
        # Clean minute requests (older than 1 minute)
        self.minute_requests[client_ip] = [
            t for t in self.minute_requests[client_ip]
            if current_time - t < 60
        ]

        # Clean hour requests (older than 1 hour)
        self.hour_requests[client_ip] = [
            t for t in self.hour_requests[client_ip]
            if current_time - t < 3600
        ]

        # Check limits
        if len(self.minute_requests[client_ip]) >= self.requests_per_minute:
            return False
        if len(self.hour_requests[client_ip]) >= self.requests_per_hour:
            return False

        # Add current request
        self.minute_requests[client_ip].append(current_time)
        self.hour_requests[client_ip].append(current_time)

        return True

    def _cleanup_old_entries(self, current_time: float):
        """Clean up old rate limit entries."""
        for ip in list(self.minute_requests.keys()):
            self.minute_requests[ip] = [t for t in self.minute_requests[ip] if current_time - t < 60]
            if not self.minute_requests[ip]:
                del self.minute_requests[ip]

        for ip in list(self.hour_requests.keys()):
            self.hour_requests[ip] = [t for t in self.hour_requests[ip] if current_time - t < 3600]
            if not self.hour_requests[ip]:
                del self.hour_requests[ip]

        windows = {route: window for route, _, window, _ in self.route_limits}
        for key in list(self.route_requests.keys()):
            window = windows.get(key[0], 3600)
            self.route_requests[key] = [t for t in self.route_requests[key] if current_time - t < window]
            if not self.route_requests[key]:
                del self.route_requests[key]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to responses."""

    async def dispatch(self, request: Request, call_next):
        """Add security headers."""
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"

        return response


def setup_cors(app, allowed_origins: list[str], allowed_methods: list[str] = None, allow_credentials: bool = True):
    """
    Setup CORS middleware.

    Args:
        app: FastAPI application
        allowed_origins: List of allowed origins
        allowed_methods: List of allowed HTTP methods
        allow_credentials: Whether browsers may send credentials
    """
    if allowed_methods is None:
        allowed_methods = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=allow_credentials,
        allow_methods=allowed_methods,
        allow_headers=["Authorization", "Content-Type"],
    )


def setup_trusted_hosts(app, allowed_hosts: list[str]):
    """
    Setup trusted hosts middleware.

    Args:
        app: FastAPI application
        allowed_hosts: List of allowed hostnames
    """
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=allowed_hosts
    )
