# vamo/transport/security.py
"""
Service-to-service authentication for the notification endpoints.

The callers are the ride/delivery backends, never end users:
- Bearer token (``DISPATCH_API_TOKEN``) on every /notifications route
- Separate ``METRICS_TOKEN`` for /metrics (falls back to the dispatch token)
- Constant-time comparison, generic error messages
"""
import hmac
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from vamo.config import settings
from vamo.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum token length for security (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

bearer_scheme = HTTPBearer(
    scheme_name="Dispatch Token",
    description="Service token of the calling backend (without 'Bearer ' prefix)",
    auto_error=False,
)

metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    description="Enter your metrics token (without 'Bearer ' prefix)",
    auto_error=False,
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Returns a list of warnings (empty if the token looks strong).

    Checks length, common weak words and character diversity.
    """
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    token_lower = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in token_lower:
            warnings.append(
                f"{token_name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random token"
            )
            break

    if not (any(c.isupper() for c in token) and any(c.islower() for c in token)
            and any(c.isdigit() for c in token)):
        warnings.append(
            f"{token_name} has low character diversity. "
            "Recommended: mix of uppercase, lowercase, and numbers"
        )

    return warnings


def generate_secure_token(length: int = 32) -> str:
    """URL-safe random token for DISPATCH_API_TOKEN / METRICS_TOKEN."""
    return secrets.token_urlsafe(length)


def check_configured_tokens():
    """Log a warning for every weak configured token. Called at startup."""
    for name, token in (
        ("DISPATCH_API_TOKEN", settings.dispatch_api_token),
        ("METRICS_TOKEN", settings.metrics_token),
    ):
        if token:
            for warning in validate_token_strength(token, name):
                logger.warning(f"SECURITY: {warning}")


def _check_bearer(
    credentials: HTTPAuthorizationCredentials | None,
    expected: str | None,
    scope: str,
) -> None:
    if not expected:
        logger.critical(f"{scope} token not configured but protected endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable",
        )

    if not credentials:
        logger.warning(f"{scope} endpoint accessed without authorization header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        logger.warning(f"Invalid {scope} token attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_service_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """
    Dependency for the notification endpoints.

    Usage:
        @app.post("/notifications/...", dependencies=[Depends(require_service_auth)])
    """
    _check_bearer(credentials, settings.dispatch_api_token, "dispatch")


def require_metrics_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """Dependency for /metrics. Uses METRICS_TOKEN, or DISPATCH_API_TOKEN when unset."""
    _check_bearer(credentials, settings.metrics_token or settings.dispatch_api_token, "metrics")
