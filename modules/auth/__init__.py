"""
Auth Module — аутентификация и безопасность сессий.

Обязательный модуль системы, регистрируется автоматически через
ModuleManager. Экспортирует AuthModule и публичные функции компонентов.
"""

from .module import AuthModule

# Core types
from .context import RequestContext
from .errors import (
    AccountLocked,
    AuthError,
    ChallengeRequired,
    Forbidden,
    InvalidCredentials,
    InvalidRequest,
    InvalidToken,
    NoToken,
    RateLimited,
    ReauthRequired,
    ReusedPassword,
    ServiceUnavailable,
    SessionHijackSuspected,
    SessionRevoked,
    TokenError,
    TokenExpired,
    TokenReuseDetected,
    WeakPassword,
    to_public_error,
)

# Credential Store
from .passwords import (
    change_password,
    hash_password,
    needs_rehash,
    set_password,
    validate_password_strength,
    verify_password,
    verify_user_password,
)
from .users import create_user, get_user, get_user_by_email, identity_summary

# Lockout
from .lockout import (
    LockoutStatus,
    get_lockout_status,
    is_locked,
    record_failure,
    record_success,
    unlock_account,
)

# Tokens
from .jwt_tokens import (
    AccessClaims,
    TokenPair,
    issue_token_pair,
    rotate_refresh_token,
    verify_access_token,
)

# Sessions
from .sessions import (
    cleanup_expired_sessions,
    create_session,
    list_sessions,
    regenerate_session,
    revoke_all_sessions,
    revoke_session,
    touch_session,
)

# Security Event Log
from .audit import (
    flush_security_events,
    get_audit_stats,
    query_security_events,
    record_security_event,
    security_metrics,
)

# Authorization Gate
from .middleware import (
    authenticate_request,
    owns_resource,
    require_admin,
    require_auth_middleware,
    require_fresh_auth,
)

# Rate limiting
from .rate_limiting import enforce_rate_limits, rate_limit_check

__all__ = [
    "AuthModule",
    # Core types
    "RequestContext",
    "AuthError",
    "AccountLocked",
    "ChallengeRequired",
    "Forbidden",
    "InvalidCredentials",
    "InvalidRequest",
    "InvalidToken",
    "NoToken",
    "RateLimited",
    "ReauthRequired",
    "ReusedPassword",
    "ServiceUnavailable",
    "SessionHijackSuspected",
    "SessionRevoked",
    "TokenError",
    "TokenExpired",
    "TokenReuseDetected",
    "WeakPassword",
    "to_public_error",
    # Credential Store
    "change_password",
    "hash_password",
    "needs_rehash",
    "set_password",
    "validate_password_strength",
    "verify_password",
    "verify_user_password",
    "create_user",
    "get_user",
    "get_user_by_email",
    "identity_summary",
    # Lockout
    "LockoutStatus",
    "get_lockout_status",
    "is_locked",
    "record_failure",
    "record_success",
    "unlock_account",
    # Tokens
    "AccessClaims",
    "TokenPair",
    "issue_token_pair",
    "rotate_refresh_token",
    "verify_access_token",
    # Sessions
    "cleanup_expired_sessions",
    "create_session",
    "list_sessions",
    "regenerate_session",
    "revoke_all_sessions",
    "revoke_session",
    "touch_session",
    # Security Event Log
    "flush_security_events",
    "get_audit_stats",
    "query_security_events",
    "record_security_event",
    "security_metrics",
    # Authorization Gate
    "authenticate_request",
    "owns_resource",
    "require_admin",
    "require_auth_middleware",
    "require_fresh_auth",
    # Rate limiting
    "enforce_rate_limits",
    "rate_limit_check",
]
