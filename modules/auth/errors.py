"""
Auth errors — типизированные ошибки подсистемы аутентификации.

Внутри сервисов ошибки точные (TokenReuseDetected, SessionRevoked, ...).
Boundary-слой (ApiModule) схлопывает токенные и сессионные ошибки в общее
"please log in again" через `public_message`, а точная причина остаётся
в Security Event Log.
"""

from typing import Optional


class AuthError(Exception):
    """Базовая ошибка аутентификации."""

    code = "auth_error"
    public_message = "Authentication failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)


class InvalidCredentials(AuthError):
    """Неверный email или пароль (без уточнения, что именно)."""

    code = "invalid_credentials"
    public_message = "Invalid email or password"


class AccountLocked(AuthError):
    """Учётная запись заблокирована. retry_after=None — бессрочно."""

    code = "account_locked"
    public_message = "Account is temporarily locked"

    def __init__(self, retry_after: Optional[int] = None, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message)


class ReusedPassword(AuthError):
    code = "reused_password"
    public_message = "New password must not match a recently used password"


class WeakPassword(AuthError):
    code = "weak_password"
    public_message = "Password does not meet the password policy"


class RateLimited(AuthError):
    code = "rate_limited"
    public_message = "Too many attempts, please try again later"

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = max(1, int(retry_after))
        super().__init__(message)


class ChallengeRequired(RateLimited):
    """Лимит превышен, дальнейшие попытки — только с пройденным челленджем."""

    code = "challenge_required"
    public_message = "Additional verification required"


class TokenError(AuthError):
    code = "token_error"
    public_message = "Please log in again"


class NoToken(TokenError):
    code = "no_token"
    public_message = "Authentication required"


class InvalidToken(TokenError):
    code = "invalid_token"


class TokenExpired(TokenError):
    code = "token_expired"


class TokenReuseDetected(TokenError):
    """Повторное использование refresh токена. Сессия уже отозвана."""

    code = "token_reuse_detected"


class SessionRevoked(AuthError):
    code = "session_revoked"
    public_message = "Please log in again"


class SessionHijackSuspected(AuthError):
    """
    Fingerprint сессии резко сменился.

    hard=True — сессия отозвана. hard=False — сессия помечена как
    downgraded, вызывающий код продолжает с пониженным доверием.
    """

    code = "session_hijack_suspected"
    public_message = "Please log in again"

    def __init__(self, session_id: str, hard: bool = False, session: Optional[dict] = None):
        self.session_id = session_id
        self.hard = hard
        self.session = session
        super().__init__()


class ReauthRequired(AuthError):
    code = "reauth_required"
    public_message = "Please confirm your password to continue"


class Forbidden(AuthError):
    code = "forbidden"
    public_message = "Access denied"


class InvalidRequest(AuthError):
    code = "invalid_request"
    public_message = "Invalid request"


class ServiceUnavailable(AuthError):
    """Хранилище недоступно — запрос отклоняется (fail closed)."""

    code = "service_unavailable"
    public_message = "Service temporarily unavailable"


# Ошибки, для которых пользователь получает только "please log in again"
SESSION_ERRORS = (TokenError, SessionRevoked, SessionHijackSuspected)


def to_public_error(error: AuthError) -> AuthError:
    """
    Ошибка, которую можно показать пользователю.

    Токенные и сессионные причины сводятся к одному SessionRevoked
    ("please log in again"). NoToken и остальные отдаются как есть.
    """
    if isinstance(error, SESSION_ERRORS) and not isinstance(error, NoToken):
        return SessionRevoked()
    return error
