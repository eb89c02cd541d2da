"""
Authorization Gate — кто вызывает и чем он владеет.

`authenticate_request` прогоняет запрос через упорядоченную цепочку шагов
(runtime, state) -> state и останавливается на первой ошибке:

    bearer токен -> подпись/срок -> живая сессия -> привязка к пользователю
    -> touch fingerprint -> RequestContext

FastAPI middleware кладёт результат (или типизированную ошибку) в
request.state; проверка прав — в handlers.
"""

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse

from core.storage import StorageUnavailableError

from . import sessions
from .audit import record_security_event
from .constants import (
    EVENT_AUTHORIZATION_DENIED,
    OUTCOME_BLOCKED,
    RATE_LIMIT_API,
    SESSION_TRUST_NORMAL,
)
from .context import RequestContext
from .errors import (
    AccountLocked,
    AuthError,
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
    WeakPassword,
    to_public_error,
)
from .jwt_tokens import AccessClaims, extract_bearer_token, verify_access_token
from .rate_limiting import rate_limit_check
from .utils import canonical_id, get_config, make_fingerprint


@dataclass
class GateState:
    authorization: Optional[str]
    fingerprint: Optional[Dict[str, Any]]
    now: float
    token: Optional[str] = None
    claims: Optional[AccessClaims] = None
    session: Optional[Dict[str, Any]] = None
    hijack: Optional[SessionHijackSuspected] = None
    context: Optional[RequestContext] = None


GateStep = Callable[[Any, GateState], Awaitable[GateState]]


async def _extract_token(runtime: Any, state: GateState) -> GateState:
    state.token = extract_bearer_token(state.authorization)
    return state


async def _verify_token(runtime: Any, state: GateState) -> GateState:
    state.claims = await verify_access_token(runtime, state.token)
    return state


async def _load_session(runtime: Any, state: GateState) -> GateState:
    state.session = await sessions.get_live_session(runtime, state.claims.session_id, now=state.now)
    return state


async def _check_binding(runtime: Any, state: GateState) -> GateState:
    # Подписанный токен чужой сессии: подделка или ошибка выпуска
    if state.session.get("user_id") != state.claims.user_id:
        raise InvalidToken()
    return state


async def _touch(runtime: Any, state: GateState) -> GateState:
    try:
        state.session = await sessions.touch_session(
            runtime, state.claims.session_id, state.fingerprint, now=state.now
        )
    except SessionHijackSuspected as e:
        if e.hard or e.session is None:
            raise
        # soft: запрос проходит с пониженным доверием
        state.session = e.session
        state.hijack = e
    return state


async def _build_context(runtime: Any, state: GateState) -> GateState:
    config = get_config(runtime)
    session = state.session
    state.context = RequestContext(
        user_id=state.claims.user_id,
        session_id=session["session_id"],
        role=state.claims.role,
        trust=session.get("trust") or SESSION_TRUST_NORMAL,
        reauth_required=bool(session.get("reauth_required")),
        regeneration_due=sessions.is_regeneration_due(
            session, config.session_regeneration_seconds, state.now
        ),
        token_id=state.claims.token_id,
    )
    return state


GATE_STEPS: Tuple[GateStep, ...] = (
    _extract_token,
    _verify_token,
    _load_session,
    _check_binding,
    _touch,
    _build_context,
)


async def authenticate_request(
    runtime: Any,
    authorization: Optional[str],
    fingerprint: Optional[Dict[str, Any]] = None,
    now: Optional[float] = None,
) -> RequestContext:
    """
    Разрешает (identity, session) для запроса.

    Raises:
        NoToken, InvalidToken, TokenExpired, SessionRevoked
        SessionHijackSuspected: только при hijack_policy="hard"
        StorageUnavailableError: хранилище недоступно
    """
    state = GateState(
        authorization=authorization,
        fingerprint=fingerprint,
        now=time.time() if now is None else now,
    )
    try:
        for step in GATE_STEPS:
            state = await step(runtime, state)
    except (InvalidToken, SessionRevoked, SessionHijackSuspected) as e:
        await record_security_event(
            runtime, EVENT_AUTHORIZATION_DENIED, OUTCOME_BLOCKED,
            user_id=state.claims.user_id if state.claims else None,
            ip=(fingerprint or {}).get("ip"),
            metadata={"reason": e.code, "step": _failed_step(state)},
        )
        raise
    return state.context


def _failed_step(state: GateState) -> str:
    if state.claims is None:
        return "verify_token"
    if state.session is None:
        return "load_session"
    return "touch"


def owns_resource(identity: Any, resource_owner_id: Any) -> bool:
    """
    Принадлежит ли ресурс вызывающему.

    Оба id приводятся к каноническому виду, поэтому 42, "42" и "042" —
    один и тот же владелец. Некорректный id никогда не совпадает.
    """
    user_id = identity.user_id if isinstance(identity, RequestContext) else identity
    try:
        return canonical_id(user_id) == canonical_id(resource_owner_id)
    except (TypeError, ValueError):
        return False


def require_admin(context: Optional[RequestContext]) -> RequestContext:
    if context is None:
        raise NoToken()
    if not context.is_admin:
        raise Forbidden()
    return context


def require_fresh_auth(context: Optional[RequestContext]) -> RequestContext:
    """Чувствительные операции недоступны сессии с пониженным доверием."""
    if context is None:
        raise NoToken()
    if context.reauth_required or context.is_downgraded:
        raise ReauthRequired()
    return context


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

# Порядок важен: подклассы раньше базовых классов
_STATUS_CODES: Tuple[Tuple[type, int], ...] = (
    (InvalidRequest, 400),
    (WeakPassword, 400),
    (ReusedPassword, 400),
    (InvalidCredentials, 401),
    (TokenError, 401),
    (SessionRevoked, 401),
    (SessionHijackSuspected, 401),
    (ReauthRequired, 403),
    (Forbidden, 403),
    (AccountLocked, 423),
    (RateLimited, 429),
    (ServiceUnavailable, 503),
)

# Публичные эндпоинты: свой класс лимита, Bearer не нужен
PUBLIC_AUTH_PATHS = ("/api/auth/login", "/api/auth/refresh", "/api/auth/register")
PUBLIC_AUTH_PREFIXES = ("/api/auth/password-reset/",)


def is_public_auth_path(path: str) -> bool:
    return path in PUBLIC_AUTH_PATHS or path.startswith(PUBLIC_AUTH_PREFIXES)


def status_code_for(error: AuthError) -> int:
    for error_type, status in _STATUS_CODES:
        if isinstance(error, error_type):
            return status
    return 400


def error_response(error: AuthError) -> JSONResponse:
    """Ответ для клиента: код, общий текст и Retry-After где уместно."""
    status = status_code_for(error)
    public = to_public_error(error)
    headers = {}
    retry_after = getattr(error, "retry_after", None)
    if retry_after:
        headers["Retry-After"] = str(retry_after)
    if status == 401:
        headers["WWW-Authenticate"] = "Bearer"
    detail = str(error) if isinstance(error, (WeakPassword, InvalidRequest)) else public.public_message
    return JSONResponse(
        status_code=status,
        content={"error": public.code, "detail": detail},
        headers=headers,
    )


def client_fingerprint(request: Request) -> Dict[str, Any]:
    ip = request.client.host if request.client else None
    return make_fingerprint(ip, request.headers.get("user-agent"))


async def require_auth_middleware(request: Request, call_next):
    """
    Rate limit по IP для API запросов, затем Authorization Gate.

    Результат гейта — request.state.auth_context либо
    request.state.auth_error. Анонимный запрос проходит дальше:
    требовать авторизацию решает handler.
    """
    runtime = getattr(request.app.state, "runtime", None)
    request.state.auth_context = None
    request.state.auth_error = None
    if runtime is None:
        return await call_next(request)

    fingerprint = client_fingerprint(request)
    request.state.fingerprint = fingerprint
    path = request.url.path

    try:
        if path.startswith("/api/") and not is_public_auth_path(path):
            await rate_limit_check(runtime, RATE_LIMIT_API, fingerprint.get("ip"), key_type="ip")
        authorization = request.headers.get("authorization")
        if authorization:
            try:
                request.state.auth_context = await authenticate_request(runtime, authorization, fingerprint)
            except (TokenError, SessionRevoked, SessionHijackSuspected) as e:
                request.state.auth_error = e
    except RateLimited as e:
        return error_response(e)
    except StorageUnavailableError:
        return error_response(ServiceUnavailable())

    return await call_next(request)


def context_or_raise(request: Request) -> RequestContext:
    """Контекст аутентифицированного запроса или ошибка гейта."""
    context = getattr(request.state, "auth_context", None)
    if context is not None:
        return context
    error = getattr(request.state, "auth_error", None)
    raise error if error is not None else NoToken()
