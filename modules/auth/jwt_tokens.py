"""
JWT Token management — выдача, проверка и ротация access/refresh токенов.

Access токен короткоживущий и stateless. Refresh токен действует, только
пока его jti совпадает с refresh_jti сессии: ротация меняет указатель
атомарно, а предъявление уже обменянного токена считается кражей.
"""

import secrets
import time
import uuid
import weakref
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from core import logger_helper

from . import sessions
from .audit import record_security_event
from .constants import (
    AUTH_CONFIG_NAMESPACE,
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REUSE_DETECTED,
    EVENT_TOKEN_ROTATED,
    JWT_ALGORITHM,
    JWT_SECRET_KEY_LENGTH,
    JWT_SECRET_KEY_STORAGE_KEY,
    OUTCOME_DETECTED,
    OUTCOME_SUCCESS,
    ROLE_USER,
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_REFRESH,
)
from .errors import InvalidToken, NoToken, SessionRevoked, TokenExpired, TokenReuseDetected
from .users import get_user
from .utils import canonical_id, get_config


# Секрет кешируется на runtime, чтобы не читать storage на каждый запрос
_secret_cache: "weakref.WeakKeyDictionary[Any, str]" = weakref.WeakKeyDictionary()


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    jti: str
    refresh_jti: str
    issued_at: float
    expires_in: int
    refresh_expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        """Ответ клиенту: токены и сроки, без внутренних id."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_expires_in": self.refresh_expires_in,
        }


@dataclass
class AccessClaims:
    user_id: str
    session_id: str
    role: str
    token_id: str
    issued_at: float
    expires_at: float


async def get_or_create_jwt_secret(runtime: Any) -> str:
    """
    Секрет подписи: config.jwt_secret либо сгенерированный и сохранённый в storage.

    Генерация идёт через update, поэтому параллельные первые вызовы
    (в том числе из разных процессов) получают один и тот же секрет.
    """
    configured = get_config(runtime).jwt_secret
    if configured:
        return configured

    cached = _secret_cache.get(runtime)
    if cached:
        return cached

    created = False

    def get_or_create(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        nonlocal created
        if isinstance(current, dict) and isinstance(current.get("value"), str) and current["value"]:
            return current
        created = True
        return {"value": secrets.token_urlsafe(JWT_SECRET_KEY_LENGTH), "created_at": time.time()}

    data = await runtime.storage.update(AUTH_CONFIG_NAMESPACE, JWT_SECRET_KEY_STORAGE_KEY, get_or_create)
    if created:
        await logger_helper.info(runtime, "Generated new JWT secret", module="auth")
    _secret_cache[runtime] = data["value"]
    return data["value"]


def extract_bearer_token(authorization_header: Optional[str]) -> str:
    """
    Извлекает токен из "Authorization: Bearer <token>".

    Raises:
        NoToken: заголовка нет или он не Bearer
        InvalidToken: значение не похоже на JWT
    """
    if not authorization_header:
        raise NoToken()
    parts = authorization_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise NoToken()
    token = parts[1].strip()
    # header.payload.signature
    token_parts = token.split(".")
    if len(token_parts) != 3 or any(len(part) < 4 for part in token_parts):
        raise InvalidToken()
    return token


def _decode(token: str, secret: str, expected_type: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp", "iat", "jti", "sid", "sub", "type"]},
        )
    except ExpiredSignatureError:
        raise TokenExpired()
    except InvalidTokenError:
        raise InvalidToken()
    if payload.get("type") != expected_type:
        raise InvalidToken()
    try:
        payload["sub"] = canonical_id(payload.get("sub"))
    except (TypeError, ValueError):
        raise InvalidToken()
    return payload


async def _sign_pair(
    runtime: Any,
    user_id: str,
    session_id: str,
    role: str,
    refresh_jti: str,
    refresh_seq: int,
    now: float,
) -> TokenPair:
    config = get_config(runtime)
    secret = await get_or_create_jwt_secret(runtime)
    issued = int(now)
    access_jti = uuid.uuid4().hex
    access = jwt.encode(
        {
            "sub": user_id,
            "sid": session_id,
            "jti": access_jti,
            "role": role,
            "type": TOKEN_TYPE_ACCESS,
            "iat": issued,
            "exp": issued + config.access_token_ttl,
        },
        secret,
        algorithm=JWT_ALGORITHM,
    )
    refresh = jwt.encode(
        {
            "sub": user_id,
            "sid": session_id,
            "jti": refresh_jti,
            "seq": refresh_seq,
            "type": TOKEN_TYPE_REFRESH,
            "iat": issued,
            "exp": issued + config.refresh_token_ttl,
        },
        secret,
        algorithm=JWT_ALGORITHM,
    )
    return TokenPair(
        access_token=access,
        refresh_token=refresh,
        session_id=session_id,
        jti=access_jti,
        refresh_jti=refresh_jti,
        issued_at=issued,
        expires_in=config.access_token_ttl,
        refresh_expires_in=config.refresh_token_ttl,
    )


async def issue_token_pair(
    runtime: Any,
    session_id: str,
    user_id: Any,
    role: str = ROLE_USER,
    now: Optional[float] = None,
) -> TokenPair:
    """
    Выпускает первую пару токенов для новой сессии.

    Raises:
        SessionRevoked: сессия не действует
    """
    uid = canonical_id(user_id)
    now = time.time() if now is None else now
    refresh_jti = uuid.uuid4().hex
    session = await sessions.bind_refresh_token(runtime, session_id, refresh_jti, now=now)
    pair = await _sign_pair(runtime, uid, session_id, role, refresh_jti, session["refresh_seq"], now)
    await record_security_event(
        runtime, EVENT_TOKEN_ISSUED, OUTCOME_SUCCESS,
        user_id=uid, metadata={"session": logger_helper.short_id(session_id, 16)},
    )
    return pair


async def verify_access_token(
    runtime: Any,
    token: str,
    require_live_session: bool = False,
) -> AccessClaims:
    """
    Проверяет подпись, срок и тип access токена.

    Args:
        require_live_session: дополнительно проверить, что сессия не отозвана

    Raises:
        InvalidToken, TokenExpired
        SessionRevoked: при require_live_session, если сессия не действует
    """
    if not isinstance(token, str) or not token:
        raise NoToken()
    secret = await get_or_create_jwt_secret(runtime)
    payload = _decode(token, secret, TOKEN_TYPE_ACCESS)
    claims = AccessClaims(
        user_id=payload["sub"],
        session_id=str(payload["sid"]),
        role=str(payload.get("role") or ROLE_USER),
        token_id=str(payload["jti"]),
        issued_at=float(payload["iat"]),
        expires_at=float(payload["exp"]),
    )
    if require_live_session:
        session = await sessions.get_live_session(runtime, claims.session_id)
        if session.get("user_id") != claims.user_id:
            raise InvalidToken()
    return claims


async def refresh_token_subject(runtime: Any, refresh_token: Any) -> Optional[str]:
    """
    user id из refresh токена для ключа rate limit.

    Невалидный или истёкший токен -> None; ошибку вернёт сама ротация.
    """
    if not isinstance(refresh_token, str) or not refresh_token:
        return None
    secret = await get_or_create_jwt_secret(runtime)
    try:
        return _decode(refresh_token, secret, TOKEN_TYPE_REFRESH)["sub"]
    except (InvalidToken, TokenExpired):
        return None


async def rotate_refresh_token(
    runtime: Any,
    refresh_token: str,
    fingerprint: Optional[Dict[str, Any]] = None,
    now: Optional[float] = None,
) -> TokenPair:
    """
    Обменивает refresh токен на новую пару.

    Старый refresh токен перестаёт действовать. Если сессии пора сменить id,
    новая пара выпускается уже для нового session id.

    Повторное предъявление обменянного токена — признак кражи: отзывается
    цепочка сессии, а при config.revoke_all_on_reuse и все сессии
    пользователя.

    Raises:
        NoToken, InvalidToken, TokenExpired
        TokenReuseDetected: токен уже был использован
        SessionRevoked: сессия закрыта или пользователь удалён
    """
    if not isinstance(refresh_token, str) or not refresh_token:
        raise NoToken()
    config = get_config(runtime)
    now = time.time() if now is None else now
    ip = (fingerprint or {}).get("ip")
    secret = await get_or_create_jwt_secret(runtime)
    payload = _decode(refresh_token, secret, TOKEN_TYPE_REFRESH)
    uid = payload["sub"]
    session_id = str(payload["sid"])
    new_jti = uuid.uuid4().hex

    try:
        session = await sessions.advance_refresh_pointer(
            runtime, session_id, str(payload["jti"]), new_jti, now=now
        )
    except TokenReuseDetected:
        revoked = 0
        if config.revoke_all_on_reuse:
            revoked = await sessions.revoke_all_sessions(runtime, uid, reason="token_reuse")
        await record_security_event(
            runtime, EVENT_TOKEN_REUSE_DETECTED, OUTCOME_DETECTED,
            user_id=uid, ip=ip,
            metadata={
                "session": logger_helper.short_id(session_id, 16),
                "seq": payload.get("seq"),
                "revoked_all": config.revoke_all_on_reuse,
                "revoked_sessions": revoked,
            },
        )
        raise

    user = await get_user(runtime, uid)
    if session.get("user_id") != uid or user is None or not user.get("is_active", True):
        await sessions.revoke_session(runtime, session_id, reason="identity_mismatch", now=now)
        raise SessionRevoked()

    if sessions.is_regeneration_due(session, config.session_regeneration_seconds, now):
        session = await sessions.regenerate_session(
            runtime, session_id, expected_refresh_jti=new_jti, now=now
        )

    pair = await _sign_pair(
        runtime, uid, session["session_id"], user.get("role", ROLE_USER),
        new_jti, session["refresh_seq"], now,
    )
    await record_security_event(
        runtime, EVENT_TOKEN_ROTATED, OUTCOME_SUCCESS,
        user_id=uid, ip=ip,
        metadata={
            "session": logger_helper.short_id(session["session_id"], 16),
            "refresh_seq": session["refresh_seq"],
            "rotation_counter": session.get("rotation_counter", 0),
        },
    )
    return pair
