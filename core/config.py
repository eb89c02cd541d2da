"""
Конфигурация Core Runtime.

Настройки хранилища, HTTP и политики безопасности аутентификации.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


# (число неудачных попыток, длительность блокировки в секундах)
DEFAULT_LOCKOUT_SCHEDULE: List[Tuple[int, int]] = [
    (3, 5 * 60),
    (5, 15 * 60),
    (10, 60 * 60),
    (20, 24 * 60 * 60),
]

# endpoint class -> (лимит запросов, окно в секундах)
DEFAULT_RATE_LIMITS: Dict[str, Tuple[int, int]] = {
    "login": (10, 60),
    "refresh": (30, 60),
    "password_reset": (5, 300),
    "api": (300, 60),
}


def _parse_lockout_schedule(raw: str) -> List[Tuple[int, int]]:
    """ "3:300,5:900" -> [(3, 300), (5, 900)] """
    schedule = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        failures, seconds = part.split(":", 1)
        schedule.append((int(failures), int(seconds)))
    return schedule


def _parse_rate_limits(raw: str) -> Dict[str, Tuple[int, int]]:
    """ "login=10/60,refresh=30/60" -> {"login": (10, 60), ...} """
    limits = dict(DEFAULT_RATE_LIMITS)
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        name, spec = part.split("=", 1)
        limit, window = spec.split("/", 1)
        limits[name.strip()] = (int(limit), int(window))
    return limits


@dataclass
class Config:
    """Конфигурация Core Runtime."""
    # Тип адаптера: "sqlite", "postgresql" или "memory"
    storage_type: str = "sqlite"

    # Путь к файлу БД (для SQLite)
    db_path: str = "data/auth.db"

    # PostgreSQL настройки
    pg_host: str = "localhost"
    pg_port: int = 5432
    pg_database: str = "gapauth"
    pg_user: str = "postgres"
    pg_password: str = ""
    pg_dsn: Optional[str] = None  # Если указан, остальные pg_* игнорируются

    # Тайм-аут для shutdown (секунды)
    shutdown_timeout: int = 10

    # Тайм-аут для вызовов сервисов (секунды)
    service_call_timeout: float = 30.0

    # Тайм-аут одного обращения к хранилищу (секунды).
    # Превышение => ServiceUnavailable, запрос отклоняется.
    store_timeout: float = 5.0

    # Tokens
    # None => секрет генерируется один раз и сохраняется в storage
    jwt_secret: Optional[str] = None
    access_token_ttl: int = 15 * 60
    refresh_token_ttl: int = 7 * 24 * 60 * 60
    # Повторное использование refresh токена отзывает все сессии пользователя
    revoke_all_on_reuse: bool = True

    # Lockout
    lockout_schedule: List[Tuple[int, int]] = field(
        default_factory=lambda: list(DEFAULT_LOCKOUT_SCHEDULE)
    )
    # Окно, после которого счётчик неудачных попыток начинается заново
    lockout_window_seconds: int = 60 * 60
    # Повторная неудача в этот срок после блокировки высшего уровня => бессрочная блокировка
    lockout_cooldown_seconds: int = 7 * 24 * 60 * 60

    # Passwords
    password_history_depth: int = 12
    bcrypt_rounds: int = 12
    # Срок жизни токена сброса пароля
    password_reset_ttl: int = 60 * 60

    # Sessions
    session_regeneration_seconds: int = 30 * 60
    hijack_window_seconds: int = 10 * 60
    # "soft": понижение доверия и повторная аутентификация; "hard": отзыв сессии
    hijack_policy: str = "soft"
    max_concurrent_sessions: int = 5
    # Удаление истёкших сессий; 0 = фоновая очистка выключена
    session_cleanup_interval: int = 60 * 60

    # Rate limiting
    rate_limiting_enabled: bool = True
    rate_limits: Dict[str, Tuple[int, int]] = field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
    )
    # После limit * multiplier попыток челлендж уже не помогает
    rate_limit_hard_multiplier: int = 3

    # Security event log
    audit_retry_attempts: int = 3

    # Security / Environment
    # "development" | "production"
    env: str = "development"

    # HTTP
    # False => ApiModule не поднимает uvicorn (тесты, встраивание)
    http_enabled: bool = True
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    cors_allowed_origins: List[str] = None  # type: ignore[assignment]

    # Logging
    # "text" | "json"
    log_format: str = "text"

    def validate(self) -> None:
        """
        Валидировать конфигурацию.

        Raises:
            ValueError: если конфигурация невалидна
        """
        if self.storage_type not in ("sqlite", "postgresql", "memory"):
            raise ValueError(
                f"storage_type must be 'sqlite', 'postgresql' or 'memory', got: {self.storage_type!r}"
            )

        if self.storage_type == "sqlite":
            if not self.db_path:
                raise ValueError("db_path must be non-empty for SQLite storage")
            if not isinstance(self.db_path, str):
                raise ValueError(f"db_path must be string, got: {type(self.db_path).__name__}")

        if self.storage_type == "postgresql":
            if not self.pg_dsn:
                if not self.pg_database:
                    raise ValueError("pg_database must be non-empty for PostgreSQL storage")
                if not self.pg_user:
                    raise ValueError("pg_user must be non-empty for PostgreSQL storage")
                if not isinstance(self.pg_port, int) or self.pg_port <= 0 or self.pg_port > 65535:
                    raise ValueError(
                        f"pg_port must be integer between 1 and 65535, got: {self.pg_port}"
                    )

        if not isinstance(self.shutdown_timeout, int) or self.shutdown_timeout <= 0:
            raise ValueError(
                f"shutdown_timeout must be positive integer, got: {self.shutdown_timeout}"
            )
        if self.store_timeout <= 0:
            raise ValueError(f"store_timeout must be positive, got: {self.store_timeout}")

        # Tokens
        if self.jwt_secret is not None and len(self.jwt_secret) < 32:
            raise ValueError("jwt_secret must be at least 32 characters")
        if self.access_token_ttl <= 0 or self.refresh_token_ttl <= 0:
            raise ValueError("token lifetimes must be positive")
        if self.refresh_token_ttl <= self.access_token_ttl:
            raise ValueError("refresh_token_ttl must be longer than access_token_ttl")

        # Lockout: пороги строго возрастают, длительности не убывают
        if not self.lockout_schedule:
            raise ValueError("lockout_schedule must be non-empty")
        prev_failures, prev_seconds = 0, 0
        for failures, seconds in self.lockout_schedule:
            if failures <= prev_failures or seconds < prev_seconds or seconds <= 0:
                raise ValueError(
                    f"lockout_schedule must be increasing, got: {self.lockout_schedule!r}"
                )
            prev_failures, prev_seconds = failures, seconds
        if self.lockout_window_seconds <= 0 or self.lockout_cooldown_seconds <= 0:
            raise ValueError("lockout windows must be positive")

        # Passwords
        if self.password_history_depth < 1:
            raise ValueError("password_history_depth must be >= 1")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError(f"bcrypt_rounds must be between 4 and 31, got: {self.bcrypt_rounds}")
        if self.password_reset_ttl <= 0:
            raise ValueError("password_reset_ttl must be positive")

        # Sessions
        if self.hijack_policy not in ("soft", "hard"):
            raise ValueError("hijack_policy must be 'soft' or 'hard'")
        if self.max_concurrent_sessions < 1:
            raise ValueError("max_concurrent_sessions must be >= 1")
        if self.session_regeneration_seconds <= 0 or self.hijack_window_seconds <= 0:
            raise ValueError("session intervals must be positive")
        if self.session_cleanup_interval < 0:
            raise ValueError("session_cleanup_interval must be >= 0")

        # Rate limits
        for name, (limit, window) in self.rate_limits.items():
            if limit <= 0 or window <= 0:
                raise ValueError(f"rate limit for {name!r} must be positive, got: {(limit, window)}")
        if self.rate_limit_hard_multiplier < 1:
            raise ValueError("rate_limit_hard_multiplier must be >= 1")

        if self.audit_retry_attempts < 0:
            raise ValueError("audit_retry_attempts must be >= 0")

        if self.env not in ("development", "production"):
            raise ValueError(f"env must be 'development' or 'production', got: {self.env!r}")
        if self.env == "production" and not self.rate_limiting_enabled:
            raise ValueError("rate limiting cannot be disabled in production")

        if self.cors_allowed_origins is None:
            self.cors_allowed_origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
        if not isinstance(self.cors_allowed_origins, list) or not all(isinstance(x, str) for x in self.cors_allowed_origins):
            raise ValueError("cors_allowed_origins must be list[str]")

        if self.log_format not in ("text", "json"):
            raise ValueError("log_format must be 'text' or 'json'")

    @classmethod
    def from_env(cls) -> "Config":
        """
        Создать конфигурацию из переменных окружения.

        Raises:
            ValueError: если конфигурация невалидна
        """
        cors_raw = os.getenv("RUNTIME_CORS_ALLOWED_ORIGINS")
        cors_allowed = None
        if cors_raw:
            cors_allowed = [x.strip() for x in cors_raw.split(",") if x.strip()]

        schedule_raw = os.getenv("AUTH_LOCKOUT_SCHEDULE")
        rate_limits_raw = os.getenv("AUTH_RATE_LIMITS")

        config = cls(
            storage_type=os.getenv("RUNTIME_STORAGE_TYPE", "sqlite"),
            db_path=os.getenv("RUNTIME_DB_PATH", "data/auth.db"),
            pg_host=os.getenv("RUNTIME_PG_HOST", "localhost"),
            pg_port=int(os.getenv("RUNTIME_PG_PORT", "5432")),
            pg_database=os.getenv("RUNTIME_PG_DATABASE", "gapauth"),
            pg_user=os.getenv("RUNTIME_PG_USER", "postgres"),
            pg_password=os.getenv("RUNTIME_PG_PASSWORD", ""),
            pg_dsn=os.getenv("RUNTIME_PG_DSN"),
            shutdown_timeout=int(os.getenv("RUNTIME_SHUTDOWN_TIMEOUT", "10")),
            service_call_timeout=float(os.getenv("RUNTIME_SERVICE_CALL_TIMEOUT", "30.0")),
            store_timeout=float(os.getenv("RUNTIME_STORE_TIMEOUT", "5.0")),
            jwt_secret=os.getenv("AUTH_JWT_SECRET") or None,
            access_token_ttl=int(os.getenv("AUTH_ACCESS_TOKEN_TTL", str(15 * 60))),
            refresh_token_ttl=int(os.getenv("AUTH_REFRESH_TOKEN_TTL", str(7 * 24 * 60 * 60))),
            revoke_all_on_reuse=os.getenv("AUTH_REVOKE_ALL_ON_REUSE", "true").lower() == "true",
            lockout_schedule=(
                _parse_lockout_schedule(schedule_raw) if schedule_raw
                else list(DEFAULT_LOCKOUT_SCHEDULE)
            ),
            lockout_window_seconds=int(os.getenv("AUTH_LOCKOUT_WINDOW", "3600")),
            lockout_cooldown_seconds=int(os.getenv("AUTH_LOCKOUT_COOLDOWN", str(7 * 24 * 60 * 60))),
            password_history_depth=int(os.getenv("AUTH_PASSWORD_HISTORY_DEPTH", "12")),
            bcrypt_rounds=int(os.getenv("AUTH_BCRYPT_ROUNDS", "12")),
            password_reset_ttl=int(os.getenv("AUTH_PASSWORD_RESET_TTL", "3600")),
            session_regeneration_seconds=int(os.getenv("AUTH_SESSION_REGENERATION", "1800")),
            hijack_window_seconds=int(os.getenv("AUTH_HIJACK_WINDOW", "600")),
            hijack_policy=os.getenv("AUTH_HIJACK_POLICY", "soft").lower(),
            max_concurrent_sessions=int(os.getenv("AUTH_MAX_SESSIONS", "5")),
            session_cleanup_interval=int(os.getenv("AUTH_SESSION_CLEANUP_INTERVAL", "3600")),
            rate_limiting_enabled=os.getenv("RUNTIME_RATE_LIMITING_ENABLED", "true").lower() == "true",
            rate_limits=(
                _parse_rate_limits(rate_limits_raw) if rate_limits_raw
                else dict(DEFAULT_RATE_LIMITS)
            ),
            rate_limit_hard_multiplier=int(os.getenv("AUTH_RATE_LIMIT_HARD_MULTIPLIER", "3")),
            audit_retry_attempts=int(os.getenv("AUTH_AUDIT_RETRIES", "3")),
            env=os.getenv("RUNTIME_ENV", "development").lower(),
            http_enabled=os.getenv("RUNTIME_HTTP_ENABLED", "true").lower() == "true",
            http_host=os.getenv("RUNTIME_HTTP_HOST", "0.0.0.0"),
            http_port=int(os.getenv("RUNTIME_HTTP_PORT", "8000")),
            cors_allowed_origins=cors_allowed,
            log_format=os.getenv("RUNTIME_LOG_FORMAT", "text").lower(),
        )
        config.validate()
        return config
