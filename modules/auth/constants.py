"""
Authentication constants — namespaces, token settings, policies, event taxonomy.
"""

# Storage namespaces
AUTH_USERS_NAMESPACE = "auth_users"
AUTH_USER_EMAILS_NAMESPACE = "auth_user_emails"
AUTH_USER_SESSIONS_NAMESPACE = "auth_user_sessions"  # user_id -> список session_id
AUTH_SESSIONS_NAMESPACE = "auth_sessions"
AUTH_LOCKOUTS_NAMESPACE = "auth_lockouts"
AUTH_RATE_LIMITS_NAMESPACE = "auth_rate_limits"
AUTH_SECURITY_EVENTS_NAMESPACE = "auth_security_events"
AUTH_CONFIG_NAMESPACE = "auth_config"
AUTH_PASSWORD_RESETS_NAMESPACE = "auth_password_resets"  # sha256(token) -> запись сброса

# Ключи в AUTH_CONFIG_NAMESPACE
JWT_SECRET_KEY_STORAGE_KEY = "jwt_secret_key"
USER_ID_SEQUENCE_KEY = "user_id_sequence"

# JWT settings
JWT_ALGORITHM = "HS256"
JWT_SECRET_KEY_LENGTH = 48  # байт энтропии для token_urlsafe
TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"

# Roles
ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)

# Password policies
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
REQUIRE_UPPERCASE = True
REQUIRE_LOWERCASE = True
REQUIRE_DIGIT = True
REQUIRE_SPECIAL_CHAR = True
# bcrypt учитывает только первые 72 байта пароля
BCRYPT_MAX_PASSWORD_BYTES = 72
# Формат старых хешей: pbkdf2_sha256$<iterations>$<salt>$<base64 hash>
LEGACY_PBKDF2_PREFIX = "pbkdf2_sha256$"

COMMON_PASSWORDS = frozenset({
    "password", "password1", "password123", "123456", "123456789", "12345678",
    "qwerty", "qwerty123", "abc123", "admin", "admin123", "letmein", "welcome",
    "welcome1", "monkey", "1234567890", "dragon", "master", "hello", "freedom",
    "whatever", "qazwsx", "trustno1", "sunshine", "iloveyou", "starwars",
    "computer", "princess", "football", "baseball", "superman", "passw0rd",
})

# Sessions
SESSION_TRUST_NORMAL = "normal"
SESSION_TRUST_DOWNGRADED = "downgraded"
HIJACK_POLICY_SOFT = "soft"
HIJACK_POLICY_HARD = "hard"
# Префиксы подсетей для сравнения fingerprint
IPV4_SUBNET_PREFIX = 24
IPV6_SUBNET_PREFIX = 64

# Rate limiter endpoint classes
RATE_LIMIT_LOGIN = "login"
RATE_LIMIT_REFRESH = "refresh"
RATE_LIMIT_PASSWORD_RESET = "password_reset"
RATE_LIMIT_API = "api"
# Внешний верификатор челленджей (CAPTCHA) регистрирует этот сервис
CHALLENGE_VERIFY_SERVICE = "auth.challenge.verify"
# Доставку ссылки сброса пароля (email) регистрирует внешний модуль
PASSWORD_RESET_DELIVERY_SERVICE = "auth.password_reset.deliver"
PASSWORD_RESET_TOKEN_BYTES = 32

# Security event categories
EVENT_LOGIN_SUCCESS = "login_success"
EVENT_LOGIN_FAILURE = "login_failure"
EVENT_LOGIN_BLOCKED = "login_blocked"
EVENT_LOCKOUT_ENGAGED = "lockout_engaged"
EVENT_LOCKOUT_CLEARED = "lockout_cleared"
EVENT_PASSWORD_CHANGED = "password_changed"
EVENT_PASSWORD_CHANGE_FAILED = "password_change_failed"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_ROTATED = "token_rotated"
EVENT_TOKEN_REUSE_DETECTED = "token_reuse_detected"
EVENT_SESSION_CREATED = "session_created"
EVENT_SESSION_REGENERATED = "session_regenerated"
EVENT_SESSION_HIJACK_SUSPECTED = "session_hijack_suspected"
EVENT_SESSION_REAUTHENTICATED = "session_reauthenticated"
EVENT_SESSION_REVOKED = "session_revoked"
EVENT_RATE_LIMITED = "rate_limited"
EVENT_CHALLENGE_REQUIRED = "challenge_required"
EVENT_AUTHORIZATION_DENIED = "authorization_denied"
EVENT_USER_REGISTERED = "user_registered"
EVENT_PASSWORD_RESET_REQUESTED = "password_reset_requested"
EVENT_PASSWORD_RESET_FAILED = "password_reset_failed"

SECURITY_EVENT_CATEGORIES = frozenset({
    EVENT_LOGIN_SUCCESS, EVENT_LOGIN_FAILURE, EVENT_LOGIN_BLOCKED,
    EVENT_LOCKOUT_ENGAGED, EVENT_LOCKOUT_CLEARED,
    EVENT_PASSWORD_CHANGED, EVENT_PASSWORD_CHANGE_FAILED,
    EVENT_TOKEN_ISSUED, EVENT_TOKEN_ROTATED, EVENT_TOKEN_REUSE_DETECTED,
    EVENT_SESSION_CREATED, EVENT_SESSION_REGENERATED,
    EVENT_SESSION_HIJACK_SUSPECTED, EVENT_SESSION_REAUTHENTICATED,
    EVENT_SESSION_REVOKED, EVENT_RATE_LIMITED, EVENT_CHALLENGE_REQUIRED,
    EVENT_AUTHORIZATION_DENIED, EVENT_USER_REGISTERED,
    EVENT_PASSWORD_RESET_REQUESTED, EVENT_PASSWORD_RESET_FAILED,
})

# Что пользователь видит в собственном журнале
USER_VISIBLE_EVENT_CATEGORIES = frozenset({
    EVENT_LOGIN_SUCCESS, EVENT_LOGIN_FAILURE, EVENT_LOGIN_BLOCKED,
    EVENT_LOCKOUT_ENGAGED, EVENT_LOCKOUT_CLEARED,
    EVENT_PASSWORD_CHANGED, EVENT_PASSWORD_CHANGE_FAILED,
    EVENT_PASSWORD_RESET_REQUESTED,
    EVENT_SESSION_CREATED, EVENT_SESSION_HIJACK_SUSPECTED,
    EVENT_SESSION_REVOKED, EVENT_TOKEN_REUSE_DETECTED,
})
# Поля события, отдаваемые пользователю (без metadata)
USER_VISIBLE_EVENT_FIELDS = ("event_id", "timestamp", "category", "outcome", "severity", "ip")

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_BLOCKED = "blocked"
OUTCOME_DETECTED = "detected"
EVENT_OUTCOMES = (OUTCOME_SUCCESS, OUTCOME_FAILURE, OUTCOME_BLOCKED, OUTCOME_DETECTED)

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

# Категории, которые всегда critical независимо от outcome
CRITICAL_EVENT_CATEGORIES = frozenset({
    EVENT_TOKEN_REUSE_DETECTED,
})
# Категории, которые warning независимо от outcome
WARNING_EVENT_CATEGORIES = frozenset({
    EVENT_LOCKOUT_ENGAGED, EVENT_SESSION_HIJACK_SUSPECTED,
    EVENT_RATE_LIMITED, EVENT_CHALLENGE_REQUIRED, EVENT_AUTHORIZATION_DENIED,
})

# Security event query
DEFAULT_EVENT_QUERY_LIMIT = 100
MAX_EVENT_QUERY_LIMIT = 1000
