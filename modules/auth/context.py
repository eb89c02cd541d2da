"""
RequestContext — результат Authorization Gate для запроса.
"""

from dataclasses import dataclass
from typing import Optional

from .constants import ROLE_ADMIN, SESSION_TRUST_DOWNGRADED, SESSION_TRUST_NORMAL
from .utils import canonical_id


@dataclass
class RequestContext:
    """
    Контекст авторизации для HTTP запроса.

    Передаётся через request.state в FastAPI. Хранит только идентификаторы:
    сама запись сессии принадлежит Session Registry.
    """
    user_id: str  # канонический id пользователя
    session_id: str
    role: str = "user"
    trust: str = SESSION_TRUST_NORMAL
    reauth_required: bool = False
    # Пора перевыпустить session id (клиент должен сделать refresh)
    regeneration_due: bool = False
    source: str = "jwt"
    token_id: Optional[str] = None

    def __post_init__(self):
        self.user_id = canonical_id(self.user_id)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_downgraded(self) -> bool:
        return self.trust == SESSION_TRUST_DOWNGRADED
