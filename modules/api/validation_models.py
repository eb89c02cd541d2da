"""
Pydantic модели тел запросов для auth endpoints.

Валидация входа выполняется до вызова service_registry: сервисы получают
уже проверенные типы. Ошибка валидации отдаётся как 400 invalid_request.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from modules.auth.constants import MAX_PASSWORD_LENGTH


class _Body(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=False)


class LoginBody(_Body):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH * 8)
    challenge_token: Optional[str] = Field(default=None, max_length=4096)


class RefreshBody(_Body):
    refresh_token: str = Field(min_length=1, max_length=4096)
    challenge_token: Optional[str] = Field(default=None, max_length=4096)


class RegisterBody(_Body):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH * 8)


class ChangePasswordBody(_Body):
    old_password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH * 8)
    new_password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH * 8)


class ReauthenticateBody(_Body):
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH * 8)


class PasswordResetRequestBody(_Body):
    email: str = Field(min_length=3, max_length=254)
    challenge_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordResetVerifyBody(_Body):
    # Токен в теле, не в URL: не оседает в логах доступа
    token: str = Field(min_length=1, max_length=512)


class PasswordResetBody(_Body):
    token: str = Field(min_length=1, max_length=512)
    new_password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH * 8)
    challenge_token: Optional[str] = Field(default=None, max_length=4096)
