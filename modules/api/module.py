"""
ApiModule — встроенный модуль HTTP boundary.

Переводит HTTP запросы в вызовы сервисов auth.* и типизированные ошибки
в HTTP статусы. Сервисы про HTTP не знают:
- аутентификация выполняется в middleware (Authorization Gate),
  RequestContext передаётся через request.state
- проверка прав (admin, свежая аутентификация) — в handlers
- ServiceRegistry авторизацию не выполняет
"""

from typing import Any, Dict, List, Optional
import asyncio

from fastapi import APIRouter, Depends, FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
import uvicorn

from core import logger_helper
from core.runtime_module import RuntimeModule
from modules.auth.context import RequestContext
from modules.auth.errors import AuthError, InvalidRequest, ServiceUnavailable
from modules.auth.middleware import (
    client_fingerprint,
    context_or_raise,
    error_response,
    is_public_auth_path,
    require_admin,
    require_auth_middleware,
    require_fresh_auth,
)
from modules.api.security_headers import security_headers_middleware
from modules.api.validation_models import (
    ChangePasswordBody,
    LoginBody,
    PasswordResetBody,
    PasswordResetRequestBody,
    PasswordResetVerifyBody,
    ReauthenticateBody,
    RefreshBody,
    RegisterBody,
)
from modules.monitoring import MonitoringModule


API_TITLE = "GapAuth API"
API_VERSION = "0.1.0"


def current_context(request: Request) -> RequestContext:
    """Dependency: аутентифицированный вызывающий или ошибка гейта."""
    return context_or_raise(request)


def fresh_context(request: Request) -> RequestContext:
    """Dependency: сессия с полным доверием (чувствительные операции)."""
    return require_fresh_auth(context_or_raise(request))


def admin_context(request: Request) -> RequestContext:
    return require_admin(context_or_raise(request))


def _client(request: Request) -> Dict[str, Optional[str]]:
    fingerprint = getattr(request.state, "fingerprint", None) or client_fingerprint(request)
    return {"ip": fingerprint.get("ip"), "user_agent": request.headers.get("user-agent")}


def build_router(runtime: Any) -> APIRouter:
    """Маршруты /api/auth/* и /api/admin/*."""
    router = APIRouter()
    call = runtime.service_registry.call

    @router.post("/api/auth/login", tags=["auth"])
    async def login(body: LoginBody, request: Request) -> Dict[str, Any]:
        return await call(
            "auth.login",
            email=body.email,
            password=body.password,
            challenge_token=body.challenge_token,
            **_client(request),
        )

    @router.post("/api/auth/refresh", tags=["auth"])
    async def refresh(body: RefreshBody, request: Request) -> Dict[str, Any]:
        return await call(
            "auth.refresh",
            refresh_token=body.refresh_token,
            challenge_token=body.challenge_token,
            **_client(request),
        )

    @router.post("/api/auth/register", tags=["auth"], status_code=201)
    async def register(body: RegisterBody, request: Request) -> Dict[str, Any]:
        return await call(
            "auth.register",
            email=body.email,
            password=body.password,
            ip=_client(request)["ip"],
        )

    @router.post("/api/auth/logout", tags=["auth"])
    async def logout(context: RequestContext = Depends(current_context)) -> Dict[str, Any]:
        return await call("auth.logout", session_id=context.session_id)

    @router.post("/api/auth/logout-all", tags=["auth"])
    async def logout_all(context: RequestContext = Depends(current_context)) -> Dict[str, Any]:
        # Доступно и сессии с пониженным доверием: выход везде только снижает риск
        return await call("auth.logout_all", user_id=context.user_id)

    @router.post("/api/auth/password", tags=["auth"])
    async def change_password(
        body: ChangePasswordBody,
        request: Request,
        context: RequestContext = Depends(fresh_context),
    ) -> Dict[str, Any]:
        return await call(
            "auth.change_password",
            user_id=context.user_id,
            old_password=body.old_password,
            new_password=body.new_password,
            current_session_id=context.session_id,
            ip=_client(request)["ip"],
        )

    @router.post("/api/auth/reauthenticate", tags=["auth"])
    async def reauthenticate(
        body: ReauthenticateBody,
        request: Request,
        context: RequestContext = Depends(current_context),
    ) -> Dict[str, Any]:
        return await call(
            "auth.reauthenticate",
            user_id=context.user_id,
            session_id=context.session_id,
            password=body.password,
            **_client(request),
        )

    @router.get("/api/auth/me", tags=["auth"])
    async def me(context: RequestContext = Depends(current_context)) -> Dict[str, Any]:
        result = await call("auth.me", user_id=context.user_id, session_id=context.session_id)
        result["regeneration_due"] = context.regeneration_due
        return result

    @router.get("/api/auth/sessions", tags=["auth"])
    async def list_sessions(context: RequestContext = Depends(current_context)) -> List[Dict[str, Any]]:
        return await call(
            "auth.list_sessions", user_id=context.user_id, current_session_id=context.session_id
        )

    @router.delete("/api/auth/sessions/{session_id}", tags=["auth"])
    async def revoke_session(
        session_id: str = Path(..., min_length=1, max_length=128),
        context: RequestContext = Depends(fresh_context),
    ) -> Dict[str, Any]:
        return await call(
            "auth.revoke_session",
            user_id=context.user_id,
            session_id=session_id,
            current_session_id=context.session_id,
        )

    @router.post("/api/auth/password-reset/request", tags=["auth"])
    async def request_password_reset(body: PasswordResetRequestBody, request: Request) -> Dict[str, Any]:
        return await call(
            "auth.request_password_reset",
            email=body.email,
            challenge_token=body.challenge_token,
            ip=_client(request)["ip"],
        )

    @router.post("/api/auth/password-reset/verify", tags=["auth"])
    async def verify_reset_token(body: PasswordResetVerifyBody, request: Request) -> Dict[str, Any]:
        return await call("auth.verify_reset_token", token=body.token, ip=_client(request)["ip"])

    @router.post("/api/auth/password-reset/confirm", tags=["auth"])
    async def reset_password(body: PasswordResetBody, request: Request) -> Dict[str, Any]:
        return await call(
            "auth.reset_password",
            token=body.token,
            new_password=body.new_password,
            challenge_token=body.challenge_token,
            ip=_client(request)["ip"],
        )

    @router.get("/api/auth/security-events", tags=["auth"])
    async def my_security_events(
        category: Optional[str] = None,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
        context: RequestContext = Depends(current_context),
    ) -> List[Dict[str, Any]]:
        return await call(
            "auth.my_security_events",
            user_id=context.user_id,
            category=category, since=since, until=until, limit=limit, offset=offset,
        )

    @router.get("/api/admin/security/events", tags=["admin"])
    async def security_events(
        category: Optional[str] = None,
        user_id: Optional[str] = None,
        outcome: Optional[str] = None,
        severity: Optional[str] = None,
        ip: Optional[str] = None,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
        context: RequestContext = Depends(admin_context),
    ) -> List[Dict[str, Any]]:
        return await call(
            "auth.security_events",
            category=category, user_id=user_id, outcome=outcome, severity=severity,
            ip=ip, since=since, until=until, limit=limit, offset=offset,
        )

    @router.get("/api/admin/security/metrics", tags=["admin"])
    async def metrics(
        hours: int = Query(24, ge=1, le=720),
        context: RequestContext = Depends(admin_context),
    ) -> Dict[str, Any]:
        return await call("auth.security_metrics", hours=hours)

    @router.get("/api/admin/security/sessions", tags=["admin"])
    async def session_stats(context: RequestContext = Depends(admin_context)) -> Dict[str, Any]:
        return await call("auth.session_stats")

    @router.post("/api/admin/users/{user_id}/unlock", tags=["admin"])
    async def unlock(
        user_id: str = Path(..., min_length=1, max_length=32),
        context: RequestContext = Depends(admin_context),
    ) -> Dict[str, Any]:
        return await call("auth.unlock_account", user_id=user_id, unlocked_by=context.user_id)

    return router


def install_error_handlers(app: FastAPI, runtime: Any) -> None:
    """Типизированные ошибки -> HTTP статусы; прочее -> 500 без подробностей."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()]
        fields = [f for f in fields if f]
        message = f"invalid fields: {', '.join(fields)}" if fields else "invalid request body"
        return error_response(InvalidRequest(message))

    @app.exception_handler(asyncio.TimeoutError)
    async def timeout_handler(request: Request, exc: asyncio.TimeoutError) -> JSONResponse:
        await logger_helper.error(runtime, "Service call timed out", module="api", path=request.url.path)
        return error_response(ServiceUnavailable())

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
        await logger_helper.error(
            runtime, "Unhandled API error", module="api",
            path=request.url.path, error_type=type(exc).__name__,
        )
        return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal server error"})


def install_openapi(app: FastAPI) -> None:
    """OpenAPI схема с Bearer авторизацией на /api/* маршрутах."""

    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema
        openapi_schema = get_openapi(
            title=API_TITLE,
            version=API_VERSION,
            description="Authentication & session security service",
            routes=app.routes,
        )
        openapi_schema.setdefault("components", {})["securitySchemes"] = {
            "BearerAuth": {
                "type": "http",
                "scheme": "bearer",
                "bearerFormat": "JWT",
                "description": "Access token from /api/auth/login",
            }
        }
        for path, path_item in openapi_schema.get("paths", {}).items():
            if not path.startswith("/api/") or is_public_auth_path(path):
                continue
            for method in path_item.keys():
                if method.lower() in ["get", "post", "put", "delete", "patch"]:
                    path_item[method].setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = openapi_schema
        return openapi_schema

    app.openapi = custom_openapi


class ApiModule(RuntimeModule):
    """
    Модуль HTTP boundary.

    FastAPI приложение создаётся в register(); сервер uvicorn запускается
    в start() задачей в том же event loop, что и runtime.
    """

    @property
    def name(self) -> str:
        return "api"

    def __init__(self, runtime: Any):
        super().__init__(runtime)
        self.app: FastAPI | None = None
        self.monitoring: MonitoringModule | None = None
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None

    async def register(self) -> None:
        self.app = FastAPI(title=API_TITLE, version=API_VERSION, openapi_url="/openapi.json")

        # Сохраняем runtime в app.state для доступа из middleware
        self.app.state.runtime = self.runtime

        # Порядок выполнения middleware обратный порядку добавления:
        # CORS -> security headers -> auth gate -> handler
        self.app.middleware("http")(require_auth_middleware)
        self.app.middleware("http")(security_headers_middleware)
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=list(self.runtime.config.cors_allowed_origins or []),
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["Authorization", "Content-Type"],
        )

        install_error_handlers(self.app, self.runtime)
        self.app.include_router(build_router(self.runtime))

        self.monitoring = MonitoringModule(runtime=self.runtime)
        self.app.include_router(self.monitoring.router, prefix="/monitor", tags=["monitoring"])

        install_openapi(self.app)

    async def start(self) -> None:
        if self.app is None:
            return
        if self.monitoring is not None:
            self.monitoring.attach()

        config = self.runtime.config
        if not config.http_enabled:
            return

        server_config = uvicorn.Config(
            self.app,
            host=config.http_host,
            port=config.http_port,
            log_level="info",
            # Логи доступа пишет LoggerModule, не uvicorn
            access_log=False,
        )
        self._server = uvicorn.Server(server_config)
        self._serve_task = asyncio.create_task(self._serve())
        await logger_helper.info(
            self.runtime, "HTTP server starting", module="api",
            host=config.http_host, port=config.http_port,
        )

    async def _serve(self) -> None:
        try:
            await self._server.serve()
        except SystemExit:
            # uvicorn вызывает SystemExit(1) при ошибке привязки порта
            await logger_helper.error(
                self.runtime, "uvicorn exited during startup (port may be in use)", module="api",
            )

    async def stop(self) -> None:
        if self.monitoring is not None:
            self.monitoring.detach()
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            try:
                await asyncio.wait_for(self._serve_task, timeout=self.runtime.config.shutdown_timeout)
            except asyncio.TimeoutError:
                self._serve_task.cancel()
            self._serve_task = None
        self._server = None
