from .logger import LoggerModule
from .auth import AuthModule
from .api import ApiModule
from .monitoring import MonitoringModule

__all__ = ["LoggerModule", "AuthModule", "ApiModule", "MonitoringModule"]
