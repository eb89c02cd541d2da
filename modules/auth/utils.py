"""
Utility functions — канонические id, fingerprint клиента, разбор user-agent.
"""

import hashlib
import ipaddress
import re
from typing import Any, Dict, Optional

from core.config import Config

from .constants import IPV4_SUBNET_PREFIX, IPV6_SUBNET_PREFIX


_DIGITS = re.compile(r"^[0-9]+$")


def get_config(runtime: Any) -> Config:
    """Config runtime, либо значения по умолчанию."""
    config = getattr(runtime, "config", None)
    if isinstance(config, Config):
        return config
    return Config()


def canonical_id(value: Any) -> str:
    """
    Привести идентификатор к единому каноническому виду (str).

    Числовые id из JSON (int) и из URL/JWT (str) дают одно значение:
    canonical_id(42) == canonical_id("42") == canonical_id("042") == "42".
    Непрозрачные строковые id возвращаются без изменений (после strip).

    Raises:
        TypeError: bool, None и прочие типы
        ValueError: пустая строка, отрицательное или дробное число
    """
    # bool это подкласс int, True не должен превращаться в "1"
    if isinstance(value, bool) or value is None:
        raise TypeError(f"identity id must be int or str, got {type(value).__name__}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"identity id must be non-negative, got {value}")
        return str(value)
    if isinstance(value, float):
        if not value.is_integer() or value < 0:
            raise ValueError(f"identity id must be a whole number, got {value}")
        return str(int(value))
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValueError("identity id must be non-empty")
        if _DIGITS.match(stripped):
            return str(int(stripped))
        return stripped
    raise TypeError(f"identity id must be int or str, got {type(value).__name__}")


def hash_key(*parts: str) -> str:
    """Ключ storage без сырых email/IP: sha256 от частей."""
    joined = "\x1f".join(parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def ip_prefix(ip: Optional[str]) -> Optional[str]:
    """
    Подсеть адреса: /24 для IPv4, /64 для IPv6.

    Невалидный адрес сравнивается как есть.
    """
    if not ip:
        return None
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return ip.strip()
    prefix = IPV4_SUBNET_PREFIX if addr.version == 4 else IPV6_SUBNET_PREFIX
    return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))


def parse_device_info(user_agent: Optional[str]) -> Dict[str, str]:
    """
    Грубый разбор user-agent: браузер, ОС, тип устройства.

    Порядок проверок важен: Edge и Chrome содержат "Safari",
    Android содержит "Linux".
    """
    ua = user_agent or ""
    lowered = ua.lower()

    if "edg/" in lowered or "edge/" in lowered:
        browser = "edge"
    elif "firefox/" in lowered:
        browser = "firefox"
    elif "chrome/" in lowered or "crios/" in lowered:
        browser = "chrome"
    elif "safari/" in lowered:
        browser = "safari"
    elif ua:
        browser = "other"
    else:
        browser = "unknown"

    if "android" in lowered:
        os_name = "android"
    elif "iphone" in lowered or "ipad" in lowered or "ios" in lowered:
        os_name = "ios"
    elif "windows" in lowered:
        os_name = "windows"
    elif "mac os" in lowered or "macintosh" in lowered:
        os_name = "macos"
    elif "linux" in lowered:
        os_name = "linux"
    elif ua:
        os_name = "other"
    else:
        os_name = "unknown"

    if "ipad" in lowered or "tablet" in lowered:
        device_type = "tablet"
    elif "mobile" in lowered or os_name in ("android", "ios"):
        device_type = "mobile"
    else:
        device_type = "desktop"

    return {"browser": browser, "os": os_name, "device_type": device_type}


def ua_family(user_agent: Optional[str]) -> str:
    """Семейство user-agent для fingerprint: "<browser>/<os>"."""
    info = parse_device_info(user_agent)
    return f"{info['browser']}/{info['os']}"


def make_fingerprint(ip: Optional[str], user_agent: Optional[str]) -> Dict[str, Optional[str]]:
    """Fingerprint клиента: точные значения + грубые (подсеть, семейство UA)."""
    return {
        "ip": ip,
        "ip_prefix": ip_prefix(ip),
        "user_agent": (user_agent or "")[:512],
        "ua_family": ua_family(user_agent),
    }


def fingerprint_key(fingerprint: Dict[str, Any]) -> str:
    """Стабильный ключ грубой части fingerprint."""
    return f"{fingerprint.get('ip_prefix')}|{fingerprint.get('ua_family')}"


def fingerprint_changed(stored: Optional[Dict[str, Any]], current: Optional[Dict[str, Any]]) -> bool:
    """
    Существенное изменение: сменилась подсеть или семейство UA.

    Смена адреса внутри подсети и обновление версии браузера — не изменение.
    Неизвестные значения (None) не сравниваются.
    """
    if not stored or not current:
        return False
    for field_name in ("ip_prefix", "ua_family"):
        old, new = stored.get(field_name), current.get(field_name)
        if old and new and old != new:
            return True
    return False
