import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _env_var_as_float(name: str, *, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_var_as_int(name: str, *, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value > 0 else default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_api_keys(value: str) -> dict[str, str]:
    keys: dict[str, str] = {}
    for item in _parse_env_list(value):
        key, sep, user_id = item.partition(":")
        if not sep or not key.strip() or not user_id.strip():
            logger.warning("ignoring malformed GATEWAY_INBOUND_API_KEYS entry")
            continue
        keys[key.strip()] = user_id.strip()
    return keys


@dataclass(frozen=True)
class Settings:
    config_dir: str = "config"
    encryption_key: str | None = field(default=None, repr=False)
    trace_dir: str = "traces"
    upstream_timeout: float = 60.0
    stream_idle_timeout: float = 60.0
    stream_queue_size: int = 64
    user_header: str = "x-user-id"
    inbound_api_keys: dict[str, str] = field(default_factory=dict, repr=False)
    cors_allow_origins: list[str] = field(default_factory=list)
    trace_partial_on_cancel: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            config_dir=os.environ.get("GATEWAY_CONFIG_DIR", "config"),
            encryption_key=os.environ.get("GATEWAY_ENCRYPTION_KEY") or None,
            trace_dir=os.environ.get("GATEWAY_TRACE_DIR", "traces"),
            upstream_timeout=_env_var_as_float("GATEWAY_UPSTREAM_TIMEOUT", default=60.0),
            stream_idle_timeout=_env_var_as_float("GATEWAY_STREAM_IDLE_TIMEOUT", default=60.0),
            stream_queue_size=_env_var_as_int("GATEWAY_STREAM_QUEUE_SIZE", default=64),
            user_header=os.environ.get("GATEWAY_USER_HEADER", "x-user-id").strip().lower()
            or "x-user-id",
            inbound_api_keys=_parse_api_keys(os.environ.get("GATEWAY_INBOUND_API_KEYS", "")),
            cors_allow_origins=_parse_env_list(os.environ.get("GATEWAY_CORS_ALLOW_ORIGINS", "")),
            trace_partial_on_cancel=_env_var_as_bool(
                "GATEWAY_TRACE_PARTIAL_ON_CANCEL", default=True
            ),
        )
