import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Set

import yaml

LOGGER = logging.getLogger(__name__)

CONFIG_ENV_KEY = "GUILDLINK_CONFIG"
DEFAULT_CONFIG_PATH = "config.yml"
MISSING_TABLE_NAME = "__missing_table_name__"
DEFAULT_NICKNAME = "{name} [{ticker}]"
VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class ConfigError(ValueError):
    pass


@dataclass
class ServiceConfig:
    table_name: str = MISSING_TABLE_NAME
    server_id: int = 0
    bot_token: str = ""
    oauth_redirect_uri: str = ""
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    role_config: Dict[int, Set[int]] = field(default_factory=dict)
    channel_config: Dict[int, Set[int]] = field(default_factory=dict)
    do_not_kick: Set[int] = field(default_factory=set)
    no_nickname_change: Set[int] = field(default_factory=set)
    disable_kicks: bool = False
    nickname: str = DEFAULT_NICKNAME
    log_level: str = "INFO"
    sweep_interval_minutes: int = 60
    service_id: int = 0
    required_groups: Set[int] = field(default_factory=set)

    @property
    def auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bot {self.bot_token}"}

    @property
    def session_state_key(self) -> str:
        return f"__guildlink_{self.service_id}_state"

    def is_complete(self) -> bool:
        return all(
            (
                self.table_name,
                self.table_name != MISSING_TABLE_NAME,
                self.server_id,
                self.bot_token,
                self.oauth_redirect_uri,
                self.oauth_client_id,
                self.oauth_client_secret,
            )
        )


def sanitize_table_name(value: Any) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "", str(value))


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _int_set(values: Any) -> Set[int]:
    if not isinstance(values, (list, tuple, set)):
        return set()
    return {_to_int(v) for v in values}


def _group_mapping(raw: Any, key: str) -> Dict[int, Set[int]]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        LOGGER.warning("Configuration key '%s' must be a mapping, ignoring it", key)
        return {}
    return {_to_int(entity_id): _int_set(group_ids) for entity_id, group_ids in raw.items()}


def parse_config(
    configuration_data: str,
    *,
    service_id: int = 0,
    required_groups: Iterable[int] = (),
) -> ServiceConfig:
    """Parse the YAML configuration blob handed over by the host.

    Missing required values only produce a warning; the returned config then
    carries empty values and the service keeps running.
    """
    try:
        data = yaml.safe_load(configuration_data or "") or {}
    except yaml.YAMLError as exc:
        LOGGER.warning("Configuration is not valid YAML: %s", exc)
        data = {}
    if not isinstance(data, dict):
        LOGGER.warning("Configuration must be a mapping, got %s", type(data).__name__)
        data = {}

    log_level = str(data.get("LogLevel") or "INFO").upper()
    if log_level not in VALID_LOG_LEVELS:
        LOGGER.warning(
            "Invalid LogLevel '%s', must be one of %s", log_level, sorted(VALID_LOG_LEVELS)
        )
        log_level = "INFO"

    config = ServiceConfig(
        table_name=sanitize_table_name(data.get("TableName", MISSING_TABLE_NAME)),
        server_id=_to_int(data.get("ServerId")),
        bot_token=str(data.get("BotToken") or "").strip(),
        oauth_redirect_uri=str(data.get("OAuthRedirectUri") or ""),
        oauth_client_id=str(data.get("OAuthClientId") or ""),
        oauth_client_secret=str(data.get("OAuthClientSecret") or ""),
        role_config=_group_mapping(data.get("Roles"), "Roles"),
        channel_config=_group_mapping(data.get("Channels"), "Channels"),
        do_not_kick=_int_set(data.get("DoNotKick")),
        no_nickname_change=_int_set(data.get("NoNicknameChange")),
        disable_kicks=bool(data.get("DisableKicks", False)),
        nickname=str(data.get("Nickname") or DEFAULT_NICKNAME),
        log_level=log_level,
        sweep_interval_minutes=max(1, _to_int(data.get("SweepIntervalMinutes") or 60)),
        service_id=service_id,
        required_groups={int(g) for g in required_groups},
    )
    if not config.is_complete():
        LOGGER.warning("Configuration is incomplete.")
    return config


def load_config(
    path: str | None = None,
    *,
    service_id: int = 0,
    required_groups: Iterable[int] = (),
) -> ServiceConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            text = fh.read()
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {config_path}: {exc}") from exc
    return parse_config(text, service_id=service_id, required_groups=required_groups)
