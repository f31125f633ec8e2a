from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from iano_chat.event_interpreter import ProtocolVariant

DEFAULT_API_BASE = "http://127.0.0.1:8080/api"
API_BASE_ENV_VAR = "IANO_API_BASE"
DEFAULT_LOG_FILE = "iano-chat.log"


@dataclass
class AppConfig:
    api_base: str
    agent_id: str
    session_id: str | None
    work_dir: str | None
    protocol: ProtocolVariant
    max_retries: int
    base_delay_seconds: float
    max_delay_seconds: float
    jitter_seconds: float
    request_timeout_seconds: float
    log_level: str
    console_log_level: str
    log_file: str | None
    log_consumers: list | None


def load_json_config(path: Path | None = None) -> dict:
    config_path = path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            return json.load(f)
    return {}


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def parse_app_config(config: dict, environ: dict[str, str] | None = None) -> AppConfig:
    env = os.environ if environ is None else environ
    api_base = env.get(API_BASE_ENV_VAR) or config.get("ApiBase") or DEFAULT_API_BASE
    return AppConfig(
        api_base=str(api_base).rstrip("/"),
        agent_id=str(config.get("AgentId", "default")),
        session_id=_optional_str(config.get("SessionId")),
        work_dir=_optional_str(config.get("WorkDir")),
        protocol=ProtocolVariant.parse(config.get("Protocol", "auto")),
        max_retries=max(0, int(config.get("MaxRetries", 5))),
        base_delay_seconds=float(config.get("BaseDelaySeconds", 1.0)),
        max_delay_seconds=float(config.get("MaxDelaySeconds", 10.0)),
        jitter_seconds=max(0.0, float(config.get("JitterSeconds", 0.5))),
        request_timeout_seconds=float(config.get("RequestTimeoutSeconds", 60)),
        log_level=str(config.get("LogLevel", "INFO")).upper(),
        console_log_level=str(config.get("ConsoleLogLevel", "WARNING")).upper(),
        log_file=_optional_str(config.get("LogFile", DEFAULT_LOG_FILE)),
        log_consumers=config.get("LogConsumers"),
    )
