import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "TASKMARKET_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class AccountsConfig(BaseModel):
    treasury_account: str = "treasury"
    escrow_account: str = "escrow"
    advisor_account: str = "scholar"


class PollingConfig(BaseModel):
    interval_s: float = 3.0
    bid_timeout_s: float = 300.0
    deliverable_timeout_s: float = 300.0
    expected_bids: Optional[int] = None


class ConsultationConfig(BaseModel):
    enabled: bool = True
    offered_fee: float = 5.0
    default_fee: float = 5.0
    quote_timeout_s: float = 60.0
    answer_timeout_s: float = 120.0
    short_answer_timeout_s: float = 10.0
    question_template: str = "What should a {role} focus on when working on {task_ref}?"
    fallback_answer: str = (
        "No advisor answer arrived in time. Start from the primary source, state assumptions "
        "explicitly and flag anything that needs domain review."
    )


class SettlementConfig(BaseModel):
    # Fraction of the score-weighted price paid to a role that ran out of revisions unapproved.
    exhausted_payment_ratio: float = 0.0
    record_reputation: bool = True


class EscrowConfig(BaseModel):
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    treasury_balance: float = 10000.0
    timeout_s: float = 30.0


class ReputationConfig(BaseModel):
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_s: float = 30.0


class DispatchConfig(BaseModel):
    enabled: bool = False
    # Role -> agent process name; roles missing here dispatch under their own name.
    agents: Dict[str, str] = Field(default_factory=dict)
    command: List[str] = Field(
        default_factory=lambda: ["openclaw", "agent", "--agent", "{agent}", "--message", "{prompt}"]
    )
    cooldown_s: float = 30.0
    slot_release_s: float = 45.0
    watch_interval_s: float = 3.0


class AppSettings(BaseModel):
    database_path: str = "taskmarket.db"
    host: str = "0.0.0.0"
    port: int = 4000
    log_topic: str = "task-marketplace"
    roles: List[str] = Field(default_factory=lambda: ["analyst", "architect"])
    advisor_role: str = "scholar"
    max_revisions: int = 2
    accounts: AccountsConfig = Field(default_factory=AccountsConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    consultation: ConsultationConfig = Field(default_factory=ConsultationConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    escrow: EscrowConfig = Field(default_factory=EscrowConfig)
    reputation: ReputationConfig = Field(default_factory=ReputationConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for section in ("escrow", "reputation"):
            if data.get(section, {}).get("api_key"):
                data[section]["api_key"] = "********"
        return data


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_topic": os.getenv("LOG_TOPIC"),
        "roles": os.getenv("MARKET_ROLES"),
        "advisor_role": os.getenv("ADVISOR_ROLE"),
        "max_revisions": os.getenv("MAX_REVISIONS"),
        "escrow_base_url": os.getenv("ESCROW_BASE_URL"),
        "escrow_api_key": os.getenv("ESCROW_API_KEY"),
        "reputation_base_url": os.getenv("REPUTATION_BASE_URL"),
        "reputation_api_key": os.getenv("REPUTATION_API_KEY"),
        "dispatch_enabled": os.getenv("DISPATCH_ENABLED"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "max_revisions" in cleaned:
        cleaned["max_revisions"] = int(cleaned["max_revisions"])
    if "roles" in cleaned:
        cleaned["roles"] = [r.strip() for r in cleaned["roles"].split(",") if r.strip()]
    # Flat env keys map onto nested sections.
    for section in ("escrow", "reputation"):
        nested: Dict[str, Any] = {}
        for field in ("base_url", "api_key"):
            value = cleaned.pop(f"{section}_{field}", None)
            if value:
                nested[field] = value
        if nested:
            cleaned[section] = nested
    if "dispatch_enabled" in cleaned:
        enabled = str(cleaned.pop("dispatch_enabled")).lower() in ENV_OVERRIDE_TRUE
        cleaned["dispatch"] = {"enabled": enabled}
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge_sections(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = _merge_sections(file_data, env_data)
    else:
        merged = _merge_sections(env_data, file_data)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
