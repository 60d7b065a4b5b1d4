from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import orjson
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator


_CHECKOUT_ROOT = Path(__file__).resolve().parents[1]


def project_root() -> Path:
    """Directory holding ``config/``, ``.env``, the journal and the database.

    ``JOBSYNC_HOME`` wins. A source checkout uses itself; an installed copy
    uses the working directory.
    """
    home = os.getenv("JOBSYNC_HOME")
    if home:
        return Path(home).expanduser().resolve()
    if (_CHECKOUT_ROOT / "config" / "config.json").is_file():
        return _CHECKOUT_ROOT
    return Path.cwd()


class _ApiCfg(BaseModel):
    base_url: str
    timeout_s: float = 15

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        v = v.strip()
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError("api.base_url must start with http:// or https://")
        return v.rstrip("/")


class _RetriesCfg(BaseModel):
    max_attempts: int = Field(3, ge=1)
    backoff_initial_ms: int = 300
    backoff_max_ms: int = 3000


class _LifecycleCfg(BaseModel):
    policy: Literal["strict", "permissive"] = "strict"


class _DashboardCfg(BaseModel):
    stale_days: Literal[7, 14, 30] = 14
    next_actions_days: Literal[7, 30] = 7
    activity_days: Literal[7, 30] = 7
    audit_page_size: int = Field(25, ge=1, le=100)


class _JournalCfg(BaseModel):
    base_dir: str = "journal"
    enabled: bool = True


class _RawConfig(BaseModel):
    api: _ApiCfg
    retries: _RetriesCfg = _RetriesCfg()
    lifecycle: Optional[Dict[str, Any]] = None
    dashboard: Optional[Dict[str, Any]] = None
    journal: Optional[Dict[str, Any]] = None


class Settings(BaseModel):
    api_base_url: str = Field(..., description="Base URL of the tracker REST API")
    api_token: Optional[str] = None
    api: Dict[str, Any]
    retries: Dict[str, Any]
    lifecycle: Dict[str, Any]
    dashboard: Dict[str, Any]
    journal_base_dir: str
    journal: Dict[str, Any]

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        root = project_root()
        load_dotenv(dotenv_path=root / ".env", override=False)

        path = config_path or root / "config" / "config.json"
        try:
            raw_bytes = path.read_bytes()
        except FileNotFoundError as e:
            raise FileNotFoundError(f"Missing config file at {path}") from e
        try:
            raw_obj = orjson.loads(raw_bytes)
        except orjson.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file: {path}") from e

        env_url = os.getenv("JOBSYNC_API_BASE_URL")
        if env_url and isinstance(raw_obj, dict):
            raw_obj.setdefault("api", {})["base_url"] = env_url
        env_policy = os.getenv("JOBSYNC_LIFECYCLE_POLICY")
        if env_policy and isinstance(raw_obj, dict):
            raw_obj.setdefault("lifecycle", {})["policy"] = env_policy.strip().lower()

        try:
            validated = _RawConfig.model_validate(raw_obj)
            lifecycle = _LifecycleCfg.model_validate(validated.lifecycle or {})
            dashboard = _DashboardCfg.model_validate(validated.dashboard or {})
            journal = _JournalCfg.model_validate(validated.journal or {})
        except ValidationError as e:
            raise ValueError(f"Invalid config structure: {e}") from e

        return cls(
            api_base_url=validated.api.base_url,
            api_token=os.getenv("JOBSYNC_TOKEN") or None,
            api=validated.api.model_dump(),
            retries=validated.retries.model_dump(),
            lifecycle=lifecycle.model_dump(),
            dashboard=dashboard.model_dump(),
            journal_base_dir=journal.base_dir,
            journal=journal.model_dump(),
        )

    @property
    def cfg_hash(self) -> str:
        from hashlib import sha256

        canonical = orjson.dumps(
            {
                "api": self.api,
                "lifecycle": self.lifecycle,
                "dashboard": self.dashboard,
                "retries": self.retries,
            },
            option=orjson.OPT_SORT_KEYS,
        )
        return sha256(canonical).hexdigest()

    def journal_dir_for(self, session_id: str) -> Path:
        base = Path(self.journal_base_dir)
        # Relative paths hang off the project root
        if not base.is_absolute():
            base = project_root() / base
        session_dir = base / session_id
        session_dir.mkdir(parents=True, exist_ok=True)
        return session_dir


settings = Settings.load()
