import os
import yaml
from typing import Any, Optional


CONFIG_PATH = os.environ.get("TRYON_CONFIG", "configs/orchestration.yaml")


class Settings:
    def __init__(self, cfg: Optional[dict[str, Any]] = None, path: str = CONFIG_PATH) -> None:
        self._cfg: dict[str, Any] = {}
        if cfg is not None:
            self._cfg = cfg
        elif os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                self._cfg = yaml.safe_load(f) or {}

    def get(self, key: str, default: Any = None) -> Any:
        # Env wins over YAML
        env_key = key.upper().replace(".", "_").replace("-", "_")
        if env_key in os.environ:
            return os.environ[env_key]

        # Dot path lookup in YAML
        parts = key.split(".")
        cur: Any = self._cfg
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def get_list(self, key: str, default: Optional[list[str]] = None) -> list[str]:
        value = self.get(key, default)
        if value is None:
            return []
        if isinstance(value, str):
            # Env overrides arrive as comma separated strings
            return [v.strip() for v in value.split(",") if v.strip()]
        return [str(v) for v in value]


settings = Settings()
