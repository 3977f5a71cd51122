import yaml
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import ValidationError
from .schema import AppCfg
from ..util.errors import ConfigError
from ..util.paths import config_home
from ..util.logging import log

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, return empty dict if file doesn't exist."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: invalid YAML: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data

def load_app_config(path: Optional[str] = None) -> AppCfg:
    """Load config.yaml from the given path or the config home."""
    cfg_path = Path(path).expanduser() if path else config_home() / "config.yaml"
    raw = load_yaml(cfg_path)
    try:
        cfg = AppCfg(**raw)
    except ValidationError as e:
        raise ConfigError(f"{cfg_path}: {e}") from e
    log("DEBUG", "config", "loaded", path=str(cfg_path), keys=sorted(raw.keys()))
    return cfg
