import json
import os
import time
import yaml
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from pydantic import ValidationError
from ..config.loader import load_yaml
from ..config.schema import DataSourceCfg
from ..util.errors import ConfigError
from ..util.types import Result, ErrorInfo
from ..util.logging import log


class HistoryStore:
    """Console history persisted as JSONL, one {"ts", "cmd"} record per line."""

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> List[str]:
        """Load persisted commands, oldest first."""
        records: List[str] = []
        if not os.path.exists(self.path):
            return records
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                        records.append(str(data["cmd"]))
                    except Exception as e:
                        log("WARN", "history_store", "parse_line_failed", error=str(e))
        except OSError as e:
            log("ERROR", "history_store", "load_failed", error=str(e))
        return records

    def save(self, records: List[str], limit: int) -> Result[None]:
        """Rewrite the file with the newest `limit` records."""
        if limit <= 0:
            return Result(ok=True)
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            tmp = self.path + ".tmp"
            now = time.time()
            with open(tmp, 'w', encoding='utf-8') as f:
                for cmd in records[-limit:]:
                    f.write(json.dumps({"ts": now, "cmd": cmd}, ensure_ascii=False) + '\n')
            os.replace(tmp, self.path)
            log("DEBUG", "history_store", "saved", count=min(len(records), limit))
            return Result(ok=True)
        except OSError as e:
            log("ERROR", "history_store", "save_failed", error=str(e))
            return Result(ok=False, error=ErrorInfo("history.save_failed", str(e)))


class DataSourceStore:
    """Saved data sources in YAML: {default: name, sources: {name: {...}}}."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def load(self) -> Tuple[Optional[str], Dict[str, DataSourceCfg]]:
        raw = load_yaml(self.path)
        sources: Dict[str, DataSourceCfg] = {}
        for name, body in (raw.get("sources") or {}).items():
            try:
                sources[name] = DataSourceCfg(name=name, **(body or {}))
            except (ValidationError, TypeError) as e:
                raise ConfigError(f"{self.path}: source '{name}': {e}") from e
        default = raw.get("default")
        if default is not None and default not in sources:
            raise ConfigError(f"{self.path}: default source '{default}' is not defined")
        return default, sources

    def save(self, default: Optional[str], sources: Dict[str, DataSourceCfg]) -> Result[None]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            body = {
                "default": default,
                "sources": {name: cfg.model_dump(exclude={"name"}, exclude_none=True)
                            for name, cfg in sources.items()},
            }
            self.path.write_text(yaml.safe_dump(body, sort_keys=True), encoding="utf-8")
            return Result(ok=True)
        except OSError as e:
            log("ERROR", "datasource_store", "save_failed", error=str(e))
            return Result(ok=False, error=ErrorInfo("config.save_failed", str(e)))
