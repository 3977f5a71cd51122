import os
from pathlib import Path

def config_home() -> Path:
    """Directory holding config.yaml, datasources.yaml and history.jsonl."""
    env = os.environ.get("KVLENS_HOME")
    if env:
        return Path(env).expanduser()
    return Path("~/.config/kvlens").expanduser()
