import json, sys, time, os
from .secrets import redact, redact_dict

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}

def enabled(lvl: str) -> bool:
    threshold = _LEVELS.get(os.getenv("KVLENS_LOG_LEVEL", "INFO").upper(), 20)
    return _LEVELS.get(lvl, 20) >= threshold

def log(lvl: str, where: str, msg: str, **kw):
    if not enabled(lvl):
        return

    # Redact sensitive information from log data
    redacted_kw = redact_dict(kw)

    if os.getenv("KVLENS_LOG_FORMAT", "json") == "json":
        rec = {"ts": time.time(), "lvl": lvl, "where": where, "msg": msg}
        rec.update(redacted_kw)
        line = json.dumps(rec, ensure_ascii=False, default=str) + "\n"
    else:
        line = f"[{lvl}] {where}: {redact(msg)} {redacted_kw}\n"

    path = os.getenv("KVLENS_LOG_FILE")
    if path:
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)
    else:
        sys.stdout.write(line)
        sys.stdout.flush()
