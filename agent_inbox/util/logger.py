import logging, json, sys, os

ROOT = "agent_inbox"


class JsonFormatter(logging.Formatter):
    def format(self, record):
        d = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "lvl": record.levelname,
            "msg": record.getMessage(),
            "name": record.name,
        }
        # log.info("sent", {"to": ...}) merges the dict into the line
        if record.args and isinstance(record.args, dict):
            d.update(record.args)
        if record.exc_info:
            d["exc"] = self.formatException(record.exc_info)
        return json.dumps(d, ensure_ascii=False, default=str)


def _level(name):
    return getattr(logging, (name or "INFO").upper(), logging.INFO)


def get_logger(name=ROOT):
    # one stdout handler on the package logger; module loggers propagate to it
    root = logging.getLogger(ROOT)
    if not root.handlers:
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(JsonFormatter())
        root.addHandler(h)
        root.setLevel(_level(os.getenv("LOG_LEVEL", "INFO")))
    return logging.getLogger(name)


def configure(level="INFO"):
    root = get_logger(ROOT)
    root.setLevel(_level(level))
    return root
