from __future__ import annotations

import json
import logging
import os

import uvicorn

from unical.config_manager import ConfigManager


class JsonFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))


def main() -> None:
    config_path = os.getenv("UNICAL_CONFIG_PATH", "config.yaml")
    config = ConfigManager(config_path).load()
    setup_logging(os.getenv("UNICAL_LOG_LEVEL", config.logging.level), config.logging.json)
    host = os.getenv("UNICAL_HOST", "0.0.0.0")
    port = int(os.getenv("UNICAL_PORT", "8080"))
    uvicorn.run("unical.web_admin:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
