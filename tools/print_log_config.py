"""Print the effective logging and messaging limits as JSON."""

import json
import logging
import os
import sys

from app.app_logging import load_log_settings

DEFAULT_MAX_MESSAGE_LENGTH = 1000
DEFAULT_MAX_ATTACHMENT_SIZE = 10 * 1024 * 1024


def get_log_config():
    settings = load_log_settings()
    return {
        "log_dir": os.path.abspath(settings.log_dir),
        "log_level": logging.getLevelName(settings.level),
        "log_json": settings.json_lines,
        "retention_days": settings.retention_days,
        "rotate_utc": settings.rotate_utc,
        "log_request_bodies": settings.request_bodies,
    }


def get_messaging_config():
    return {
        "database": "postgresql" if os.getenv("DATABASE_URL") else "in-memory",
        "message_max_length": int(
            os.getenv("MESSAGE_MAX_LENGTH", str(DEFAULT_MAX_MESSAGE_LENGTH))
        ),
        "attachment_max_size": int(
            os.getenv("ATTACHMENT_MAX_SIZE", str(DEFAULT_MAX_ATTACHMENT_SIZE))
        ),
        "upload_dir": os.path.abspath(os.getenv("UPLOAD_DIR", "tmp/uploads")),
    }


def main():
    config = {"logging": get_log_config(), "messaging": get_messaging_config()}
    sys.stdout.write(json.dumps(config, indent=2) + "\n")


if __name__ == "__main__":
    main()
