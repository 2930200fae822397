import logging
import uvicorn
import os
from logging.handlers import RotatingFileHandler
from datetime import datetime

from camp_checkin.api.http import create_app
from camp_checkin.config import AppConfig

config = AppConfig.load_from_env()

# Create the log directory if missing
log_dir = config.log_dir
os.makedirs(log_dir, exist_ok=True)

# Central logging configuration
log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
date_format = "%Y-%m-%d %H:%M:%S"
log_level = getattr(logging, config.log_level, logging.INFO)

root_logger = logging.getLogger()
root_logger.setLevel(log_level)

# Console handler
console_handler = logging.StreamHandler()
console_handler.setLevel(log_level)
console_handler.setFormatter(logging.Formatter(log_format, date_format))

# Rotating file handler (10MB per file, 5 backups)
log_file = os.path.join(log_dir, "camp_checkin.log")
file_handler = RotatingFileHandler(
    log_file,
    maxBytes=10 * 1024 * 1024,  # 10MB
    backupCount=5,
    encoding='utf-8'
)
file_handler.setLevel(log_level)
file_handler.setFormatter(logging.Formatter(log_format, date_format))

root_logger.addHandler(console_handler)
root_logger.addHandler(file_handler)

logging.info(f"Logging configured. Log file: {log_file}")
logging.info(f"Application started at {datetime.now().strftime(date_format)}")

app = create_app(config=config)

if __name__ == "__main__":
    # In production the process manager (systemd, docker, etc.) starts this
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
