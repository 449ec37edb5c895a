import logging
from logging.handlers import RotatingFileHandler

from esglite.core.settings import get_settings

# Create logger
auth_logger = logging.getLogger("esglite.auth")
auth_logger.setLevel(logging.INFO)

# Prevent duplicate handlers
if not auth_logger.handlers:
    # Rotating file handler: max 5 MB per file, keep 3 backups
    file_handler = RotatingFileHandler(
        get_settings().auth_log_file, maxBytes=5 * 1024 * 1024, backupCount=3, delay=True
    )
    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    file_handler.setFormatter(formatter)
    auth_logger.addHandler(file_handler)


def mask_identifier(identifier: str | None) -> str:
    """Log-safe form of an email/login: keeps the domain, hides most of the local part."""
    if not identifier:
        return "-"
    local, sep, domain = identifier.partition("@")
    head = local[:2] if len(local) > 2 else local[:1]
    return f"{head}***{sep}{domain}"
