"""Logging configuration for the provisioner.

Operator-facing progress goes through the rich console; log records carry
the detail behind it. Inside the reset Job pod the records are the only
trace the operator gets through ``metal-prov logs``, so they are written to
stdout at INFO there.
"""

import logging
import os
import re
import sys
from pathlib import Path

REDACTED = "[REDACTED]"

# Kubeconfig fields that grant cluster access
CREDENTIAL_PATTERN = re.compile(
    r"(?P<key>client-key-data|client-certificate-data|token)(?P<sep>\"?\s*[:=]\s*\"?)[^\s\"',}]+"
)

NOISY_LOGGERS = ("urllib3", "kubernetes", "asyncio")


def running_in_cluster() -> bool:
    """True inside a pod, where the service account environment is injected."""
    return "KUBERNETES_SERVICE_HOST" in os.environ


def redact_credentials(text: str) -> str:
    """Mask kubeconfig credentials that ended up in a log message."""
    return CREDENTIAL_PATTERN.sub(lambda m: f"{m['key']}{m['sep']}{REDACTED}", text)


class CredentialFilter(logging.Filter):
    """Redacts credentials from every record before a handler formats it."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_credentials(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    verbose: bool = False,
    in_cluster: bool | None = None,
) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        verbose: If True, set level to DEBUG
        in_cluster: Running as the reset Job; detected from the environment if None
    """
    if verbose:
        level = "DEBUG"
    if in_cluster is None:
        in_cluster = running_in_cluster()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    credential_filter = CredentialFilter()

    if in_cluster:
        # The kubelet timestamps pod log lines
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        console_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    console_handler.addFilter(credential_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            logging.warning(f"Failed to create log file handler: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
            file_handler.addFilter(credential_filter)
            root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
