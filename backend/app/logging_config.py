"""Logging helpers for the workshop sync backend."""

import logging

_configured = False


def get_logger(name: str) -> logging.Logger:
    """Get a logger, configuring the root handler on first use."""
    global _configured
    if not _configured:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        _configured = True
    return logging.getLogger(name)


def log_sync_operation(
    user_id: str,
    action: str,
    entity_type: str,
    record_id: str,
    success: bool,
    error: str | None = None,
) -> None:
    """Log one applied (or refused) sync record as a single line."""
    logger = logging.getLogger("workshop.sync")
    outcome = "ok" if success else f"FAILED: {error}"
    line = f"SYNC | {user_id} | {action} {entity_type}/{record_id} | {outcome}"
    if success:
        logger.info(line)
    else:
        logger.warning(line)
