"""Error reporting helpers shared by services and routes.

Full exception details go to the server log; callers only ever see a short
generic message.
"""

import logging
from typing import NoReturn

from fastapi import HTTPException


def _log(logger_instance: logging.Logger, log_level: str, message: str, error: Exception) -> None:
    log_method = getattr(logger_instance, log_level, logger_instance.error)
    log_method(f"{message}: {type(error).__name__}: {error}", exc_info=True)


def safe_error_response(
    logger_instance: logging.Logger,
    error: Exception,
    user_message: str,
    status_code: int = 500,
    log_level: str = "error",
) -> NoReturn:
    """Log the error server-side and raise an HTTPException with a generic detail.

    Raises:
        HTTPException: With user_message as the detail
    """
    _log(logger_instance, log_level, user_message, error)
    raise HTTPException(status_code=status_code, detail=user_message)


def log_and_continue(
    logger_instance: logging.Logger,
    error: Exception,
    context_message: str,
    log_level: str = "warning",
) -> None:
    """Log a non-critical error and let the caller carry on."""
    _log(logger_instance, log_level, context_message, error)
