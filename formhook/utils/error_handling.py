"""Error reporting helpers shared by routers and the dispatch path.

Routers turn unexpected failures into a generic message for the dashboard
while the traceback goes to the server log (CWE-209). The dispatch path logs
per-webhook failures and carries on, so one broken endpoint cannot affect
the event source or the other webhooks.
"""

import logging

from fastapi import HTTPException

from formhook.utils.security import sanitize_log_message


def _log(logger_instance: logging.Logger, level: str, message: str, error: Exception) -> None:
    emit = getattr(logger_instance, level, None) or logger_instance.error
    emit(f"{sanitize_log_message(message)}: {type(error).__name__}", exc_info=error)


def safe_error_response(
    logger_instance: logging.Logger,
    error: Exception,
    user_message: str,
    status_code: int = 500,
    log_level: str = "error",
) -> None:
    """Log the failure with its traceback and raise an HTTPException carrying only ``user_message``.

    Raises:
        HTTPException: Always
    """
    _log(logger_instance, log_level, user_message, error)
    raise HTTPException(status_code=status_code, detail=user_message)


def log_and_continue(
    logger_instance: logging.Logger,
    error: Exception,
    context_message: str,
    log_level: str = "warning",
) -> None:
    """Record a failure that the caller deliberately absorbs.

    Example:
        >>> try:
        ...     await delivery_executor.dispatch(db, webhook, event)
        ... except Exception as e:
        ...     log_and_continue(logger, e, f"Dispatch to webhook {webhook.id} failed", "error")
    """
    _log(logger_instance, log_level, context_message, error)
