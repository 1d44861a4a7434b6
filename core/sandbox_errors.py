"""Error taxonomy for execution-target failures.

Every provider or transport failure is mapped onto a closed set of
categories; callers decide retry and user messaging from the category only.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

import aiohttp
from e2b import (
    AuthenticationException,
    InvalidArgumentException,
    NotEnoughSpaceException,
    NotFoundException,
    RateLimitException,
    SandboxException,
    TemplateException,
    TimeoutException,
)
from e2b.sandbox.commands.command_handle import CommandExitException


class ErrorCategory(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    RATE_LIMIT = "rate_limit"
    DISK_SPACE = "disk_space"
    COMMAND_FAILURE = "command_failure"
    UNKNOWN = "unknown"


RETRY_EXHAUSTED_MESSAGE = "The sandbox is temporarily unavailable. Please try again in a moment."

# Quirks of the provider where only the message identifies the failure
_PERMANENT_MESSAGES = ("not running anymore", "Sandbox not found")

_USER_MESSAGES = (
    (AuthenticationException,
     "Sandbox authentication failed. The sandbox API key may be invalid or expired. Please contact support."),
    (RateLimitException, "Sandbox API rate limit exceeded. Please wait a moment and try again."),
    (NotEnoughSpaceException,
     "Sandbox disk space is full. Try removing unnecessary files or deleting the sandbox."),
    (TemplateException, "Sandbox template is incompatible. Please contact support."),
    (TimeoutException, "Sandbox operation timed out. The sandbox may be overloaded. Please try again."),
    (NotFoundException, "Sandbox was not found or has expired. A new sandbox will be created automatically."),
    (InvalidArgumentException, "Invalid sandbox configuration. Please contact support."),
)


class SandboxExecutionError(Exception):
    """Normalized failure raised by execution targets."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 user_message: Optional[str] = None):
        super().__init__(message)
        self.category = category
        self.user_message = user_message or RETRY_EXHAUSTED_MESSAGE


class TargetUnavailableError(SandboxExecutionError):
    """The target is gone or disconnected; nothing was executed."""

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message, ErrorCategory.PERMANENT, user_message or message)


class DuplicateProcessError(ValueError):
    """A (sandbox, pid) pair is already tracked."""


def classify(error: BaseException) -> ErrorCategory:
    """Map an exception onto an ErrorCategory."""
    if isinstance(error, SandboxExecutionError):
        return error.category
    if isinstance(error, CommandExitException):
        return ErrorCategory.COMMAND_FAILURE
    if isinstance(error, (AuthenticationException, TemplateException,
                          InvalidArgumentException)):
        return ErrorCategory.PERMANENT
    if isinstance(error, RateLimitException):
        return ErrorCategory.RATE_LIMIT
    if isinstance(error, NotEnoughSpaceException):
        return ErrorCategory.DISK_SPACE
    if isinstance(error, NotFoundException):
        return ErrorCategory.PERMANENT
    if isinstance(error, (TimeoutException, asyncio.TimeoutError)):
        return ErrorCategory.TRANSIENT
    if isinstance(error, SandboxException):
        return ErrorCategory.TRANSIENT
    if isinstance(error, aiohttp.ClientError):
        return ErrorCategory.TRANSIENT

    text = str(error)
    if any(marker in text for marker in _PERMANENT_MESSAGES):
        return ErrorCategory.PERMANENT
    return ErrorCategory.UNKNOWN


def is_permanent(error: BaseException) -> bool:
    """Permanent failures and completed-but-failed commands are never retried."""
    return classify(error) in (ErrorCategory.PERMANENT, ErrorCategory.COMMAND_FAILURE)


def is_rate_limited(error: BaseException) -> bool:
    return classify(error) == ErrorCategory.RATE_LIMIT


def is_retryable(error: BaseException) -> bool:
    return classify(error) in (ErrorCategory.TRANSIENT, ErrorCategory.RATE_LIMIT)


def user_message(error: BaseException) -> Optional[str]:
    """User-facing text for a recognized provider error, else None."""
    if isinstance(error, SandboxExecutionError):
        return error.user_message
    for exc_type, message in _USER_MESSAGES:
        if isinstance(error, exc_type):
            return message
    return None


def normalize(error: BaseException, context: str = "") -> SandboxExecutionError:
    """Wrap any failure in a SandboxExecutionError carrying its category."""
    if isinstance(error, SandboxExecutionError):
        return error
    category = classify(error)
    text = str(error).strip() or error.__class__.__name__
    message = f"{context}: {text}" if context else text
    return SandboxExecutionError(message, category, user_message(error))
