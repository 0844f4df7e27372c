"""
Custom exceptions for pyplayground.

Provides specific exception types for better error handling and user feedback.
"""


class PlaygroundError(Exception):
    """Base exception for pyplayground errors."""


class ConfigurationError(PlaygroundError):
    """Error in configuration."""


# Sandbox Errors


class SandboxError(PlaygroundError):
    """Base exception for sandbox errors."""


class ContextStartError(SandboxError):
    """The isolated execution context could not be started."""

    def __init__(self, run_id: str, reason: str):
        super().__init__(f"Failed to start execution context for run {run_id}: {reason}")
        self.run_id = run_id
        self.reason = reason
        self.user_message = "The sandbox could not be started."
        self.recovery_hint = "Check the configured start method and available system resources."


class MessageFormatError(SandboxError):
    """A payload received from the execution context is not a valid message."""


# User Code Errors


class UserCodeError(PlaygroundError):
    """User code raised an error inside the execution context."""

    def __init__(self, message: str, run_id: str | None = None, detail: str | None = None):
        super().__init__(message)
        self.run_id = run_id
        self.detail = detail
        self.user_message = f"Your code raised an error: {message}"
        self.recovery_hint = "Fix the error in your code and run it again."
