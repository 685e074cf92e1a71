"""Error taxonomy for the analysis pipeline."""
from __future__ import annotations


class PrismError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(PrismError):
    """Missing credentials or an unconfigured collaborator."""


class InputValidationError(PrismError):
    """Client input is malformed or incomplete.

    ``message`` is the user-facing (Japanese) text returned in the 400 body.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PromptTemplateError(PrismError, KeyError):
    """A template references a placeholder its phase does not supply."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class GenerationError(PrismError):
    """A model call failed after its retry budget was exhausted."""

    def __init__(self, message: str, *, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class ResearchAgentError(PrismError):
    """The long-running research agent failed or produced no report."""
