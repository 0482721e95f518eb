"""
Application-level exception types.

Every failure raised by the pipeline, the regeneration workflow and the
persistence boundary derives from `AppError` so callers (and the API layer)
can surface a user-friendly `detail` next to the technical message.
"""

from __future__ import annotations

from typing import Iterable


class AppError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        self.detail = detail or message
        super().__init__(message)


class ConfigurationError(AppError):
    """Raised when required configuration is missing or invalid."""


class GenerationError(AppError):
    """Raised when a generation stage cannot produce usable output."""

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        raw_response: str | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.stage = stage
        self.raw_response = raw_response


class SchemaValidationError(GenerationError):
    """Stage output does not match the expected shape (or cannot be parsed)."""

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        raw_response: str | None = None,
        errors: Iterable[str] | None = None,
    ) -> None:
        super().__init__(message, stage=stage, raw_response=raw_response)
        self.errors = list(errors or [])


class GenerationBackendError(GenerationError):
    """Network, timeout or provider failure while calling the generation backend."""


class ReferentialIntegrityWarning(AppError):
    """Advisory raised by the continuity check; attached to results, never thrown."""

    def __init__(self, issues: Iterable[str]) -> None:
        self.issues = list(issues)
        super().__init__(
            f"continuity check rejected the project ({len(self.issues)} issues)",
            detail="continuity issues found",
        )


class ImportFormatError(AppError):
    """Raised when a persisted project document is malformed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, detail="invalid project file")


class ClarificationIncompleteError(AppError):
    """Raised when clarification answers do not cover every outstanding question."""

    def __init__(self, missing: Iterable[str], unexpected: Iterable[str] = ()) -> None:
        self.missing = sorted(missing)
        self.unexpected = sorted(unexpected)
        parts = []
        if self.missing:
            parts.append(f"unanswered questions: {', '.join(self.missing)}")
        if self.unexpected:
            parts.append(f"unknown questions: {', '.join(self.unexpected)}")
        super().__init__(
            "; ".join(parts) or "clarification answers are incomplete",
            detail="every clarification question needs exactly one answer",
        )


class RegenerationBusyError(AppError):
    """Raised when a regeneration is already in flight for the project."""


class InvalidStateTransitionError(AppError):
    """Raised when the regeneration workflow is asked for a transition it does not allow."""


class StaleScenesError(AppError):
    """Raised when scenes are consumed while upstream edits are not regenerated yet."""


class AssetGenerationError(AppError):
    """Raised when reference image generation fails."""


class AssetGenerationInProgressError(AssetGenerationError):
    """Raised when an asset already has an outstanding generation request."""


class DuplicateEntityError(AppError):
    """Raised when an entity id is already in use or was retired."""


class EntityNotFoundError(AppError):
    """Raised when a backbone entity cannot be found."""

    def __init__(self, entity_type: str, entity_id: object) -> None:
        super().__init__(
            f"{entity_type} not found: {entity_id}",
            detail=f"{entity_type} not found",
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
