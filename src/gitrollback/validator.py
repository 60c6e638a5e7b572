"""Pre-rollback validation of the requested target."""

from __future__ import annotations

from dataclasses import dataclass

from gitrollback.git import GitCommandError, GitRepository
from gitrollback.models import ErrorKind

__all__ = ["RollbackValidator", "ValidationResult"]


@dataclass(frozen=True)
class ValidationResult:
    """Verdict of RollbackValidator.

    On success target_sha and head_sha are set and error_kind is None.
    """

    valid: bool
    message: str
    target_sha: str | None = None
    head_sha: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def invalid(cls, message: str, *, head_sha: str | None = None, kind: ErrorKind | None = None) -> ValidationResult:
        return cls(
            valid=False,
            message=message,
            head_sha=head_sha,
            error_kind=kind or ErrorKind.INVALID_ROLLBACK_TARGET,
        )


class RollbackValidator:
    """Check that a target resolves to a commit that is an ancestor of HEAD.

    Read-only: it never changes the repository. Rolling back must move
    backward along history; a target on an unrelated branch is refused so a
    rollback can never silently roll "forward" into other work. HEAD itself
    is accepted (a commit is its own ancestor) so a repeated request becomes
    a no-op downstream.
    """

    def __init__(self, repo: GitRepository) -> None:
        self._repo = repo

    async def validate(self, target_ref: str, head_ref: str = "HEAD") -> ValidationResult:
        if not target_ref or not target_ref.strip():
            return ValidationResult.invalid("Rollback target is empty")

        try:
            head_sha = await self._repo.resolve(head_ref)
            if head_sha is None:
                return ValidationResult.invalid(f"Current state {head_ref!r} does not resolve to a commit")

            target_sha = await self._repo.resolve(target_ref.strip())
            if target_sha is None:
                return ValidationResult.invalid(
                    f"Rollback target {target_ref!r} does not resolve to an existing commit", head_sha=head_sha
                )

            if not await self._repo.is_ancestor(target_sha, head_sha):
                return ValidationResult.invalid(
                    f"Rollback target {target_ref!r} ({target_sha[:12]}) is not an ancestor of "
                    f"{head_ref} ({head_sha[:12]})",
                    head_sha=head_sha,
                )
        except GitCommandError as e:
            return ValidationResult.invalid(str(e), kind=ErrorKind.GIT_OPERATION_FAILED)
        except (OSError, ValueError) as e:
            return ValidationResult.invalid(f"{type(e).__name__}: {e}", kind=ErrorKind.GIT_OPERATION_FAILED)

        return ValidationResult(
            valid=True,
            message=f"Target {target_sha[:12]} is an ancestor of {head_sha[:12]}",
            target_sha=target_sha,
            head_sha=head_sha,
        )
