from __future__ import annotations


class MisfitError(Exception):
    """Base class for every failure raised by the engine."""


class ValidationError(MisfitError, ValueError):
    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [message])

    @classmethod
    def from_problems(cls, title: str, problems: list[str]) -> "ValidationError":
        bullet = "\n".join(f"  - {p}" for p in problems)
        return cls(f"{title}:\n{bullet}", problems)


class MalformedKeyPath(ValidationError):
    pass


class PayloadCollision(ValidationError):
    pass


class StepIOError(MisfitError, OSError):
    pass


class PatchError(MisfitError):
    pass


class MissingPatchTarget(PatchError):
    pass


class MissingEndMarker(PatchError):
    pass


class CommandError(MisfitError):
    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class BackupError(MisfitError, OSError):
    pass


class RestoreError(MisfitError):
    pass


class NoBackupFound(RestoreError):
    pass


class BuildError(MisfitError):
    pass


class Cancelled(MisfitError):
    """The operator declined a confirmation; nothing further was applied."""


class StepFailed(MisfitError):
    """A manifest step failed; the run halted at ``index``."""

    def __init__(self, index: int, kind: str, cause: BaseException) -> None:
        super().__init__(f"Step {index + 1} ({kind}) failed: {cause}")
        self.index = index
        self.kind = kind
        self.cause = cause
