"""Error taxonomy shared by the store, git, container and step layers.

Every error carries a stable ``code`` (used by the JSON API and CLI) and an
``output`` attribute holding raw diagnostic text from an external tool, when
there is one.
"""

from __future__ import annotations


class ForgeError(Exception):
    code = "INTERNAL"

    def __init__(self, message: str, *, output: str = ""):
        super().__init__(message)
        self.output = output


class NotFound(ForgeError):
    """A task, review, step or agent configuration does not exist."""

    code = "NOT_FOUND"


class InvalidTransition(ForgeError):
    """A status change would violate the task invariants."""

    code = "INVALID_TRANSITION"


class AlreadyLeased(ForgeError):
    """The task is held by another step."""

    code = "ALREADY_LEASED"

    def __init__(self, task_id: int, holder_step_id: int):
        super().__init__(f"Task {task_id} is already leased by step {holder_step_id}")
        self.task_id = task_id
        self.holder_step_id = holder_step_id


class ConstraintViolation(ForgeError):
    """A foreign key or check constraint rejected a write."""

    code = "CONSTRAINT_VIOLATION"


class Unauthorized(ForgeError):
    code = "UNAUTHORIZED"


# -- git layer --


class GitError(ForgeError):
    code = "GIT_ERROR"


class NotARepository(GitError):
    code = "NOT_A_REPOSITORY"


class WorktreeCreationFailed(GitError):
    code = "WORKTREE_CREATION_FAILED"


class MergeConflict(GitError):
    code = "MERGE_CONFLICT"

    def __init__(self, source_branch: str, target_branch: str, *, output: str = ""):
        super().__init__(
            f"Merge conflict merging '{source_branch}' into '{target_branch}'", output=output
        )
        self.source_branch = source_branch
        self.target_branch = target_branch


class MergeFailed(GitError):
    code = "MERGE_FAILED"


# -- container layer --


class ContainerError(ForgeError):
    code = "CONTAINER_ERROR"


class ImageUnavailable(ContainerError):
    code = "IMAGE_UNAVAILABLE"


class ContainerStartFailed(ContainerError):
    code = "CONTAINER_START_FAILED"


class ContainerTimeout(ContainerError):
    code = "TIMEOUT"
