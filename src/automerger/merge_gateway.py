from __future__ import annotations

from abc import ABC, abstractmethod

from automerger.models import Branch, CheckRun, MergeMethod, PullRequestSnapshot, Review


class MergeGateway(ABC):
    """Remote operations the merge workflow needs from the hosting service."""

    @abstractmethod
    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        """Fetch the current state of a pull request."""

    @abstractmethod
    def list_check_runs(self, ref: str) -> tuple[CheckRun, ...]:
        """List check runs reported for a commit sha."""

    @abstractmethod
    def list_reviews(self, pr_number: int) -> tuple[Review, ...]:
        """List submitted reviews in the order the service returns them."""

    @abstractmethod
    def merge_pull_request(
        self,
        pr_number: int,
        *,
        sha: str,
        merge_method: MergeMethod,
        commit_title: str | None,
        commit_message: str | None,
    ) -> None:
        """Merge the pull request; raise with the service's message text on failure."""

    @abstractmethod
    def remove_label(self, issue_number: int, label: str) -> None:
        """Remove one label from an issue or pull request."""

    @abstractmethod
    def get_branch(self, branch: str) -> Branch:
        """Fetch a branch of the repository."""

    @abstractmethod
    def delete_ref(self, ref: str) -> None:
        """Delete a git reference such as ``heads/feature``."""
