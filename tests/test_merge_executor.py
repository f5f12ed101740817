from __future__ import annotations

import dataclasses
from threading import Event

import pytest

from automerger.github_gateway import GitHubApiError, GitHubPollingError
from automerger.merge_executor import classify_merge_error, merge_once, try_merge
from automerger.merge_gateway import MergeGateway
from automerger.models import (
    BaseRef,
    Branch,
    CheckRun,
    HeadRef,
    MergeMethod,
    PullRequestSnapshot,
    RepoRef,
    Review,
)
from automerger.observability import configure_logging
from automerger.retry import MergeCancelledError


_REPO = RepoRef(full_name="octo/widgets", owner="octo", name="widgets")
_PR = PullRequestSnapshot(
    number=12,
    title="Add feature",
    body="Body",
    state="open",
    merged=False,
    mergeable_state="clean",
    head=HeadRef(repo=_REPO, sha="head-sha", ref="feature"),
    base=BaseRef(repo=_REPO, ref="main"),
    author_login="alice",
    labels=(),
)
_REVIEW_REQUIRED = "At least 1 approving review is required by reviewers with write access."


class MergingGitHub(MergeGateway):
    def __init__(self, merge_errors: list[Exception | None]) -> None:
        self.merge_errors = list(merge_errors)
        self.merge_calls: list[dict[str, object]] = []
        self.refreshed: list[PullRequestSnapshot | Exception] = []
        self.get_calls = 0

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        _ = pr_number
        self.get_calls += 1
        item = self.refreshed.pop(0) if self.refreshed else _PR
        if isinstance(item, Exception):
            raise item
        return item

    def list_check_runs(self, ref: str) -> tuple[CheckRun, ...]:
        raise AssertionError("unused")

    def list_reviews(self, pr_number: int) -> tuple[Review, ...]:
        raise AssertionError("unused")

    def merge_pull_request(
        self,
        pr_number: int,
        *,
        sha: str,
        merge_method: MergeMethod,
        commit_title: str | None,
        commit_message: str | None,
    ) -> None:
        self.merge_calls.append(
            {
                "pr_number": pr_number,
                "sha": sha,
                "merge_method": merge_method,
                "commit_title": commit_title,
                "commit_message": commit_message,
            }
        )
        error = self.merge_errors.pop(0) if self.merge_errors else None
        if error is not None:
            raise error

    def remove_label(self, issue_number: int, label: str) -> None:
        raise AssertionError("unused")

    def get_branch(self, branch: str) -> Branch:
        raise AssertionError("unused")

    def delete_ref(self, ref: str) -> None:
        raise AssertionError("unused")


@pytest.mark.parametrize(
    "message",
    [
        _REVIEW_REQUIRED,
        "2 of 2 required reviews are required by reviewers with write access.",
    ],
)
def test_review_requirement_errors_are_terminal(message: str) -> None:
    assert classify_merge_error(GitHubApiError(message, path="/merge")) == "failure"


@pytest.mark.parametrize(
    "message",
    [
        "Base branch was modified. Review and try the merge again.",
        "API rate limit exceeded",
        "Pull Request is not mergeable",
        "",
    ],
)
def test_other_errors_are_transient(message: str) -> None:
    assert classify_merge_error(RuntimeError(message)) == "retry"


def test_missing_error_is_transient() -> None:
    assert classify_merge_error(None) == "retry"


def test_merge_once_sends_title_with_empty_message() -> None:
    github = MergingGitHub([None])

    outcome = merge_once(
        _PR, github, head_sha="head-sha", merge_method="squash", commit_title="Add feature"
    )

    assert outcome == "success"
    assert github.merge_calls == [
        {
            "pr_number": 12,
            "sha": "head-sha",
            "merge_method": "squash",
            "commit_title": "Add feature",
            "commit_message": "",
        }
    ]


def test_merge_once_omits_message_for_automatic_title() -> None:
    github = MergingGitHub([None])

    merge_once(_PR, github, head_sha="head-sha", merge_method="merge", commit_title=None)

    assert github.merge_calls[0]["commit_title"] is None
    assert github.merge_calls[0]["commit_message"] is None


def test_try_merge_succeeds_immediately_without_refresh() -> None:
    github = MergingGitHub([None])

    merged = try_merge(
        _PR,
        github,
        head_sha="head-sha",
        merge_method="merge",
        commit_title=None,
        retries=3,
        sleep_seconds=0,
    )

    assert merged is True
    assert github.get_calls == 0
    assert len(github.merge_calls) == 1


def test_try_merge_terminal_failure_does_not_retry(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    github = MergingGitHub([GitHubApiError(_REVIEW_REQUIRED, path="/merge")])

    merged = try_merge(
        _PR,
        github,
        head_sha="head-sha",
        merge_method="merge",
        commit_title=None,
        retries=5,
        sleep_seconds=0,
    )

    assert merged is False
    assert len(github.merge_calls) == 1
    assert github.get_calls == 0
    assert "event=merge_rejected" in capsys.readouterr().err


def test_try_merge_retries_transient_errors_after_refresh() -> None:
    github = MergingGitHub([RuntimeError("Base branch was modified"), None])

    merged = try_merge(
        _PR,
        github,
        head_sha="head-sha",
        merge_method="rebase",
        commit_title=None,
        retries=3,
        sleep_seconds=0,
    )

    assert merged is True
    assert len(github.merge_calls) == 2
    assert github.get_calls == 1


def test_try_merge_treats_already_merged_refresh_as_success() -> None:
    github = MergingGitHub([RuntimeError("connection reset")])
    github.refreshed = [dataclasses.replace(_PR, merged=True)]

    merged = try_merge(
        _PR,
        github,
        head_sha="head-sha",
        merge_method="merge",
        commit_title=None,
        retries=3,
        sleep_seconds=0,
    )

    assert merged is True
    assert len(github.merge_calls) == 1


def test_try_merge_refresh_failure_counts_as_retry() -> None:
    github = MergingGitHub([RuntimeError("timeout"), None])
    github.refreshed = [GitHubPollingError("GET failed"), _PR]

    merged = try_merge(
        _PR,
        github,
        head_sha="head-sha",
        merge_method="merge",
        commit_title=None,
        retries=3,
        sleep_seconds=0,
    )

    assert merged is True
    assert github.get_calls == 2
    assert len(github.merge_calls) == 2


def test_try_merge_gives_up_after_retries(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    github = MergingGitHub([RuntimeError("Base branch was modified")] * 3)

    merged = try_merge(
        _PR,
        github,
        head_sha="head-sha",
        merge_method="merge",
        commit_title=None,
        retries=3,
        sleep_seconds=0,
    )

    assert merged is False
    assert len(github.merge_calls) == 3
    assert "event=merge_retries_exhausted attempts=3 pr_number=12" in capsys.readouterr().err


def test_merge_once_does_not_call_merge_after_stop() -> None:
    github = MergingGitHub([None])
    stop_event = Event()
    stop_event.set()

    with pytest.raises(MergeCancelledError, match="before merging pull request #12"):
        merge_once(
            _PR,
            github,
            head_sha="head-sha",
            merge_method="merge",
            commit_title=None,
            stop_event=stop_event,
        )
    assert github.merge_calls == []
