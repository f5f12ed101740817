from __future__ import annotations

import logging
from threading import Event

from automerger.merge_gateway import MergeGateway
from automerger.models import MergeMethod, PullRequestSnapshot, RetryOutcome
from automerger.observability import log_event
from automerger.retry import raise_if_stopped, run_with_retries


LOGGER = logging.getLogger("automerger.merge_executor")

_REVIEW_REQUIRED_PHRASES = (
    "review is required by reviewers with write access",
    "reviews are required by reviewers with write access",
)


def classify_merge_error(exc: BaseException | None) -> RetryOutcome:
    """Unmet review requirements are terminal; anything else may clear up on its own."""
    message = str(exc) if exc is not None else ""
    if any(phrase in message for phrase in _REVIEW_REQUIRED_PHRASES):
        return "failure"
    return "retry"


def merge_once(
    pull_request: PullRequestSnapshot,
    github: MergeGateway,
    *,
    head_sha: str,
    merge_method: MergeMethod,
    commit_title: str | None,
    stop_event: Event | None = None,
    logger: logging.Logger = LOGGER,
) -> RetryOutcome:
    raise_if_stopped(stop_event, before=f"merging pull request #{pull_request.number}")
    try:
        github.merge_pull_request(
            pull_request.number,
            sha=head_sha,
            merge_method=merge_method,
            commit_title=commit_title,
            commit_message="" if commit_title is not None else None,
        )
    except Exception as exc:  # noqa: BLE001
        outcome = classify_merge_error(exc)
        log_event(
            logger,
            "merge_rejected" if outcome == "failure" else "merge_attempt_failed",
            pr_number=pull_request.number,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return outcome
    return "success"


def try_merge(
    pull_request: PullRequestSnapshot,
    github: MergeGateway,
    *,
    head_sha: str,
    merge_method: MergeMethod,
    commit_title: str | None,
    retries: int,
    sleep_seconds: float,
    stop_event: Event | None = None,
    logger: logging.Logger = LOGGER,
) -> bool:
    pr_number = pull_request.number

    def attempt() -> RetryOutcome:
        return merge_once(
            pull_request,
            github,
            head_sha=head_sha,
            merge_method=merge_method,
            commit_title=commit_title,
            stop_event=stop_event,
            logger=logger,
        )

    def attempt_after_refresh() -> RetryOutcome:
        # A previous merge may have landed even though its response was lost.
        raise_if_stopped(stop_event, before=f"refreshing pull request #{pr_number}")
        try:
            latest = github.get_pull_request(pr_number)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                "merge_refresh_failed",
                pr_number=pr_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return "retry"
        if latest.merged:
            log_event(logger, "merge_already_applied", pr_number=pr_number)
            return "success"
        return attempt()

    def report_exhausted() -> None:
        log_event(logger, "merge_retries_exhausted", pr_number=pr_number, attempts=retries)

    return run_with_retries(
        retries,
        sleep_seconds,
        attempt,
        attempt_after_refresh,
        report_exhausted,
        stop_event=stop_event,
        logger=logger,
    )
