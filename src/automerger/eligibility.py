from __future__ import annotations

import logging
from threading import Event

from automerger.config import MergePolicy
from automerger.merge_gateway import MergeGateway
from automerger.models import PullRequestSnapshot, RetryOutcome
from automerger.observability import log_event
from automerger.retry import raise_if_stopped, run_with_retries


LOGGER = logging.getLogger("automerger.eligibility")

MAYBE_READY_STATES = frozenset({"clean", "has_hooks", "unknown", "unstable"})
NOT_READY_STATES = frozenset({"dirty", "draft"})
SUCCESS_CONCLUSION = "success"
APPROVED_REVIEW_STATE = "APPROVED"


def should_skip(
    pull_request: PullRequestSnapshot,
    policy: MergePolicy,
    github: MergeGateway,
    *,
    logger: logging.Logger = LOGGER,
) -> bool:
    """Return True when the pull request must never be merged by this run.

    Every rule is evaluated so each reason is logged, not only the first.
    """
    pr_number = pull_request.number
    skip = False

    if pull_request.state != "open":
        log_event(
            logger,
            "skip_reason",
            pr_number=pr_number,
            reason="not_open",
            state=pull_request.state,
        )
        skip = True

    if pull_request.merged:
        log_event(logger, "skip_reason", pr_number=pr_number, reason="already_merged")
        skip = True

    if pull_request.is_fork and not policy.forks:
        log_event(
            logger,
            "skip_reason",
            pr_number=pr_number,
            reason="fork_not_allowed",
            head_repo=pull_request.head.repo.full_name,
        )
        skip = True

    labels = set(pull_request.labels)
    for label in policy.labels.blocking:
        if label in labels:
            log_event(
                logger,
                "skip_reason",
                pr_number=pr_number,
                reason="blocking_label",
                label=label,
            )
            skip = True

    for label in policy.labels.required:
        if label not in labels:
            log_event(
                logger,
                "skip_reason",
                pr_number=pr_number,
                reason="missing_label",
                label=label,
            )
            skip = True

    if policy.required_checks and not _required_checks_pass(
        pull_request, policy.required_checks, github, logger=logger
    ):
        skip = True

    if policy.require_approval and not _has_approval(pull_request, github, logger=logger):
        skip = True

    return skip


def _required_checks_pass(
    pull_request: PullRequestSnapshot,
    required_checks: tuple[str, ...],
    github: MergeGateway,
    *,
    logger: logging.Logger,
) -> bool:
    pr_number = pull_request.number
    try:
        check_runs = github.list_check_runs(pull_request.head.sha)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            "skip_reason",
            pr_number=pr_number,
            reason="check_runs_unavailable",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False

    passed = True
    for required in required_checks:
        matching = [run for run in check_runs if run.name == required]
        if not matching:
            log_event(
                logger,
                "skip_reason",
                pr_number=pr_number,
                reason="check_missing",
                check=required,
            )
            passed = False
            continue
        for check_run in matching:
            if check_run.conclusion != SUCCESS_CONCLUSION:
                log_event(
                    logger,
                    "skip_reason",
                    pr_number=pr_number,
                    reason="check_not_successful",
                    check=required,
                    status=check_run.status,
                    conclusion=check_run.conclusion,
                )
                passed = False
    return passed


def _has_approval(
    pull_request: PullRequestSnapshot,
    github: MergeGateway,
    *,
    logger: logging.Logger,
) -> bool:
    pr_number = pull_request.number
    try:
        reviews = github.list_reviews(pr_number)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            "skip_reason",
            pr_number=pr_number,
            reason="reviews_unavailable",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False

    # Counts every APPROVED entry, including ones a later review from the same user superseded.
    approvers = [review.user_login for review in reviews if review.state == APPROVED_REVIEW_STATE]
    if not approvers:
        log_event(logger, "skip_reason", pr_number=pr_number, reason="approval_missing")
        return False
    log_event(
        logger,
        "approvals_found",
        pr_number=pr_number,
        count=len(approvers),
        approvers=approvers,
    )
    return True


def classify_mergeable_state(mergeable_state: str | None) -> RetryOutcome:
    if mergeable_state is None or mergeable_state in MAYBE_READY_STATES:
        return "success"
    if mergeable_state in NOT_READY_STATES:
        return "failure"
    return "retry"


def check_ready(
    pull_request: PullRequestSnapshot, *, logger: logging.Logger = LOGGER
) -> RetryOutcome:
    outcome = classify_mergeable_state(pull_request.mergeable_state)
    log_event(
        logger,
        "readiness_checked",
        pr_number=pull_request.number,
        mergeable_state=pull_request.mergeable_state,
        outcome=outcome,
    )
    return outcome


def wait_until_ready(
    pull_request: PullRequestSnapshot,
    github: MergeGateway,
    *,
    retries: int,
    sleep_seconds: float,
    stop_event: Event | None = None,
    logger: logging.Logger = LOGGER,
) -> bool:
    pr_number = pull_request.number

    def check_latest() -> RetryOutcome:
        raise_if_stopped(stop_event, before=f"refreshing pull request #{pr_number}")
        try:
            latest = github.get_pull_request(pr_number)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                "readiness_refresh_failed",
                pr_number=pr_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return "retry"
        return check_ready(latest, logger=logger)

    def report_exhausted() -> None:
        log_event(logger, "pull_request_not_ready", pr_number=pr_number, attempts=retries)

    return run_with_retries(
        retries,
        sleep_seconds,
        lambda: check_ready(pull_request, logger=logger),
        check_latest,
        report_exhausted,
        stop_event=stop_event,
        logger=logger,
    )
