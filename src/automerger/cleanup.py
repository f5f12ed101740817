from __future__ import annotations

import logging

from automerger.merge_gateway import MergeGateway
from automerger.models import PullRequestSnapshot
from automerger.observability import log_event, log_warning_event


LOGGER = logging.getLogger("automerger.cleanup")


def remove_labels(
    pull_request: PullRequestSnapshot,
    github: MergeGateway,
    labels_to_remove: tuple[str, ...],
    *,
    logger: logging.Logger = LOGGER,
) -> tuple[str, ...]:
    """Remove configured labels the pull request carries; return the ones removed."""
    matching = tuple(label for label in pull_request.labels if label in labels_to_remove)
    if not matching:
        log_event(logger, "labels_remove_skipped", pr_number=pull_request.number)
        return ()

    removed: list[str] = []
    try:
        for label in matching:
            github.remove_label(pull_request.number, label)
            removed.append(label)
    except Exception as exc:  # noqa: BLE001
        log_warning_event(
            logger,
            "labels_remove_failed",
            pr_number=pull_request.number,
            labels=matching,
            removed=tuple(removed),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return tuple(removed)

    log_event(logger, "labels_removed", pr_number=pull_request.number, labels=tuple(removed))
    return tuple(removed)


def delete_branch(
    pull_request: PullRequestSnapshot,
    github: MergeGateway,
    *,
    logger: logging.Logger = LOGGER,
) -> bool:
    """Delete the merged head branch unless it lives in a fork or is protected."""
    pr_number = pull_request.number
    if pull_request.is_fork:
        log_event(
            logger,
            "branch_delete_skipped",
            pr_number=pr_number,
            reason="fork",
            head_repo=pull_request.head.repo.full_name,
        )
        return False

    try:
        branch = github.get_branch(pull_request.head.ref)
        if branch.protected:
            log_event(
                logger,
                "branch_delete_skipped",
                pr_number=pr_number,
                reason="protected",
                branch=branch.name,
            )
            return False
        github.delete_ref(f"heads/{branch.name}")
    except Exception as exc:  # noqa: BLE001
        log_warning_event(
            logger,
            "branch_delete_failed",
            pr_number=pr_number,
            branch=pull_request.head.ref,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False

    log_event(logger, "branch_deleted", pr_number=pr_number, branch=branch.name)
    return True
