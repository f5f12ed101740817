from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
import logging
from threading import Event

from automerger.cleanup import delete_branch, remove_labels
from automerger.commit_message import compose_commit_message, extract_commit_body
from automerger.config import MergePolicy
from automerger.eligibility import should_skip, wait_until_ready
from automerger.merge_executor import try_merge
from automerger.merge_gateway import MergeGateway
from automerger.models import PullRequestSnapshot
from automerger.observability import log_event, log_warning_event
from automerger.retry import MergeCancelledError, raise_if_stopped


LOGGER = logging.getLogger("automerger.orchestrator")


class MergeSkippedError(RuntimeError):
    """A pull request was skipped while ``fail_on_skip`` is enabled."""


@dataclass(frozen=True)
class MergeResult:
    pr_number: int
    merged: bool
    error: str | None = None


class AutoMerger:
    def __init__(
        self,
        policy: MergePolicy,
        *,
        github: MergeGateway,
        stop_event: Event | None = None,
        logger: logging.Logger = LOGGER,
    ) -> None:
        self._policy = policy
        self._github = github
        self._stop_event = stop_event
        self._logger = logger

    def merge_pull_request(self, pr_number: int) -> bool:
        raise_if_stopped(self._stop_event, before=f"fetching pull request #{pr_number}")
        return self.merge_snapshot(self._github.get_pull_request(pr_number))

    def merge_snapshot(self, pull_request: PullRequestSnapshot) -> bool:
        """Merge ``pull_request`` if policy allows; True only when it was merged by this call."""
        policy = self._policy
        pr_number = pull_request.number

        raise_if_stopped(self._stop_event, before="the eligibility check")
        if should_skip(pull_request, policy, self._github, logger=self._logger):
            log_event(self._logger, "merge_skipped", pr_number=pr_number)
            if policy.fail_on_skip:
                raise MergeSkippedError(
                    f"Pull request #{pr_number} is skipped and fail_on_skip is enabled"
                )
            return False

        log_event(
            self._logger,
            "merge_started",
            pr_number=pr_number,
            title=pull_request.title,
            url=pull_request.html_url,
        )
        head_sha = pull_request.head.sha

        raise_if_stopped(self._stop_event, before="waiting for readiness")
        ready = wait_until_ready(
            pull_request,
            self._github,
            retries=policy.retries,
            sleep_seconds=policy.retry_sleep_seconds,
            stop_event=self._stop_event,
            logger=self._logger,
        )
        if not ready:
            return False

        pull_request = extract_commit_body(pull_request, policy.commit_message_regex)

        if policy.filter_author and pull_request.author_login != policy.filter_author:
            log_event(
                self._logger,
                "author_filter_mismatch",
                pr_number=pr_number,
                author=pull_request.author_login,
                expected=policy.filter_author,
            )
            return False

        commit_title = compose_commit_message(policy.commit_message, pull_request)
        raise_if_stopped(self._stop_event, before="merging")
        merged = try_merge(
            pull_request,
            self._github,
            head_sha=head_sha,
            merge_method=policy.method,
            commit_title=commit_title,
            retries=policy.retries,
            sleep_seconds=policy.retry_sleep_seconds,
            stop_event=self._stop_event,
            logger=self._logger,
        )
        if not merged:
            return False

        log_event(self._logger, "pull_request_merged", pr_number=pr_number, head_sha=head_sha)

        if self._stop_event is not None and self._stop_event.is_set():
            # Merge already landed; report it and leave labels and branch untouched.
            log_warning_event(self._logger, "cleanup_cancelled", pr_number=pr_number)
            return True
        if policy.remove_labels:
            remove_labels(pull_request, self._github, policy.remove_labels, logger=self._logger)
        if policy.delete_branch:
            delete_branch(pull_request, self._github, logger=self._logger)

        return True

    def run(self, pr_numbers: tuple[int, ...], *, workers: int = 1) -> tuple[MergeResult, ...]:
        """Process pull requests concurrently; each one's fatal error is reported, not raised."""
        if workers < 1:
            raise ValueError("workers must be >= 1")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="automerger") as pool:
            futures: list[tuple[int, Future[bool]]] = [
                (pr_number, pool.submit(self.merge_pull_request, pr_number))
                for pr_number in pr_numbers
            ]
            results: list[MergeResult] = []
            try:
                for pr_number, future in futures:
                    try:
                        merged = future.result()
                    except Exception as exc:  # noqa: BLE001
                        cancelled = isinstance(exc, MergeCancelledError)
                        log_warning_event(
                            self._logger,
                            "merge_cancelled" if cancelled else "merge_failed",
                            pr_number=pr_number,
                            error_type=type(exc).__name__,
                            error=str(exc),
                        )
                        results.append(
                            MergeResult(pr_number=pr_number, merged=False, error=str(exc))
                        )
                        continue
                    results.append(MergeResult(pr_number=pr_number, merged=merged))
            except KeyboardInterrupt:
                if self._stop_event is not None:
                    self._stop_event.set()
                raise
        return tuple(results)
