from __future__ import annotations

import dataclasses
import re

from automerger.config import COMMIT_MESSAGE_AUTOMATIC
from automerger.models import PullRequestSnapshot


MODE_TITLE = "pull-request-title"
MODE_DESCRIPTION = "pull-request-description"
MODE_TITLE_AND_DESCRIPTION = "pull-request-title-and-description"


class CommitMessageConfigError(ValueError):
    pass


def extract_commit_body(
    pull_request: PullRequestSnapshot, pattern: str | None
) -> PullRequestSnapshot:
    """Replace the body with the first capturing group of ``pattern`` when it matches."""
    if not pattern:
        return pull_request
    try:
        compiled = re.compile(pattern, re.IGNORECASE | re.MULTILINE | re.DOTALL)
    except re.error as exc:
        raise CommitMessageConfigError(f"Invalid commit message regex {pattern!r}: {exc}") from exc
    match = compiled.search(pull_request.body)
    if match is None:
        return pull_request
    if compiled.groups < 1:
        raise CommitMessageConfigError(
            f"Commit message regex must contain a capturing group: {pattern!r}"
        )
    extracted = match.group(1) or ""
    return dataclasses.replace(pull_request, body=extracted.strip())


def compose_commit_message(mode: str, pull_request: PullRequestSnapshot) -> str | None:
    if mode == COMMIT_MESSAGE_AUTOMATIC:
        return None
    if mode == MODE_TITLE:
        return pull_request.title
    if mode == MODE_DESCRIPTION:
        return pull_request.body
    if mode == MODE_TITLE_AND_DESCRIPTION:
        return f"{pull_request.title}\n\n{pull_request.body}"
    return (
        mode.replace("{pullRequest.number}", str(pull_request.number))
        .replace("{pullRequest.title}", pull_request.title)
        .replace("{pullRequest.body}", pull_request.body)
    )
