from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


RetryOutcome = Literal["success", "failure", "retry"]
MergeMethod = Literal["merge", "squash", "rebase"]


@dataclass(frozen=True)
class RepoRef:
    full_name: str
    owner: str
    name: str


@dataclass(frozen=True)
class HeadRef:
    repo: RepoRef
    sha: str
    ref: str


@dataclass(frozen=True)
class BaseRef:
    repo: RepoRef
    ref: str


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    body: str
    state: str
    merged: bool
    mergeable_state: str | None
    head: HeadRef
    base: BaseRef
    author_login: str
    labels: tuple[str, ...]
    html_url: str = ""

    @property
    def is_fork(self) -> bool:
        return self.head.repo.full_name != self.base.repo.full_name


@dataclass(frozen=True)
class CheckRun:
    name: str
    status: str
    conclusion: str | None


@dataclass(frozen=True)
class Review:
    user_login: str
    state: str


@dataclass(frozen=True)
class Branch:
    name: str
    protected: bool
