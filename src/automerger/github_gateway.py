from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import cast
from urllib.parse import quote, urlencode

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
from automerger.observability import log_event
from automerger.shell import CommandError, run


LOGGER = logging.getLogger("automerger.github_gateway")
_PAGE_SIZE = 100


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub read failure; caller may retry on the next attempt."""


class GitHubApiError(RuntimeError):
    """A GitHub write request failed; the message carries GitHub's explanation."""

    def __init__(self, message: str, *, path: str) -> None:
        super().__init__(message)
        self.path = path


@dataclass(frozen=True)
class GitHubGateway(MergeGateway):
    owner: str
    name: str
    command_timeout_seconds: float | None = 60.0
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")

        head = _as_object_dict(payload_obj.get("head"))
        base = _as_object_dict(payload_obj.get("base"))
        if head is None or base is None:
            raise RuntimeError("Unexpected GitHub response: missing pull request head/base")

        user_obj = _as_object_dict(payload_obj.get("user"))
        snapshot = PullRequestSnapshot(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            body=_as_string(payload_obj.get("body")),
            state=_as_string(payload_obj.get("state")),
            merged=_as_bool(payload_obj.get("merged", False)),
            mergeable_state=_as_optional_str(payload_obj.get("mergeable_state")),
            head=HeadRef(
                repo=_parse_repo_ref(head.get("repo")),
                sha=_as_string(head.get("sha")),
                ref=_as_string(head.get("ref")),
            ),
            base=BaseRef(
                repo=_parse_repo_ref(base.get("repo")),
                ref=_as_string(base.get("ref")),
            ),
            author_login=_as_string(user_obj.get("login") if user_obj else None),
            labels=_parse_label_names(payload_obj.get("labels")),
            html_url=_as_string(payload_obj.get("html_url")),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
            mergeable_state=snapshot.mergeable_state,
        )
        return snapshot

    def list_check_runs(self, ref: str) -> tuple[CheckRun, ...]:
        runs: list[CheckRun] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/commits/{ref}/check-runs?{query}"
            payload_obj = _as_object_dict(self._api_json("GET", path))
            if payload_obj is None:
                raise RuntimeError("Unexpected GitHub response: expected object for check runs")
            runs_payload = payload_obj.get("check_runs")
            if not isinstance(runs_payload, list):
                raise RuntimeError("Unexpected GitHub response: expected check_runs list")

            for item in runs_payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                runs.append(
                    CheckRun(
                        name=_as_string(item_obj.get("name")),
                        status=_as_string(item_obj.get("status")),
                        conclusion=_as_optional_str(item_obj.get("conclusion")),
                    )
                )
            if len(runs_payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="check_runs",
            ref=ref,
            count=len(runs),
        )
        return tuple(runs)

    def list_reviews(self, pr_number: int) -> tuple[Review, ...]:
        reviews: list[Review] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/reviews?{query}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of reviews")

            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                user_obj = _as_object_dict(item_obj.get("user"))
                reviews.append(
                    Review(
                        user_login=_as_string(user_obj.get("login") if user_obj else None),
                        state=_as_string(item_obj.get("state")),
                    )
                )
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_reviews",
            pr_number=pr_number,
            count=len(reviews),
        )
        return tuple(reviews)

    def merge_pull_request(
        self,
        pr_number: int,
        *,
        sha: str,
        merge_method: MergeMethod,
        commit_title: str | None,
        commit_message: str | None,
    ) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/merge"
        payload: dict[str, object] = {"sha": sha, "merge_method": merge_method}
        if commit_title is not None:
            payload["commit_title"] = commit_title
        if commit_message is not None:
            payload["commit_message"] = commit_message
        self._write("PUT", path, payload=payload, failure_event="github_merge_failed")
        log_event(
            LOGGER,
            "github_merge_requested",
            repo_full_name=self.full_name,
            pr_number=pr_number,
            sha=sha,
            merge_method=merge_method,
        )

    def remove_label(self, issue_number: int, label: str) -> None:
        encoded_label = quote(label, safe="")
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels/{encoded_label}"
        self._write("DELETE", path, failure_event="github_label_remove_failed")
        log_event(LOGGER, "github_label_removed", issue_number=issue_number, label=label)

    def get_branch(self, branch: str) -> Branch:
        path = f"/repos/{self.owner}/{self.name}/branches/{quote(branch, safe='')}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for branch")
        parsed = Branch(
            name=_as_string(payload_obj.get("name")),
            protected=_as_bool(payload_obj.get("protected", False)),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="branch",
            branch=parsed.name,
            protected=parsed.protected,
        )
        return parsed

    def delete_ref(self, ref: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/git/refs/{quote(ref, safe='/')}"
        self._write("DELETE", path, failure_event="github_ref_delete_failed")
        log_event(LOGGER, "github_ref_deleted", repo_full_name=self.full_name, ref=ref)

    def _write(
        self,
        method: str,
        path: str,
        *,
        failure_event: str,
        payload: dict[str, object] | None = None,
    ) -> object:
        try:
            return self._api_json(method, path, payload=payload)
        except CommandError as exc:
            message = _extract_error_message(exc)
            log_event(
                LOGGER,
                failure_event,
                repo_full_name=self.full_name,
                path=path,
                error=message,
            )
            raise GitHubApiError(message, path=path) from exc

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper]
            etag = self._etags_by_path.get(path)
            if etag:
                cmd.extend(["--header", f"If-None-Match: {etag}"])
            cmd.extend(["--include", path])

            raw = ""
            try:
                raw = run(cmd, check=False, timeout_seconds=self.command_timeout_seconds)
                status_code, headers, body = _parse_http_response(raw)

                if status_code == 304:
                    cached_payload = self._cached_get_payload_by_path.get(path)
                    if cached_payload is None:
                        raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                    return cached_payload

                if status_code < 200 or status_code >= 300:
                    message = body.strip() or "<empty>"
                    raise RuntimeError(
                        f"GitHub API request failed with status {status_code}: {message}"
                    )

                payload_obj = json.loads(body)
                etag = headers.get("etag")
                if etag:
                    self._etags_by_path[path] = etag
                    self._cached_get_payload_by_path[path] = payload_obj
                return payload_obj
            except Exception as exc:
                log_event(
                    LOGGER,
                    "github_get_failed",
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise GitHubPollingError(f"GitHub GET failed for path {path}: {exc}") from exc

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, timeout_seconds=self.command_timeout_seconds)
        if not raw.strip():
            return None
        return json.loads(raw)


def _extract_error_message(exc: CommandError) -> str:
    # gh prints the response body on stdout and "gh: <message> (HTTP nnn)" on stderr.
    try:
        body = json.loads(exc.stdout) if exc.stdout.strip() else None
    except json.JSONDecodeError:
        body = None
    body_obj = _as_object_dict(body)
    if body_obj is not None:
        message = body_obj.get("message")
        if isinstance(message, str) and message:
            return message
    stderr = exc.stderr.strip()
    if stderr.startswith("gh: "):
        stderr = stderr[len("gh: ") :]
    return stderr or str(exc)


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _parse_repo_ref(value: object) -> RepoRef:
    # A deleted fork comes back as "repo": null.
    repo_obj = _as_object_dict(value)
    if repo_obj is None:
        return RepoRef(full_name="", owner="", name="")
    owner_obj = _as_object_dict(repo_obj.get("owner"))
    return RepoRef(
        full_name=_as_string(repo_obj.get("full_name")),
        owner=_as_string(owner_obj.get("login") if owner_obj else None),
        name=_as_string(repo_obj.get("name")),
    )


def _parse_label_names(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    names: list[str] = []
    for entry in value:
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        name = entry_obj.get("name")
        if isinstance(name, str):
            names.append(name)
    return tuple(names)


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    raise RuntimeError("Unexpected GitHub response type for bool field")
