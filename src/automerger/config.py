from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
import tomllib
from typing import cast

from automerger.models import MergeMethod


COMMIT_MESSAGE_AUTOMATIC = "automatic"
_MERGE_METHODS: tuple[MergeMethod, ...] = ("merge", "squash", "rebase")


@dataclass(frozen=True)
class RuntimeConfig:
    verbose: bool | str | None = None
    log_dir: Path | None = None
    workers: int = 1
    timeout_seconds: float | None = None


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class LabelPolicy:
    required: tuple[str, ...] = ()
    blocking: tuple[str, ...] = ()


@dataclass(frozen=True)
class MergePolicy:
    labels: LabelPolicy = LabelPolicy(required=("automerge",))
    remove_labels: tuple[str, ...] = ()
    required_checks: tuple[str, ...] = ()
    require_approval: bool = False
    method: MergeMethod = "merge"
    commit_message: str = COMMIT_MESSAGE_AUTOMATIC
    commit_message_regex: str | None = None
    filter_author: str | None = None
    forks: bool = True
    delete_branch: bool = False
    retries: int = 6
    retry_sleep_seconds: float = 5.0
    fail_on_skip: bool = False


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repo: RepoConfig
    merge: MergePolicy


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _optional_table(data, "runtime") or {}
    repo_data = _require_table(data, "repo")
    merge_data = _optional_table(data, "merge") or {}

    runtime = RuntimeConfig(
        verbose=_verbose_with_default(runtime_data, "verbose", None),
        log_dir=_optional_path(runtime_data, "log_dir"),
        workers=_int_with_default(runtime_data, "workers", 1),
        timeout_seconds=_optional_positive_float(runtime_data, "timeout_seconds"),
    )
    if runtime.workers < 1:
        raise ConfigError("runtime.workers must be >= 1")

    repo = RepoConfig(
        owner=_require_str(repo_data, "owner"),
        name=_require_str(repo_data, "name"),
    )

    return AppConfig(runtime=runtime, repo=repo, merge=parse_merge_policy(merge_data))


def parse_merge_policy(data: dict[str, object]) -> MergePolicy:
    defaults = MergePolicy()
    labels = (
        parse_label_policy(_labels_value(data, "labels")) if "labels" in data else defaults.labels
    )
    policy = MergePolicy(
        labels=labels,
        remove_labels=_labels_value(data, "remove_labels") if "remove_labels" in data else (),
        required_checks=_tuple_of_str_with_default(data, "required_checks", ()),
        require_approval=_bool_with_default(data, "require_approval", defaults.require_approval),
        method=_merge_method_with_default(data, "method", defaults.method),
        commit_message=_str_with_default(data, "commit_message", defaults.commit_message),
        commit_message_regex=_optional_str(data, "commit_message_regex"),
        filter_author=_optional_str(data, "filter_author"),
        forks=_bool_with_default(data, "forks", defaults.forks),
        delete_branch=_bool_with_default(data, "delete_branch", defaults.delete_branch),
        retries=_int_with_default(data, "retries", defaults.retries),
        retry_sleep_seconds=_float_with_default(
            data, "retry_sleep_seconds", defaults.retry_sleep_seconds
        ),
        fail_on_skip=_bool_with_default(data, "fail_on_skip", defaults.fail_on_skip),
    )

    if policy.retries < 1:
        raise ConfigError("merge.retries must be >= 1")
    if policy.retry_sleep_seconds < 0:
        raise ConfigError("merge.retry_sleep_seconds must be >= 0")
    if policy.commit_message_regex is not None:
        _validate_commit_message_regex(policy.commit_message_regex)
    return policy


def parse_label_policy(entries: tuple[str, ...]) -> LabelPolicy:
    """Split label entries into required and blocking labels.

    An entry prefixed with ``!`` names a blocking label; every other entry is required.
    """
    required: list[str] = []
    blocking: list[str] = []
    for entry in entries:
        if entry.startswith("!"):
            name = entry[1:].strip()
            if not name:
                raise ConfigError("merge.labels entries must name a label after '!'")
            if name not in blocking:
                blocking.append(name)
        elif entry not in required:
            required.append(entry)
    overlap = sorted(set(required) & set(blocking))
    if overlap:
        raise ConfigError(
            f"merge.labels lists labels as both required and blocking: {', '.join(overlap)}"
        )
    return LabelPolicy(required=tuple(required), blocking=tuple(blocking))


def _validate_commit_message_regex(pattern: str) -> None:
    # A missing capturing group only matters once the pattern matches a body.
    try:
        re.compile(pattern)
    except re.error as exc:
        raise ConfigError(f"merge.commit_message_regex is not a valid pattern: {exc}") from exc


def _labels_value(data: dict[str, object], key: str) -> tuple[str, ...]:
    # Accepts either a TOML list or the comma separated form "automerge,!wip".
    value = data.get(key)
    if isinstance(value, str):
        items = [item.strip() for item in value.split(",")]
        return tuple(item for item in items if item)
    labels = _tuple_of_str(data, key)
    if any(not label.strip() for label in labels):
        raise ConfigError(f"{key} entries must be non-empty strings")
    return tuple(label.strip() for label in labels)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _optional_positive_float(data: dict[str, object], key: str) -> float | None:
    if key not in data:
        return None
    value = _float_with_default(data, key, 0.0)
    if value <= 0:
        raise ConfigError(f"{key} must be > 0 if provided")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    return _tuple_of_str(data, key)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()


def _merge_method_with_default(
    data: dict[str, object], key: str, default: MergeMethod
) -> MergeMethod:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: {', '.join(_MERGE_METHODS)}")
    normalized = value.strip().lower()
    if normalized not in _MERGE_METHODS:
        raise ConfigError(f"{key} must be one of: {', '.join(_MERGE_METHODS)}")
    return cast(MergeMethod, normalized)


def _verbose_with_default(
    data: dict[str, object], key: str, default: bool | str | None
) -> bool | str | None:
    value = data.get(key, default)
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"low", "high"}:
        return value.strip().lower()
    raise ConfigError(f"{key} must be a boolean or one of: low, high")
