"""
patchflow — configuration schema and validation.

Purpose
- Define authoritative configuration defaults and strict validation rules.
- Freeze the validated payload into immutable settings objects that are passed
  explicitly to the sync engine, the reconciler, and the sweeper.

What should be included in this file
- Validation rules for required fields, types, and enums.
- Deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject embedded review-host tokens; tokens are read from the env var named by
  ``token_env``.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Final, TypedDict

from patchflow.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_HOME_DIR,
    DEFAULT_PROTECTED_BRANCH_PREFIXES,
    DEFAULT_STAGING_BRANCH_TEMPLATE,
    DEFAULT_TICKET_DESC,
    LEGACY_STATE_FILE_NAME,
    REPO_REGISTRY_FILE_NAME,
    STATE_DB_FILE_NAME,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
DEFAULT_TOKEN_ENV: Final[str] = "PATCHFLOW_REVIEW_TOKEN"

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "private", "credential", "credentials"}
)


class PatchConfig(TypedDict):
    dev_branch: str
    target_branches: list[str]
    planned_target_branches: list[str]
    branch_alias: dict[str, str]
    ticket_id: str
    ticket_desc: str
    tracker_projects: list[str]
    staging_branch_template: str
    run_post_merge_hooks: bool
    current_project: str


class RepoConfig(TypedDict, total=False):
    url: str
    path: str
    create_review: bool
    auto_merge_branches: list[str]
    post_merge_hooks: dict[str, list[str]]


class ReviewHostConfig(TypedDict):
    base_url: str
    token_env: str


class PatchflowConfig(TypedDict):
    meta: dict[str, int]
    home_dir: str
    log_level: str
    protected_branch_prefixes: list[str]
    review_hosts: list[ReviewHostConfig]
    repos: dict[str, RepoConfig]
    patch: PatchConfig


DEFAULT_CONFIG: Final[PatchflowConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "home_dir": str(DEFAULT_HOME_DIR),
    "log_level": "INFO",
    "protected_branch_prefixes": list(DEFAULT_PROTECTED_BRANCH_PREFIXES),
    "review_hosts": [],
    "repos": {},
    "patch": {
        "dev_branch": "",
        "target_branches": [],
        "planned_target_branches": [],
        "branch_alias": {},
        "ticket_id": "",
        "ticket_desc": DEFAULT_TICKET_DESC,
        "tracker_projects": [],
        "staging_branch_template": DEFAULT_STAGING_BRANCH_TEMPLATE,
        "run_post_merge_hooks": True,
        "current_project": "",
    },
}

_REPO_DEFAULTS: Final[RepoConfig] = {
    "url": "",
    "path": "",
    "create_review": True,
    "auto_merge_branches": [],
    "post_merge_hooks": {},
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


# ----- Settings -----


@dataclass(frozen=True, slots=True)
class ReviewHostSettings:
    base_url: str
    token_env: str = DEFAULT_TOKEN_ENV
    token: str = field(default="", repr=False)

    def matches(self, url: str) -> bool:
        return bool(self.base_url) and url.startswith(self.base_url)


@dataclass(frozen=True, slots=True)
class RepoSettings:
    """Explicit repository handle: local working copy plus its remote address."""

    name: str
    url: str = ""
    path: str = ""
    create_review: bool = True
    auto_merge_branches: tuple[str, ...] = ()
    post_merge_hooks: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def hooks_for(self, target_branch: str) -> tuple[str, ...]:
        return tuple(self.post_merge_hooks.get(target_branch, ()))

    def auto_merges(self, target_branch: str) -> bool:
        return target_branch in self.auto_merge_branches


@dataclass(frozen=True, slots=True)
class PatchSettings:
    dev_branch: str = ""
    target_branches: tuple[str, ...] = ()
    planned_target_branches: tuple[str, ...] = ()
    branch_alias: Mapping[str, str] = field(default_factory=dict)
    ticket_id: str = ""
    ticket_desc: str = DEFAULT_TICKET_DESC
    tracker_projects: tuple[str, ...] = ()
    staging_branch_template: str = DEFAULT_STAGING_BRANCH_TEMPLATE
    run_post_merge_hooks: bool = True
    current_project: str = ""


@dataclass(frozen=True, slots=True)
class PatchflowSettings:
    """Immutable effective configuration for one process run."""

    home_dir: Path
    log_level: str = "INFO"
    protected_branch_prefixes: tuple[str, ...] = DEFAULT_PROTECTED_BRANCH_PREFIXES
    review_hosts: tuple[ReviewHostSettings, ...] = ()
    repos: Mapping[str, RepoSettings] = field(default_factory=dict)
    patch: PatchSettings = field(default_factory=PatchSettings)

    @property
    def state_db_path(self) -> Path:
        return self.home_dir / STATE_DB_FILE_NAME

    @property
    def legacy_state_path(self) -> Path:
        return self.home_dir / LEGACY_STATE_FILE_NAME

    @property
    def repo_registry_path(self) -> Path:
        return self.home_dir / REPO_REGISTRY_FILE_NAME

    @property
    def log_dir(self) -> Path:
        return self.home_dir / "logs"

    def repo(self, name: str) -> RepoSettings | None:
        return self.repos.get(name)

    def review_host_for(self, url: str) -> ReviewHostSettings | None:
        for host in self.review_hosts:
            if host.matches(url):
                return host
        return None

    def translate_branches(self, names: Iterable[str]) -> tuple[str, ...]:
        """Replace branch aliases with their real names, keeping order and dropping repeats."""

        out: list[str] = []
        for name in names:
            real = self.patch.branch_alias.get(name, name)
            if real and real not in out:
                out.append(real)
        return tuple(out)

    def target_branches(self) -> tuple[str, ...]:
        return self.translate_branches(self.patch.target_branches)

    def planned_target_branches(self) -> tuple[str, ...]:
        return self.translate_branches(self.patch.planned_target_branches)

    def with_repo(self, repo: RepoSettings) -> PatchflowSettings:
        repos = dict(self.repos)
        repos[repo.name] = repo
        return replace(self, repos=repos)

    def with_patch(self, **changes: Any) -> PatchflowSettings:
        return replace(self, patch=replace(self.patch, **changes))


def settings_from_config(
    config: Mapping[str, Any],
    *,
    environ: Mapping[str, str] | None = None,
) -> PatchflowSettings:
    """Freeze a validated config payload; review-host tokens are resolved from ``environ``."""

    env_map = environ or {}
    patch_raw = config.get("patch", {})
    hosts = tuple(
        ReviewHostSettings(
            base_url=str(host["base_url"]).rstrip("/"),
            token_env=str(host.get("token_env", DEFAULT_TOKEN_ENV)),
            token=env_map.get(str(host.get("token_env", DEFAULT_TOKEN_ENV)), "").strip(),
        )
        for host in config.get("review_hosts", [])
    )
    repos = {
        name: RepoSettings(
            name=name,
            url=str(raw.get("url", "")),
            path=str(raw.get("path", "")),
            create_review=bool(raw.get("create_review", True)),
            auto_merge_branches=tuple(raw.get("auto_merge_branches", ())),
            post_merge_hooks={
                target: tuple(commands)
                for target, commands in sorted(raw.get("post_merge_hooks", {}).items())
            },
        )
        for name, raw in sorted(config.get("repos", {}).items())
    }
    patch = PatchSettings(
        dev_branch=str(patch_raw.get("dev_branch", "")),
        target_branches=tuple(patch_raw.get("target_branches", ())),
        planned_target_branches=tuple(patch_raw.get("planned_target_branches", ())),
        branch_alias=dict(patch_raw.get("branch_alias", {})),
        ticket_id=str(patch_raw.get("ticket_id", "")),
        ticket_desc=str(patch_raw.get("ticket_desc", "")) or DEFAULT_TICKET_DESC,
        tracker_projects=tuple(patch_raw.get("tracker_projects", ())),
        staging_branch_template=str(
            patch_raw.get("staging_branch_template", DEFAULT_STAGING_BRANCH_TEMPLATE)
        ),
        run_post_merge_hooks=bool(patch_raw.get("run_post_merge_hooks", True)),
        current_project=str(patch_raw.get("current_project", "")),
    )
    return PatchflowSettings(
        home_dir=Path(str(config.get("home_dir", DEFAULT_HOME_DIR))).expanduser(),
        log_level=str(config.get("log_level", "INFO")),
        protected_branch_prefixes=tuple(config.get("protected_branch_prefixes", ())),
        review_hosts=hosts,
        repos=repos,
        patch=patch,
    )


# ----- Validation -----


def default_config() -> PatchflowConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs and ``init --show``."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    allowed = {
        "meta",
        "home_dir",
        "log_level",
        "protected_branch_prefixes",
        "review_hosts",
        "repos",
        "patch",
    }
    _reject_unknown_keys(payload, allowed, "", issues)

    out: dict[str, Any] = {}
    meta = _as_object(payload.get("meta", {}), "meta", issues)
    if meta is not None:
        _reject_unknown_keys(meta, {"schema_version"}, "meta", issues)
        version = _as_int(
            meta.get("schema_version", ConfigSchemaVersion), "meta.schema_version", issues
        )
        if version is not None and version != ConfigSchemaVersion:
            issues.add(
                "meta.schema_version",
                f"schema version {version} is not supported (expected {ConfigSchemaVersion})",
            )
        out["meta"] = {"schema_version": ConfigSchemaVersion if version is None else version}

    if "home_dir" in payload:
        home_dir = _as_str(payload["home_dir"], "home_dir", issues)
        if home_dir is not None:
            out["home_dir"] = home_dir
    if "log_level" in payload:
        level = _as_str(payload["log_level"], "log_level", issues)
        if level is not None:
            if level.upper() not in LOG_LEVELS:
                issues.add("log_level", f"expected one of: {', '.join(LOG_LEVELS)}")
            else:
                out["log_level"] = level.upper()
    if "protected_branch_prefixes" in payload:
        prefixes = _as_str_list(
            payload["protected_branch_prefixes"], "protected_branch_prefixes", issues
        )
        if prefixes is not None:
            out["protected_branch_prefixes"] = prefixes

    if "review_hosts" in payload:
        out["review_hosts"] = _validate_review_hosts(payload["review_hosts"], issues)
    if "repos" in payload:
        repos = _as_object(payload["repos"], "repos", issues)
        if repos is not None:
            out["repos"] = {
                name: _validate_repo(raw, f"repos.{name}", issues)
                for name, raw in sorted(repos.items())
            }
    if "patch" in payload:
        patch = _as_object(payload["patch"], "patch", issues)
        if patch is not None:
            out["patch"] = _validate_patch(patch, issues)
    return out


def _validate_review_hosts(value: object, issues: _IssueCollector) -> list[dict[str, str]]:
    if not isinstance(value, list):
        issues.add("review_hosts", f"expected array, got {type(value).__name__}")
        return []
    hosts: list[dict[str, str]] = []
    for index, raw in enumerate(value):
        path = f"review_hosts[{index}]"
        host = _as_object(raw, path, issues)
        if host is None:
            continue
        _reject_unknown_keys(host, {"base_url", "token_env"}, path, issues)
        base_url = _as_str(host.get("base_url"), f"{path}.base_url", issues)
        token_env = host.get("token_env", DEFAULT_TOKEN_ENV)
        if not isinstance(token_env, str) or not _ENV_NAME_PATTERN.fullmatch(token_env):
            issues.add(f"{path}.token_env", "must be an env var name (example: GITLAB_TOKEN)")
            continue
        if base_url is not None:
            hosts.append({"base_url": base_url.rstrip("/"), "token_env": token_env})
    return hosts


def _validate_repo(value: object, path: str, issues: _IssueCollector) -> dict[str, Any]:
    out: dict[str, Any] = copy.deepcopy(dict(_REPO_DEFAULTS))
    repo = _as_object(value, path, issues)
    if repo is None:
        return out
    _reject_unknown_keys(repo, set(_REPO_DEFAULTS), path, issues)
    for key in ("url", "path"):
        if key in repo:
            text = repo[key]
            if not isinstance(text, str):
                issues.add(f"{path}.{key}", f"expected string, got {type(text).__name__}")
            else:
                out[key] = text.strip()
    if "create_review" in repo:
        flag = _as_bool(repo["create_review"], f"{path}.create_review", issues)
        if flag is not None:
            out["create_review"] = flag
    if "auto_merge_branches" in repo:
        branches = _as_str_list(repo["auto_merge_branches"], f"{path}.auto_merge_branches", issues)
        if branches is not None:
            out["auto_merge_branches"] = branches
    if "post_merge_hooks" in repo:
        hooks = _as_object(repo["post_merge_hooks"], f"{path}.post_merge_hooks", issues)
        if hooks is not None:
            parsed_hooks: dict[str, list[str]] = {}
            for target, commands in sorted(hooks.items()):
                parsed = _as_str_list(commands, f"{path}.post_merge_hooks.{target}", issues)
                if parsed is not None:
                    parsed_hooks[target] = parsed
            out["post_merge_hooks"] = parsed_hooks
    return out


def _validate_patch(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    defaults = DEFAULT_CONFIG["patch"]
    _reject_unknown_keys(payload, set(defaults), "patch", issues)
    out: dict[str, Any] = {}
    for key, default in defaults.items():
        if key not in payload:
            continue
        path = f"patch.{key}"
        value = payload[key]
        if isinstance(default, bool):
            flag = _as_bool(value, path, issues)
            if flag is not None:
                out[key] = flag
        elif isinstance(default, list):
            items = _as_str_list(value, path, issues)
            if items is not None:
                out[key] = items
        elif isinstance(default, dict):
            mapping = _as_object(value, path, issues)
            if mapping is not None:
                aliases: dict[str, str] = {}
                for alias, real in sorted(mapping.items()):
                    parsed = _as_str(real, f"{path}.{alias}", issues)
                    if parsed is not None:
                        aliases[alias] = parsed
                out[key] = aliases
        elif not isinstance(value, str):
            issues.add(path, f"expected string, got {type(value).__name__}")
        else:
            out[key] = value.strip()

    template = out.get("staging_branch_template")
    if template is not None and "{targetBranch}" not in template:
        issues.add(
            "patch.staging_branch_template",
            "must contain {targetBranch} so each target gets its own staging branch",
        )
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is not None and parsed not in out:
            out.append(parsed)
    return out


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(value: object, path: str, issues: _IssueCollector) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    return value


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use token_env with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _looks_sensitive_key(str(key)):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, str(key))
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_TOKEN_ENV",
    "LOG_LEVELS",
    "PatchSettings",
    "PatchflowConfig",
    "PatchflowSettings",
    "RepoSettings",
    "ReviewHostSettings",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "redact_config",
    "settings_from_config",
    "validate_config",
]
