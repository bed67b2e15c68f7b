"""Command-line interface router for patchflow."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

from patchflow.config import (
    PatchflowSettings,
    RepoSettings,
    default_config_path,
    dump_effective_config,
    load_config,
    load_settings,
    write_config_template,
)
from patchflow.control_plane import (
    MergeStatusReconciler,
    Operator,
    ScmFactory,
    StaleBranchSweeper,
    SyncEngine,
    TerminalOperator,
    TicketManager,
    UserAbort,
    is_absent_branch_error,
)
from patchflow.integration_plane import (
    GitEngine,
    GitEngineError,
    ProtectedBranchPolicy,
    RemoteUrlError,
    SourceControlAdapter,
    find_origin_url,
    review_client_for,
)
from patchflow.observability import LoggingConfig, setup_logging
from patchflow.persistence import RegisteredRepo, RepoRegistry, TicketStore
from patchflow.ui.render import CLIRenderer, create_renderer


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class CLIContext:
    settings: PatchflowSettings
    store: TicketStore
    renderer: CLIRenderer
    operator: Operator


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="patchflow",
        description=(
            "patchflow — replay a ticket's commits onto release branches through reviews.\n\n"
            "Common workflows:\n"
            "  patchflow push                   Sync the current ticket to its targets\n"
            "  patchflow status                 List tickets still awaiting merge\n"
            "  patchflow sweep                  Delete merged staging branches\n"
            "  patchflow init                   Write a config template\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to a TOML or YAML config (default: ~/.patch/config.toml).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output and INFO logs on the console.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    filters = argparse.ArgumentParser(add_help=False)
    filters.add_argument("--project", default="", help="Only this project.")
    filters.add_argument("--ticket", default="", help="Only this ticket id.")

    working_copy = argparse.ArgumentParser(add_help=False)
    working_copy.add_argument(
        "--repo-path",
        default=".",
        help="Working copy to operate on (default: current directory).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # push ----------------------------------------------------------------
    push_parser = subparsers.add_parser(
        "push",
        parents=[common, working_copy],
        help="Replay the ticket's commits onto staging branches and open reviews",
        description=(
            "Collect the ticket's commits from the dev branch and cherry-pick them, oldest\n"
            "first, onto one staging branch per target branch.\n\n"
            "Examples:\n"
            "  patchflow push\n"
            "  patchflow push --ticket ABC-100 --targets qa,staging\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    push_parser.add_argument(
        "--ticket",
        default=None,
        help="Ticket id or commit id (default: detected from the latest commit).",
    )
    push_parser.add_argument(
        "--targets", default=None, help="Comma-separated target branches (aliases allowed)."
    )
    push_parser.add_argument("--dev-branch", default=None, help="Dev branch (default: current).")
    push_parser.add_argument(
        "--project", default=None, help="Project name (default: working copy directory name)."
    )
    push_parser.add_argument(
        "--ignore-local-history",
        action="store_true",
        default=False,
        help="Offer commits already recorded as applied to a target again.",
    )
    push_parser.set_defaults(handler=_cmd_push)

    # ticket --------------------------------------------------------------
    ticket_parser = subparsers.add_parser(
        "ticket", help="Manage planned target branches of a ticket"
    )
    ticket_sub = ticket_parser.add_subparsers(dest="ticket_command", required=True)
    add_parser = ticket_sub.add_parser("add", parents=[common], help="Plan target branches")
    add_parser.add_argument("project")
    add_parser.add_argument("ticket_id")
    add_parser.add_argument("targets", nargs="+")
    add_parser.set_defaults(handler=_cmd_ticket_add)
    del_parser = ticket_sub.add_parser("del", parents=[common], help="Forget a ticket")
    del_parser.add_argument("project")
    del_parser.add_argument("ticket_id")
    del_parser.set_defaults(handler=_cmd_ticket_del)
    detach_parser = ticket_sub.add_parser(
        "detach", parents=[common], help="Drop one target branch from a ticket"
    )
    detach_parser.add_argument("project")
    detach_parser.add_argument("ticket_id")
    detach_parser.add_argument("target")
    detach_parser.set_defaults(handler=_cmd_ticket_detach)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common, filters],
        help="Show tickets that are not merged everywhere yet",
    )
    status_parser.set_defaults(handler=_cmd_status)

    # check-merged --------------------------------------------------------
    check_parser = subparsers.add_parser(
        "check-merged",
        parents=[common, filters],
        help="Detect landed tickets and print per-branch merge state",
    )
    check_parser.set_defaults(handler=_cmd_check_merged)

    # sweep ---------------------------------------------------------------
    sweep_parser = subparsers.add_parser(
        "sweep",
        parents=[common, filters],
        help="Delete staging branches merged more than a week ago",
    )
    sweep_parser.add_argument(
        "--no-check-merged",
        action="store_true",
        default=False,
        help="Skip merge detection before sweeping.",
    )
    sweep_parser.set_defaults(handler=_cmd_sweep)

    # branch-del ----------------------------------------------------------
    branch_del_parser = subparsers.add_parser(
        "branch-del",
        parents=[common, working_copy],
        help="Delete local and remote branches whose name contains KEYWORD",
    )
    branch_del_parser.add_argument("keyword")
    branch_del_parser.set_defaults(handler=_cmd_branch_del)

    # init ----------------------------------------------------------------
    init_parser = subparsers.add_parser(
        "init", parents=[common], help="Write a config template or show the effective config"
    )
    init_parser.add_argument(
        "--show", action="store_true", default=False, help="Print the effective config."
    )
    init_parser.set_defaults(handler=_cmd_init)

    return parser


def run_cli(
    argv: Sequence[str] | None = None,
    *,
    operator: Operator | None = None,
    environ: Mapping[str, str] | None = None,
) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    namespace.operator = operator
    namespace.environ = environ
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except UserAbort:
        return 0
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_push(args: argparse.Namespace) -> int:
    repo_path = Path(args.repo_path).expanduser().resolve()
    overrides: dict[str, object] = {
        "patch.ticket_id": args.ticket,
        "patch.dev_branch": args.dev_branch,
        "patch.current_project": args.project,
    }
    if args.targets:
        overrides["patch.target_branches"] = [
            name.strip() for name in args.targets.split(",") if name.strip()
        ]
    ctx = _context(args, overrides)
    settings = ctx.settings

    project = settings.patch.current_project or repo_path.name
    repo = _register_working_copy(settings, project, repo_path)
    settings = settings.with_repo(repo)

    reviews = review_client_for(settings, repo)
    scm = GitEngine(repo_path, policy=_policy(settings), review_adapter=reviews)
    engine = SyncEngine(settings, repo, ctx.store, scm, ctx.operator, reviews=reviews)
    request = engine.build_request(
        ticket_id=args.ticket, ignore_local_history=args.ignore_local_history
    )
    report = engine.push(request)
    if report.aborted:
        return 0

    ctx.renderer.push_results(report.results)
    ctx.renderer.push_failures(report.failures)
    return 0 if report.ok else 1


def _cmd_ticket_add(args: argparse.Namespace) -> int:
    ctx = _context(args)
    ticket = TicketManager(ctx.settings, ctx.store).add(args.project, args.ticket_id, args.targets)
    ctx.renderer.kv(ticket.ticket_id, ", ".join(ticket.target_branches))
    return 0


def _cmd_ticket_del(args: argparse.Namespace) -> int:
    ctx = _context(args)
    if not TicketManager(ctx.settings, ctx.store).delete(args.project, args.ticket_id):
        ctx.renderer.warning(f"no ticket {args.ticket_id} in {args.project}")
    return 0


def _cmd_ticket_detach(args: argparse.Namespace) -> int:
    ctx = _context(args)
    manager = TicketManager(ctx.settings, ctx.store)
    if not manager.detach(args.project, args.ticket_id, args.target):
        ctx.renderer.warning(f"no ticket {args.ticket_id} in {args.project}")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    ctx = _context(args)
    reconciler = MergeStatusReconciler(ctx.settings, ctx.store, _scm_factory(ctx.settings))
    rows = TicketManager(ctx.settings, ctx.store).status(
        project=args.project, ticket_id=args.ticket, reconciler=reconciler
    )
    if not rows:
        ctx.renderer.text("nothing pending")
    ctx.renderer.status_rows(rows)
    return 0


def _cmd_check_merged(args: argparse.Namespace) -> int:
    ctx = _context(args)
    reconciler = MergeStatusReconciler(ctx.settings, ctx.store, _scm_factory(ctx.settings))
    ctx.renderer.merge_checks(reconciler.check(project=args.project, ticket_id=args.ticket))
    return 0


def _cmd_sweep(args: argparse.Namespace) -> int:
    ctx = _context(args)
    sweeper = StaleBranchSweeper(ctx.settings, ctx.store, _scm_factory(ctx.settings))
    entries = sweeper.sweep(
        project=args.project, ticket_id=args.ticket, check_merged=not args.no_check_merged
    )
    ctx.renderer.sweep_entries(entries)
    return 0


def _cmd_branch_del(args: argparse.Namespace) -> int:
    keyword = args.keyword.strip()
    if not keyword:
        raise CLIError("a non-empty keyword is required", exit_code=2)
    ctx = _context(args)
    repo_path = Path(args.repo_path).expanduser().resolve()
    repo = _register_working_copy(ctx.settings, repo_path.name, repo_path)
    scm = GitEngine(
        repo_path,
        policy=_policy(ctx.settings),
        review_adapter=review_client_for(ctx.settings, repo),
    )

    current = scm.current_branch()
    matches = [name for name in scm.list_local_branches() if keyword in name]
    if current in matches:
        ctx.renderer.warning(f"skipping checked-out branch {current}")
        matches.remove(current)
    if not matches:
        ctx.renderer.text(f"no local branch contains {keyword!r}")
        return 0

    ctx.renderer.table(("branch",), [(name,) for name in matches], title="Branches to delete")
    if not ctx.operator.confirm(f"Delete {len(matches)} branch(es) locally and on the remote?"):
        return 0
    for name in matches:
        _delete_everywhere(scm, name, ctx.renderer)
    return 0


def _cmd_init(args: argparse.Namespace) -> int:
    renderer = _get_renderer(args)
    if args.show:
        config = load_config(args.config_path, environ=args.environ)
        renderer.text(dump_effective_config(config))
        return 0
    path = (
        Path(args.config_path).expanduser()
        if args.config_path
        else default_config_path(args.environ)
    )
    if write_config_template(path):
        renderer.kv("wrote config template", path)
    else:
        renderer.kv("config already exists", path)
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=bool(args.no_color), verbose=bool(args.verbose))


def _context(
    args: argparse.Namespace, overrides: Mapping[str, object] | None = None
) -> CLIContext:
    settings = load_settings(args.config_path, cli_overrides=overrides, environ=args.environ)
    setup_logging(
        LoggingConfig(level=settings.log_level, log_dir=settings.log_dir, verbose=args.verbose)
    )
    settings = _with_registered_repos(settings)
    renderer = _get_renderer(args)
    operator = args.operator or TerminalOperator(renderer.console)
    store = TicketStore.open(settings.state_db_path, legacy_path=settings.legacy_state_path)
    return CLIContext(settings=settings, store=store, renderer=renderer, operator=operator)


def _with_registered_repos(settings: PatchflowSettings) -> PatchflowSettings:
    """Fill url/path gaps of configured projects, and add unknown ones, from repo.json."""

    for name, entry in RepoRegistry(settings.repo_registry_path).load().items():
        configured = settings.repo(name)
        if configured is None:
            settings = settings.with_repo(RepoSettings(name=name, url=entry.url, path=entry.path))
        elif not configured.url or not configured.path:
            settings = settings.with_repo(
                replace(
                    configured,
                    url=configured.url or entry.url,
                    path=configured.path or entry.path,
                )
            )
    return settings


def _register_working_copy(
    settings: PatchflowSettings, project: str, repo_path: Path
) -> RepoSettings:
    configured = settings.repo(project) or RepoSettings(name=project)
    url = configured.url
    if not url:
        try:
            url = find_origin_url(repo_path)
        except RemoteUrlError:
            url = ""
    repo = replace(configured, url=url, path=str(repo_path))
    if url:
        RepoRegistry(settings.repo_registry_path).record(
            RegisteredRepo(name=project, url=url, path=str(repo_path))
        )
    return repo


def _policy(settings: PatchflowSettings) -> ProtectedBranchPolicy:
    return ProtectedBranchPolicy(prefixes=settings.protected_branch_prefixes)


def _scm_factory(settings: PatchflowSettings) -> ScmFactory:
    policy = _policy(settings)

    def build(repo: RepoSettings) -> SourceControlAdapter:
        return GitEngine(repo.path, policy=policy, review_adapter=review_client_for(settings, repo))

    return build


def _delete_everywhere(scm: SourceControlAdapter, name: str, renderer: CLIRenderer) -> None:
    try:
        scm.delete_local_branch(name)
    except GitEngineError as exc:
        renderer.warning(f"local delete of {name} failed: {exc}")
    try:
        scm.delete_remote_branch(name)
    except GitEngineError as exc:
        if not is_absent_branch_error(exc):
            renderer.warning(f"remote delete of {name} failed: {exc}")
        return
    renderer.kv("deleted", name)


__all__ = ["CLIContext", "CLIError", "build_parser", "main", "run_cli"]
