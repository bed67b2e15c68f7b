"""
patchflow — control plane

Purpose
- The push, merge reconciliation, and sweep algorithms plus the operator capability
  they suspend on.

Functional requirements
- Components receive settings, store, and adapters explicitly; nothing reads the
  process working directory or global state.
- Adapter failures are translated into ``SyncError`` subclasses, ``UserAbort``, or a
  recorded non-fatal outcome before reaching callers.
"""

from patchflow.control_plane.operator import (
    ConflictResolution,
    Operator,
    TerminalOperator,
    UserAbort,
)
from patchflow.control_plane.reconciler import MergeCheck, MergeStatusReconciler, ScmFactory
from patchflow.control_plane.retry import PollPolicy, RetryPolicy, no_sleep
from patchflow.control_plane.sweeper import (
    StaleBranchSweeper,
    SweepAction,
    SweepEntry,
    is_absent_branch_error,
)
from patchflow.control_plane.sync_engine import (
    NoCommitsError,
    PushReport,
    PushRequest,
    PushResult,
    RemoteUnreachableError,
    RepositoryConfigError,
    SyncEngine,
    SyncError,
    TargetBranchError,
    TargetFailure,
    converge_branch,
    preserve_checkout,
)
from patchflow.control_plane.tickets import (
    BranchStatus,
    StatusRow,
    TicketCommandError,
    TicketManager,
    status_rows,
)

__all__ = [
    "BranchStatus",
    "ConflictResolution",
    "MergeCheck",
    "MergeStatusReconciler",
    "NoCommitsError",
    "Operator",
    "PollPolicy",
    "PushReport",
    "PushRequest",
    "PushResult",
    "RemoteUnreachableError",
    "RepositoryConfigError",
    "RetryPolicy",
    "ScmFactory",
    "StaleBranchSweeper",
    "StatusRow",
    "SweepAction",
    "SweepEntry",
    "SyncEngine",
    "SyncError",
    "TargetBranchError",
    "TargetFailure",
    "TerminalOperator",
    "TicketCommandError",
    "TicketManager",
    "UserAbort",
    "converge_branch",
    "is_absent_branch_error",
    "no_sleep",
    "preserve_checkout",
    "status_rows",
]
