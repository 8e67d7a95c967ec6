"""
All-or-nothing merge of accepted agent commits into the shared target.

Commits are applied in a detached staging worktree forked from the target
head, then squashed into one attributed commit and fast-forwarded onto the
target. The target ref is touched only by that fast-forward. A failure after
the fast-forward moved it is undone with a compare-and-swap, so commits made
by other writers in the meantime are never discarded.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from worktree_orchestrator.constants import (
    DEFAULT_DEPARTMENT_PRIORITY,
    DEFAULT_TARGET_BRANCH,
    DEPARTMENT_PRIORITY,
)
from worktree_orchestrator.integration_plane.git_backend import (
    VersionControl,
    VersionControlError,
)


@dataclass(frozen=True, slots=True)
class AcceptedCommit:
    """An approved agent head, with the commit its workspace was forked from."""

    agent: str
    commit: str
    base_commit: str | None = None
    branch: str | None = None


@dataclass(frozen=True, slots=True)
class MergeResult:
    success: bool
    final_commit: str | None = None
    error: str | None = None
    failed_agent: str | None = None
    failed_commit: str | None = None
    conflicts: tuple[str, ...] = ()
    merged: tuple[str, ...] = ()
    head_before: str | None = None
    rollback_performed: bool = False
    order: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "final_commit": self.final_commit,
            "error": self.error,
            "failed_agent": self.failed_agent,
            "failed_commit": self.failed_commit,
            "conflicts": list(self.conflicts),
            "merged": list(self.merged),
            "head_before": self.head_before,
            "rollback_performed": self.rollback_performed,
            "order": list(self.order),
        }


def department_priority(agent: str) -> int:
    return DEPARTMENT_PRIORITY.get(agent.strip().lower(), DEFAULT_DEPARTMENT_PRIORITY)


def order_commits(
    accepted: Sequence[AcceptedCommit],
    order: Sequence[str] | None = None,
) -> tuple[AcceptedCommit, ...]:
    """
    Explicit order first, then everyone else by department precedence.

    Sorting is stable, so agents sharing a priority keep their submission order.
    """

    by_precedence = sorted(accepted, key=lambda item: department_priority(item.agent))
    if order is None:
        return tuple(by_precedence)

    ranked = {agent: index for index, agent in enumerate(dict.fromkeys(order))}
    named = sorted(
        (item for item in accepted if item.agent in ranked),
        key=lambda item: ranked[item.agent],
    )
    unnamed = [item for item in by_precedence if item.agent not in ranked]
    return (*named, *unnamed)


class AtomicMerger:
    """Single-writer merge authority for one shared target."""

    def __init__(self, vcs: VersionControl, *, logger: Any | None = None) -> None:
        self._vcs = vcs
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()

    def merge(
        self,
        accepted: Sequence[AcceptedCommit],
        target: str = DEFAULT_TARGET_BRANCH,
        order: Sequence[str] | None = None,
    ) -> MergeResult:
        with self._lock:
            return self._merge_locked(accepted, target, order)

    def _merge_locked(
        self,
        accepted: Sequence[AcceptedCommit],
        target: str,
        order: Sequence[str] | None,
    ) -> MergeResult:
        head_before = self._vcs.resolve(target)
        if head_before is None:
            return MergeResult(
                success=False, error=f"target does not resolve to a commit: {target}"
            )

        ordered = order_commits(accepted, order)
        agent_order = tuple(item.agent for item in ordered)
        if order is not None:
            named = set(order)
            unnamed = [agent for agent in agent_order if agent not in named]
            if unnamed:
                self._logger.warning(
                    "atomic_merge_unordered_agents",
                    target=target,
                    appended=unnamed,
                )
        if not ordered:
            return MergeResult(success=True, final_commit=head_before, head_before=head_before)

        self._logger.info(
            "atomic_merge_started", target=target, head=head_before, order=list(agent_order)
        )
        merged: list[str] = []
        final_commit: str | None = None
        try:
            with self._vcs.staging_area(target) as stage:
                for item in ordered:
                    outcome = self._vcs.apply_revision(stage, item.commit, base=item.base_commit)
                    if not outcome.applied:
                        self._vcs.abort_apply(stage)
                        return self._fail(
                            target,
                            head_before,
                            error=(
                                f"Merge conflict in {item.agent} ({item.commit[:8]}). "
                                "Atomic merge aborted."
                            ),
                            failed=item,
                            conflicts=outcome.conflicts,
                            final_commit=None,
                            merged=merged,
                            order=agent_order,
                        )
                    self._vcs.commit_staged(
                        stage, f"[{item.agent}] {item.commit[:8]}", author=item.agent
                    )
                    merged.append(item.agent)

                final_commit = self._vcs.squash(
                    stage,
                    head_before,
                    _squash_message(ordered),
                    trailers=tuple(("Merged-Agent", f"{i.agent} {i.commit}") for i in ordered),
                )
            self._vcs.fast_forward(target, final_commit, expected_head=head_before)
        except (VersionControlError, OSError) as exc:
            return self._fail(
                target,
                head_before,
                error=f"Atomic merge failed: {exc}",
                failed=None,
                conflicts=(),
                merged=merged,
                final_commit=final_commit,
                order=agent_order,
            )

        self._logger.info(
            "atomic_merge_completed",
            target=target,
            head_before=head_before,
            final_commit=final_commit,
            merged=merged,
        )
        return MergeResult(
            success=True,
            final_commit=final_commit,
            merged=tuple(merged),
            head_before=head_before,
            order=agent_order,
        )

    def _fail(
        self,
        target: str,
        head_before: str,
        *,
        error: str,
        failed: AcceptedCommit | None,
        conflicts: Sequence[str],
        merged: Sequence[str],
        final_commit: str | None,
        order: tuple[str, ...],
    ) -> MergeResult:
        try:
            rollback = self._rollback_if_needed(target, head_before, final_commit)
        except VersionControlError as exc:
            rollback = False
            error = f"{error}; restoring {target} to {head_before} failed: {exc}"
        self._logger.error(
            "atomic_merge_failed",
            target=target,
            error=error,
            failed_agent=failed.agent if failed else None,
            conflicts=list(conflicts),
            applied_before_failure=list(merged),
            rollback_performed=rollback,
        )
        return MergeResult(
            success=False,
            error=error,
            failed_agent=failed.agent if failed else None,
            failed_commit=failed.commit if failed else None,
            conflicts=tuple(conflicts),
            merged=(),
            head_before=head_before,
            rollback_performed=rollback,
            order=order,
        )

    def _rollback_if_needed(
        self,
        target: str,
        head_before: str,
        final_commit: str | None,
    ) -> bool:
        # Only a target sitting on this merge's own commit is ours to undo.
        head_after = self._vcs.resolve(target)
        if final_commit is None or head_after is None or head_after == head_before:
            return False
        if head_after != final_commit:
            self._logger.warning(
                "atomic_merge_target_moved",
                target=target,
                head_before=head_before,
                head_after=head_after,
            )
            return False
        self._logger.warning(
            "atomic_merge_rollback", target=target, head_after=head_after, restore=head_before
        )
        self._vcs.restore_branch(target, head_before, expected_head=final_commit)
        return True


def _squash_message(ordered: Sequence[AcceptedCommit]) -> str:
    agents = ", ".join(item.agent for item in ordered)
    return f"Atomic merge of {len(ordered)} agent(s): {agents}"


__all__ = [
    "AcceptedCommit",
    "AtomicMerger",
    "MergeResult",
    "department_priority",
    "order_commits",
]
