"""Run pipeline from preflight through atomic merge and workspace cleanup."""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

import structlog

from worktree_orchestrator.config.schema import RunSettings, ownership_from_config
from worktree_orchestrator.constants import RUN_REPORT_SCHEMA_VERSION
from worktree_orchestrator.control_plane.escalation import (
    EscalationEvent,
    EscalationSink,
    LoggingEscalationSink,
    deliver,
)
from worktree_orchestrator.domain.models import (
    AgentResult,
    AgentTask,
    PlannedChange,
    TestStatus,
    normalize_repo_path,
    string_tuple,
)
from worktree_orchestrator.integration_plane.atomic_merge import (
    AcceptedCommit,
    AtomicMerger,
    MergeResult,
)
from worktree_orchestrator.integration_plane.commit_contract import (
    CommitContract,
    CommitContractResult,
)
from worktree_orchestrator.integration_plane.git_backend import (
    GitBackend,
    VersionControl,
    VersionControlError,
)
from worktree_orchestrator.integration_plane.preflight import PreflightResult, run_preflight
from worktree_orchestrator.integration_plane.workspace_manager import (
    CleanupResult,
    CleanupStatus,
    Workspace,
    WorkspaceError,
    WorkspaceManager,
    WorkspaceRegistry,
    workspace_slug,
)
from worktree_orchestrator.observability.logging import correlation_scope
from worktree_orchestrator.persistence.audit_store import AuditStore, AuditStoreError
from worktree_orchestrator.planning.ownership import (
    DEFAULT_OWNERSHIP,
    OwnershipCheckResult,
    OwnershipConfig,
    OwnershipViolationError,
    enforce_ownership_or_throw,
    validate_parallel_plan,
)
from worktree_orchestrator.verification_plane.manifest import ArtifactManifest, create_manifest
from worktree_orchestrator.verification_plane.review_gate import ReviewGate, ReviewResult


class AgentCapability(Protocol):
    """
    Anything that can carry out a task inside its workspace, synchronously or not.

    Coroutine implementations run on the event loop; plain callables run in a
    worker thread so concurrent agents overlap.
    """

    def execute(self, task: AgentTask) -> AgentResult | Awaitable[AgentResult]: ...


class RunPhase(StrEnum):
    PREFLIGHT = "preflight"
    OWNERSHIP = "ownership"
    SPAWN = "spawn"
    EXECUTE = "execute"
    CONTRACT = "contract"
    MANIFEST = "manifest"
    REVIEW = "review"
    MERGE = "merge"
    CLEANUP = "cleanup"


@dataclass(frozen=True, slots=True)
class AgentAssignment:
    agent: str
    capability: AgentCapability
    task: AgentTask
    planned_files: tuple[str, ...] = ()
    critical: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "planned_files", tuple(self.planned_files))

    @property
    def is_critical(self) -> bool:
        return self.critical or self.task.critical

    def planned_change(self) -> PlannedChange:
        return PlannedChange(agent=self.agent, files=self.planned_files)


@dataclass(frozen=True, slots=True)
class RunReport:
    """Terminal outcome of one orchestrated run."""

    success: bool
    run_id: str
    failed_phase: RunPhase | None = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    parallel: bool = False
    preflight: PreflightResult | None = None
    ownership: OwnershipCheckResult | None = None
    results: Mapping[str, AgentResult] = field(default_factory=dict)
    contracts: Mapping[str, CommitContractResult] = field(default_factory=dict)
    manifests: tuple[ArtifactManifest, ...] = ()
    review: ReviewResult | None = None
    merge: MergeResult | None = None
    workspaces: tuple[Workspace, ...] = ()
    preserved_workspaces: tuple[str, ...] = ()
    cleanup: tuple[CleanupResult, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": RUN_REPORT_SCHEMA_VERSION,
            "success": self.success,
            "run_id": self.run_id,
            "failed_phase": self.failed_phase.value if self.failed_phase is not None else None,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "parallel": self.parallel,
            "preflight": self.preflight.to_dict() if self.preflight is not None else None,
            "ownership": self.ownership.to_dict() if self.ownership is not None else None,
            "results": {
                agent: {"success": result.success, "error": result.error, "logs": list(result.logs)}
                for agent, result in sorted(self.results.items())
            },
            "contracts": {
                agent: contract.to_dict() for agent, contract in sorted(self.contracts.items())
            },
            "manifests": [manifest.to_dict() for manifest in self.manifests],
            "review": self.review.to_dict() if self.review is not None else None,
            "merge": self.merge.to_dict() if self.merge is not None else None,
            "workspaces": [workspace.to_dict() for workspace in self.workspaces],
            "preserved_workspaces": list(self.preserved_workspaces),
            "cleanup": [item.to_dict() for item in self.cleanup],
        }


@dataclass(slots=True)
class _RunState:
    run_id: str
    failed_phase: RunPhase | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    parallel: bool = False
    preflight: PreflightResult | None = None
    ownership: OwnershipCheckResult | None = None
    workspaces: dict[str, Workspace] = field(default_factory=dict)
    results: dict[str, AgentResult] = field(default_factory=dict)
    contracts: dict[str, CommitContractResult] = field(default_factory=dict)
    contract_failures: dict[str, list[str]] = field(default_factory=dict)
    auto_committed: set[str] = field(default_factory=set)
    no_op: set[str] = field(default_factory=set)
    manifests: list[ArtifactManifest] = field(default_factory=list)
    review: ReviewResult | None = None
    merge: MergeResult | None = None
    cleanup: tuple[CleanupResult, ...] = ()
    preserved: tuple[str, ...] = ()

    def fail(self, phase: RunPhase, errors: Sequence[str]) -> None:
        if self.failed_phase is None:
            self.failed_phase = phase
        self.errors.extend(errors)

    def report(self) -> RunReport:
        return RunReport(
            success=self.failed_phase is None and not self.errors,
            run_id=self.run_id,
            failed_phase=self.failed_phase,
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
            parallel=self.parallel,
            preflight=self.preflight,
            ownership=self.ownership,
            results=dict(self.results),
            contracts=dict(self.contracts),
            manifests=tuple(self.manifests),
            review=self.review,
            merge=self.merge,
            workspaces=tuple(self.workspaces.values()),
            preserved_workspaces=self.preserved,
            cleanup=self.cleanup,
        )


class Orchestrator:
    """
    Drive one run of parallel agents from a clean tree to a single merged commit.

    Every failure is turned into a ``RunReport`` naming the phase that failed.
    Exceptions escaping the version-control layer outside the phases that
    handle them still propagate, after workspaces have been cleaned up.
    """

    def __init__(
        self,
        repo_path: str | Path,
        *,
        settings: RunSettings | None = None,
        ownership: OwnershipConfig | None = None,
        vcs: VersionControl | None = None,
        registry: WorkspaceRegistry | None = None,
        workspace_root: str | Path | None = None,
        escalation: EscalationSink | None = None,
        audit_store: AuditStore | None = None,
        run_id_factory: Callable[[], str] | None = None,
        logger: Any | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).expanduser().resolve()
        self.settings = settings if settings is not None else RunSettings()
        self.ownership = ownership if ownership is not None else DEFAULT_OWNERSHIP
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._vcs = vcs if vcs is not None else GitBackend(self.repo_path)
        root = workspace_root if workspace_root is not None else self.settings.workspace_root
        self.workspaces = WorkspaceManager(
            self.repo_path,
            registry=registry,
            workspace_root=root,
            vcs=self._vcs,
            branch_prefix=self.settings.branch_prefix,
            logger=self._logger,
        )
        self._contract = CommitContract(self._vcs, logger=self._logger)
        self._merger = AtomicMerger(self._vcs, logger=self._logger)
        self._escalation = (
            escalation if escalation is not None else LoggingEscalationSink(logger=self._logger)
        )
        self._audit_store = audit_store
        self._run_id_factory = run_id_factory if run_id_factory is not None else _new_run_id

    @classmethod
    def from_config(
        cls,
        repo_path: str | Path,
        config: Mapping[str, Any],
        **kwargs: Any,
    ) -> Orchestrator:
        """Build an orchestrator from a loaded, validated configuration mapping."""

        return cls(
            repo_path,
            settings=RunSettings.from_config(config),
            ownership=ownership_from_config(config),
            **kwargs,
        )

    async def run(
        self,
        assignments: Sequence[AgentAssignment],
        *,
        merge_order: Sequence[str] | None = None,
        parallel: bool | None = None,
    ) -> RunReport:
        state = _RunState(run_id=self._run_id_factory())
        with correlation_scope(run_id=state.run_id):
            self._logger.info(
                "run_started",
                repo=self.repo_path.as_posix(),
                agents=[assignment.agent for assignment in assignments],
            )
            try:
                await self._run_phases(state, assignments, merge_order, parallel)
            finally:
                self._cleanup(state)

            report = state.report()
            self._record("run", state.run_id, report.to_dict(), state=None)
            self._logger.info(
                "run_completed",
                success=report.success,
                failed_phase=report.failed_phase.value if report.failed_phase else None,
                errors=len(report.errors),
                warnings=len(report.warnings),
                preserved=list(report.preserved_workspaces),
            )
        return report

    async def _run_phases(
        self,
        state: _RunState,
        assignments: Sequence[AgentAssignment],
        merge_order: Sequence[str] | None,
        parallel: bool | None,
    ) -> None:
        base_commit = self._preflight(state)
        if base_commit is None:
            return
        if not self._check_ownership(state, assignments, parallel):
            return
        if not self._spawn(state, assignments):
            return

        await self._execute(state, assignments)
        for assignment in assignments:
            if state.results[assignment.agent].success:
                self._verify_contract(state, assignment.agent, base_commit)
        self._build_manifests(state, assignments, base_commit)

        if not self._review(state):
            return
        if state.errors:
            return
        self._merge(state, base_commit, merge_order)

    def _preflight(self, state: _RunState) -> str | None:
        preflight = run_preflight(
            self.repo_path,
            self.settings.base_ref,
            allow_dirty=self.settings.allow_dirty,
            vcs=self._vcs,
            logger=self._logger,
        )
        state.preflight = preflight
        state.warnings.extend(preflight.warnings)
        if not preflight.ok or preflight.base_commit is None:
            state.fail(RunPhase.PREFLIGHT, preflight.errors or ("Base commit is unavailable",))
            return None
        return preflight.base_commit

    def _check_ownership(
        self,
        state: _RunState,
        assignments: Sequence[AgentAssignment],
        parallel: bool | None,
    ) -> bool:
        counts = Counter(assignment.agent for assignment in assignments)
        duplicates = sorted(agent for agent, count in counts.items() if count > 1)
        if duplicates:
            state.fail(
                RunPhase.OWNERSHIP,
                [f"Duplicate assignment for agent: {agent}" for agent in duplicates],
            )
            return False

        by_workspace: dict[str, list[str]] = {}
        for assignment in assignments:
            by_workspace.setdefault(workspace_slug(assignment.agent), []).append(assignment.agent)
        clashes = {name: agents for name, agents in by_workspace.items() if len(agents) > 1}
        if clashes:
            state.fail(
                RunPhase.OWNERSHIP,
                [
                    f"Agents {', '.join(agents)} share the workspace name: {name}"
                    for name, agents in sorted(clashes.items())
                ],
            )
            return False

        planned = [assignment.planned_change() for assignment in assignments]
        if self.ownership.strict:
            try:
                enforce_ownership_or_throw(planned, self.ownership)
            except OwnershipViolationError as exc:
                state.ownership = exc.result
                state.warnings.extend(exc.result.warnings)
                state.fail(RunPhase.OWNERSHIP, exc.result.errors)
                self._logger.error("ownership_check_failed", errors=list(exc.result.errors))
                return False

        validation = validate_parallel_plan(planned, self.ownership)
        state.ownership = validation.result
        state.warnings.extend(validation.result.warnings)
        if not validation.result.ok:
            state.fail(RunPhase.OWNERSHIP, validation.result.errors)
            self._logger.error("ownership_check_failed", errors=list(validation.result.errors))
            return False

        requested = self.settings.parallel if parallel is None else parallel
        state.parallel = requested and validation.safe
        if requested and not validation.safe:
            state.warnings.append("Parallel plan is not conflict-free; running agents sequentially")
        self._logger.info(
            "ownership_checked",
            parallel=state.parallel,
            conflicts=len(validation.result.conflicts),
            violations=len(validation.result.violations),
        )
        return True

    def _spawn(self, state: _RunState, assignments: Sequence[AgentAssignment]) -> bool:
        for assignment in assignments:
            try:
                workspace = self.workspaces.spawn(
                    workspace_slug(assignment.agent), self.settings.base_ref
                )
            except WorkspaceError as exc:
                state.fail(RunPhase.SPAWN, [f"{assignment.agent}: {exc}"])
                return False
            state.workspaces[assignment.agent] = workspace
        return True

    async def _execute(self, state: _RunState, assignments: Sequence[AgentAssignment]) -> None:
        if state.parallel:
            results = await asyncio.gather(
                *(self._execute_one(state, assignment) for assignment in assignments)
            )
        else:
            results = [await self._execute_one(state, assignment) for assignment in assignments]

        for assignment, result in zip(assignments, results, strict=True):
            state.results[assignment.agent] = result
            if result.success:
                continue
            message = f"{assignment.agent}: Task failed: {result.error or 'no error reported'}"
            state.fail(RunPhase.EXECUTE, [message])
            state.contract_failures.setdefault(assignment.agent, []).append(
                f"Task failed: {result.error or 'no error reported'}"
            )
            if assignment.is_critical:
                deliver(
                    self._escalation,
                    EscalationEvent(
                        run_id=state.run_id,
                        agent=assignment.agent,
                        task_id=assignment.task.id,
                        reason=result.error or "task failed",
                        details={"phase": RunPhase.EXECUTE.value},
                    ),
                    logger=self._logger,
                )

    async def _execute_one(self, state: _RunState, assignment: AgentAssignment) -> AgentResult:
        workspace = state.workspaces[assignment.agent]
        task = dataclasses.replace(assignment.task, workspace=workspace)
        with correlation_scope(agent=assignment.agent, workspace=workspace.name):
            self._logger.info("agent_task_started", task_id=task.id, task_type=task.type)
            try:
                outcome = await _invoke(assignment.capability, task)
            except Exception as exc:  # noqa: BLE001
                outcome = AgentResult(success=False, error=f"{type(exc).__name__}: {exc}")
            if not isinstance(outcome, AgentResult):
                outcome = AgentResult(
                    success=False,
                    error=f"capability returned {type(outcome).__name__}, expected AgentResult",
                )
            log = self._logger.info if outcome.success else self._logger.warning
            log(
                "agent_task_finished",
                task_id=task.id,
                success=outcome.success,
                error=outcome.error,
            )
        return outcome

    def _verify_contract(self, state: _RunState, agent: str, base_commit: str) -> None:
        workspace = state.workspaces[agent]
        with correlation_scope(agent=agent, workspace=workspace.name):
            result = self._contract.verify(workspace.path, agent, base_commit)
            if not result.valid:
                enforcement = self._contract.enforce(workspace.path, agent)
                if not enforcement.success:
                    state.contracts[agent] = CommitContractResult(
                        valid=False,
                        errors=(*result.errors, enforcement.error or "commit enforcement failed"),
                    )
                    self._contract_failed(state, agent, state.contracts[agent].errors)
                    return
                if enforcement.auto_committed:
                    state.auto_committed.add(agent)
                    state.warnings.append(f"{agent}: uncommitted changes were auto-committed")
                result = self._contract.verify(workspace.path, agent, base_commit)

            state.contracts[agent] = result
            if result.valid:
                return
            if self._is_untouched(workspace, base_commit):
                state.no_op.add(agent)
                state.warnings.append(f"{agent}: no changes; treated as a no-op")
                return
            self._contract_failed(state, agent, result.errors)

    def _contract_failed(self, state: _RunState, agent: str, errors: Sequence[str]) -> None:
        state.contract_failures.setdefault(agent, []).extend(errors)
        state.fail(RunPhase.CONTRACT, [f"{agent}: {error}" for error in errors])

    def _is_untouched(self, workspace: Workspace, base_commit: str) -> bool:
        try:
            return (
                self._vcs.current_head(workspace.path) == base_commit
                and not self._vcs.status(workspace.path)
            )
        except VersionControlError:
            return False

    def _build_manifests(
        self,
        state: _RunState,
        assignments: Sequence[AgentAssignment],
        base_commit: str,
    ) -> None:
        for assignment in assignments:
            agent = assignment.agent
            contract = state.contracts.get(agent)
            no_op = agent in state.no_op
            if contract is None or not (contract.valid or no_op):
                continue

            workspace = state.workspaces[agent]
            result = state.results[agent]
            head = contract.head_commit if contract.valid else base_commit
            declared = string_tuple(result.declared("files_changed", "filesChanged", default=()))
            files: tuple[str, ...] = ()
            if not no_op and head is not None:
                try:
                    files = self._vcs.changed_files(base_commit, head, workspace.path)
                except VersionControlError as exc:
                    state.warnings.append(
                        f"{agent}: could not diff workspace ({exc}); using declared files"
                    )
                    files = declared

            expected = {
                normalize_repo_path(path) for path in (*assignment.planned_files, *declared)
            }
            undeclared = sorted(set(files) - expected)
            if undeclared:
                state.warnings.append(f"{agent}: changed undeclared files: {', '.join(undeclared)}")

            gates = result.declared("gates", default={})
            notes = list(string_tuple(result.declared("notes", default=())))
            if agent in state.auto_committed:
                notes.append("Uncommitted changes were auto-committed by the orchestrator")
            manifest = create_manifest(
                agent,
                workspace.name,
                str(result.declared("summary", default="") or assignment.task.description),
                files,
                head_commit=head,
                base_ref=self.settings.base_ref,
                base_commit=base_commit,
                no_op=no_op,
                auto_committed=agent in state.auto_committed,
                commands_run=string_tuple(result.declared("commands_run", "commandsRun")),
                gates=gates if isinstance(gates, Mapping) else {},
                test_status=str(
                    result.declared("test_status", "testStatus", default=TestStatus.SKIPPED)
                ),
                notes=notes,
                risk_flags=string_tuple(result.declared("risk_flags", "riskFlags")),
            )
            state.manifests.append(manifest)
            self._record(
                "manifest", f"{state.run_id}-{workspace.name}", manifest.to_dict(), state=state
            )
            self._logger.info(
                "manifest_created",
                agent=agent,
                files=len(manifest.files_changed),
                no_op=manifest.no_op,
                test_status=manifest.test_status,
            )

    def _review(self, state: _RunState) -> bool:
        gate = ReviewGate(
            strict=self.settings.strict_review,
            shared_paths=(*self.ownership.allow_shared_paths, *self.ownership.generated_paths),
            logger=self._logger,
        )
        review = gate.review(state.manifests, contract_failures=state.contract_failures)
        state.review = review
        state.warnings.extend(review.warnings)
        if not review.approved:
            state.fail(RunPhase.REVIEW, [e for e in review.errors if e not in state.errors])
            return False
        if review.errors:
            state.warnings.extend(review.errors)
        return True

    def _merge(
        self,
        state: _RunState,
        base_commit: str,
        merge_order: Sequence[str] | None,
    ) -> None:
        accepted = [
            AcceptedCommit(
                agent=manifest.agent,
                commit=manifest.head_commit,
                base_commit=base_commit,
                branch=state.workspaces[manifest.agent].branch,
            )
            for manifest in state.manifests
            if not manifest.no_op and manifest.head_commit is not None
        ]
        merge = self._merger.merge(accepted, self.settings.target_branch, merge_order)
        state.merge = merge
        if not merge.success:
            state.fail(
                RunPhase.MERGE,
                [
                    merge.error or "Atomic merge failed",
                    *(f"{merge.failed_agent}: conflict in {path}" for path in merge.conflicts),
                ],
            )

    def _cleanup(self, state: _RunState) -> None:
        if self.settings.preserve_workspaces:
            state.preserved = tuple(workspace.name for workspace in state.workspaces.values())
            return

        results = tuple(
            self.workspaces.cleanup(workspace.name)
            for workspace in state.workspaces.values()
            if workspace.name in self.workspaces.registry
        )
        state.cleanup = results
        failed = [item for item in results if item.status is CleanupStatus.FAILED]
        state.preserved = tuple(item.name for item in failed)
        for item in failed:
            state.warnings.append(f"Failed to clean up workspace {item.name}: {item.error}")

    def _record(
        self,
        kind: str,
        key: str,
        record: Mapping[str, Any],
        *,
        state: _RunState | None,
    ) -> None:
        if self._audit_store is None:
            return
        try:
            self._audit_store.put(kind, key, record)
        except (AuditStoreError, OSError) as exc:
            self._logger.warning("audit_record_failed", kind=kind, key=key, error=str(exc))
            if state is not None:
                state.warnings.append(f"Failed to record {kind} {key}: {exc}")


async def _invoke(capability: AgentCapability, task: AgentTask) -> object:
    execute = capability.execute
    if inspect.iscoroutinefunction(execute):
        return await execute(task)
    outcome = await asyncio.to_thread(execute, task)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


def _new_run_id() -> str:
    return f"{datetime.now(tz=UTC):%Y%m%dT%H%M%SZ}-{uuid.uuid4().hex[:8]}"


__all__ = [
    "AgentAssignment",
    "AgentCapability",
    "Orchestrator",
    "RunPhase",
    "RunReport",
]
