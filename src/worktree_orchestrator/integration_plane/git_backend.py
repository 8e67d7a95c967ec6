"""Version-control capability consumed by the orchestrator, and its git CLI implementation."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import tempfile
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

DEFAULT_AUTHOR: Final[str] = "worktree-orchestrator"
_EMAIL_DOMAIN: Final[str] = "worktree-orchestrator.local"
_EMAIL_LOCAL_RE: Final[re.Pattern[str]] = re.compile(r"[^A-Za-z0-9._-]+")
_TRAILER_VALUE_RE: Final[re.Pattern[str]] = re.compile(r"^[^\r\n]+$")


class VersionControlError(RuntimeError):
    """Base error for version-control backend failures."""


class GitCommandError(VersionControlError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True, slots=True)
class ApplyOutcome:
    """Result of applying one agent's revisions inside a staging area."""

    applied: bool
    conflicts: tuple[str, ...] = ()
    message: str | None = None


class VersionControl(Protocol):
    """
    Narrow version-control capability used by every orchestration component.

    Paths are working-copy locations (the shared repository or one of its
    worktrees). Refs are branch names or revision ids.
    """

    def is_repository(self, path: Path) -> bool: ...

    def status(self, path: Path) -> tuple[str, ...]: ...

    def is_clean(self, path: Path) -> bool: ...

    def resolve(self, ref: str, path: Path | None = None) -> str | None: ...

    def object_type(self, ref: str, path: Path | None = None) -> str | None: ...

    def branch_exists(self, branch: str) -> bool: ...

    def create_worktree(self, path: Path, branch: str, base_ref: str) -> None: ...

    def remove_worktree(self, path: Path, branch: str | None = None) -> None: ...

    def commit_all(
        self,
        path: Path,
        message: str,
        *,
        author: str | None = None,
        trailers: Sequence[tuple[str, str]] = (),
    ) -> str: ...

    def current_head(self, path: Path) -> str: ...

    def changed_files(self, base: str, head: str, path: Path | None = None) -> tuple[str, ...]: ...

    def staging_area(self, target: str) -> AbstractContextManager[Path]: ...

    def apply_revision(
        self,
        stage: Path,
        revision: str,
        *,
        base: str | None = None,
    ) -> ApplyOutcome: ...

    def abort_apply(self, stage: Path) -> None: ...

    def commit_staged(self, stage: Path, message: str, *, author: str | None = None) -> str: ...

    def squash(
        self,
        stage: Path,
        onto: str,
        message: str,
        *,
        trailers: Sequence[tuple[str, str]] = (),
    ) -> str: ...

    def fast_forward(self, target: str, revision: str, *, expected_head: str) -> None: ...

    def restore_branch(self, branch: str, revision: str, *, expected_head: str) -> None: ...


class GitBackend:
    """:class:`VersionControl` over the git CLI with a sanitised environment."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self._env_overrides = dict(env_overrides or {})

    def is_repository(self, path: Path) -> bool:
        location = Path(path)
        if not location.is_dir():
            return False
        result = self._run_git(["rev-parse", "--is-inside-work-tree"], cwd=location, check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"

    def status(self, path: Path) -> tuple[str, ...]:
        """Porcelain status lines; empty when the working copy is clean."""
        output = self._run_git(
            ["status", "--porcelain=v1", "--untracked-files=all"], cwd=Path(path)
        ).stdout
        return tuple(line for line in output.splitlines() if line.strip())

    def is_clean(self, path: Path) -> bool:
        return not self.status(path)

    def resolve(self, ref: str, path: Path | None = None) -> str | None:
        result = self._run_git(
            ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"],
            cwd=path,
            check=False,
        )
        sha = result.stdout.strip()
        if result.returncode != 0 or not sha:
            return None
        return sha

    def object_type(self, ref: str, path: Path | None = None) -> str | None:
        result = self._run_git(["cat-file", "-t", ref], cwd=path, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def branch_exists(self, branch: str) -> bool:
        return (
            self._run_git(
                ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
            ).returncode
            == 0
        )

    def create_worktree(self, path: Path, branch: str, base_ref: str) -> None:
        """Create ``branch`` from ``base_ref`` checked out at ``path``."""
        self._run_git(["worktree", "add", "--quiet", "-b", branch, str(path), base_ref])

    def remove_worktree(self, path: Path, branch: str | None = None) -> None:
        """Remove the worktree at ``path`` (if registered) and delete ``branch``."""
        location = Path(path)
        if self._is_registered_worktree(location):
            self._run_git(["worktree", "remove", "--force", str(location)])
        self._run_git(["worktree", "prune"], check=False)
        if branch is not None and self.branch_exists(branch):
            self._run_git(["branch", "-D", branch])

    def commit_all(
        self,
        path: Path,
        message: str,
        *,
        author: str | None = None,
        trailers: Sequence[tuple[str, str]] = (),
    ) -> str:
        """Stage every change in ``path`` and commit it; returns the new head."""
        worktree = Path(path)
        self._run_git(["add", "--all"], cwd=worktree)
        self._commit(worktree, message, author=author, trailers=trailers)
        return self.current_head(worktree)

    def current_head(self, path: Path) -> str:
        return self._run_git(["rev-parse", "HEAD"], cwd=Path(path)).stdout.strip()

    def changed_files(self, base: str, head: str, path: Path | None = None) -> tuple[str, ...]:
        output = self._run_git(
            ["diff", "--name-only", "--no-renames", base, head], cwd=path
        ).stdout
        return tuple(sorted({line.strip() for line in output.splitlines() if line.strip()}))

    @contextmanager
    def staging_area(self, target: str) -> Iterator[Path]:
        """Detached scratch worktree at the head of ``target``; removed on exit."""
        head = self.resolve(target)
        if head is None:
            raise VersionControlError(f"target does not resolve to a commit: {target}")

        temp_path = Path(tempfile.mkdtemp(prefix="wto-stage-"))
        added = False
        try:
            self._run_git(
                ["worktree", "add", "--quiet", "--detach", "--force", str(temp_path), head]
            )
            added = True
            yield temp_path
        finally:
            if added:
                self._run_git(["worktree", "remove", "--force", str(temp_path)], check=False)
                self._run_git(["worktree", "prune"], check=False)
            shutil.rmtree(temp_path, ignore_errors=True)

    def apply_revision(
        self,
        stage: Path,
        revision: str,
        *,
        base: str | None = None,
    ) -> ApplyOutcome:
        """Apply ``revision`` or every non-merge commit of ``base..revision`` without committing."""
        if base is None:
            commits: list[str] = [revision]
        else:
            listing = self._run_git(
                ["rev-list", "--reverse", "--no-merges", f"{base}..{revision}"], cwd=stage
            ).stdout
            commits = [line.strip() for line in listing.splitlines() if line.strip()]
        if not commits:
            return ApplyOutcome(applied=True)

        result = self._run_git(
            [*self._identity_args(None), "cherry-pick", "--no-commit", *commits],
            cwd=stage,
            check=False,
        )
        if result.returncode == 0:
            return ApplyOutcome(applied=True)

        unmerged = self._run_git(
            ["diff", "--name-only", "--diff-filter=U"], cwd=stage, check=False
        ).stdout
        conflicts = tuple(sorted({line.strip() for line in unmerged.splitlines() if line.strip()}))
        detail = result.stderr.strip() or result.stdout.strip() or "cherry-pick failed"
        return ApplyOutcome(applied=False, conflicts=conflicts, message=detail)

    def abort_apply(self, stage: Path) -> None:
        """Reverse a partially applied revision; the staging head is left as it was."""
        self._run_git(["cherry-pick", "--abort"], cwd=stage, check=False)
        self._run_git(["reset", "--hard", "--quiet", "HEAD"], cwd=stage, check=False)

    def commit_staged(self, stage: Path, message: str, *, author: str | None = None) -> str:
        worktree = Path(stage)
        self._commit(worktree, message, author=author, allow_empty=True)
        return self.current_head(worktree)

    def squash(
        self,
        stage: Path,
        onto: str,
        message: str,
        *,
        trailers: Sequence[tuple[str, str]] = (),
    ) -> str:
        """Collapse everything staged since ``onto`` into one commit whose parent is ``onto``."""
        worktree = Path(stage)
        self._run_git(["reset", "--soft", onto], cwd=worktree)
        self._commit(worktree, message, trailers=trailers, allow_empty=True)
        return self.current_head(worktree)

    def fast_forward(self, target: str, revision: str, *, expected_head: str) -> None:
        """Fast-forward ``target`` to ``revision`` if it still points at ``expected_head``."""
        current = self.resolve(target)
        if current != expected_head:
            raise VersionControlError(
                f"target {target} moved during merge (expected {expected_head}, found {current})"
            )
        checked_out = self._existing_worktree_for_branch(target)
        if checked_out is None:
            self._update_ref(target, revision, expected_head, reason="fast-forward")
            return
        self._run_git(["merge", "--ff-only", "--quiet", revision], cwd=checked_out)

    def restore_branch(self, branch: str, revision: str, *, expected_head: str) -> None:
        """
        Move ``branch`` back to ``revision`` only while it still points at ``expected_head``.

        The ref update is a compare-and-swap. A worktree that has the branch
        checked out is then switched with a two-tree ``read-tree``, which keeps
        local modifications and refuses to overwrite them.
        """
        self._update_ref(branch, revision, expected_head, reason="restore")
        checked_out = self._existing_worktree_for_branch(branch)
        if checked_out is None:
            return
        self._run_git(["update-index", "-q", "--refresh"], cwd=checked_out, check=False)
        self._run_git(["read-tree", "-m", "-u", expected_head, revision], cwd=checked_out)

    def _update_ref(self, branch: str, revision: str, expected_head: str, *, reason: str) -> None:
        result = self._run_git(
            ["update-ref", "-m", f"wto: {reason}", f"refs/heads/{branch}", revision, expected_head],
            check=False,
        )
        if result.returncode != 0:
            current = self.resolve(branch)
            raise VersionControlError(
                f"target {branch} moved during merge (expected {expected_head}, found {current})"
            )

    def _commit(
        self,
        worktree: Path,
        message: str,
        *,
        author: str | None = None,
        trailers: Sequence[tuple[str, str]] = (),
        allow_empty: bool = False,
    ) -> None:
        title = message.strip()
        if not title:
            raise VersionControlError("commit message cannot be empty")

        args = [*self._identity_args(author), "commit", "--no-gpg-sign", "--quiet", "-m", title]
        rendered_trailers = [_render_trailer(key, value) for key, value in trailers]
        if rendered_trailers:
            args.extend(["-m", "\n".join(rendered_trailers)])
        if allow_empty:
            args.append("--allow-empty")
        self._run_git(args, cwd=worktree)

    def _identity_args(self, author: str | None) -> list[str]:
        name = (author or DEFAULT_AUTHOR).strip() or DEFAULT_AUTHOR
        local_part = _EMAIL_LOCAL_RE.sub("-", name).strip("-").lower() or DEFAULT_AUTHOR
        return ["-c", f"user.name={name}", "-c", f"user.email={local_part}@{_EMAIL_DOMAIN}"]

    def _is_registered_worktree(self, path: Path) -> bool:
        wanted = path.resolve(strict=False)
        return any(entry == wanted for entry, _ in self._worktree_entries())

    def _existing_worktree_for_branch(self, branch: str) -> Path | None:
        branch_ref = f"refs/heads/{branch}"
        for path, ref in self._worktree_entries():
            if ref == branch_ref:
                return path
        return None

    def _worktree_entries(self) -> list[tuple[Path, str | None]]:
        output = self._run_git(["worktree", "list", "--porcelain"], check=False).stdout
        entries: list[tuple[Path, str | None]] = []
        current_worktree: Path | None = None
        current_ref: str | None = None
        for line in [*output.splitlines(), ""]:
            if not line:
                if current_worktree is not None:
                    entries.append((current_worktree, current_ref))
                current_worktree = None
                current_ref = None
                continue

            key, _, value = line.partition(" ")
            value = value.strip()
            if key == "worktree":
                current_worktree = Path(value).resolve(strict=False)
            elif key == "branch":
                current_ref = value
        return entries

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (Path(cwd) if cwd is not None else self.repo_path).resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        try:
            completed = subprocess.run(
                command,
                cwd=run_cwd,
                env=env,
                text=True,
                capture_output=True,
                check=False,
            )
        except OSError as exc:
            raise VersionControlError(f"unable to run git in {run_cwd}: {exc}") from exc

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result


def _render_trailer(key: str, value: str) -> str:
    rendered = f"{key.strip()}: {str(value).strip()}"
    if not _TRAILER_VALUE_RE.fullmatch(rendered):
        raise VersionControlError(f"invalid commit trailer: {key!r}")
    return rendered


__all__ = [
    "DEFAULT_AUTHOR",
    "ApplyOutcome",
    "CommandResult",
    "GitBackend",
    "GitCommandError",
    "VersionControl",
    "VersionControlError",
]
