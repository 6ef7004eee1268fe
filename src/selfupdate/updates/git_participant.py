"""
Source sync participant.

Keeps a git working copy in sync with a remote branch:

- check: fetch, compare HEAD with <remote>/<branch>, describe pending commits
- precheck: git available, repository present (initialized on demand),
  remote URL as configured, target branch present on the remote
- backup: create a ``backup/<ts>`` branch; local changes to tracked files
  are stashed under a message naming that branch
- update: hard reset to the remote branch, classify the diff, fix
  permissions of executable files
- rollback: check out the latest backup branch and pop the stash named
  after it, if there is one

Untracked files are never stashed. Snapshots and container logs usually live
inside the working copy and must survive the backup phase.
"""

from __future__ import annotations

import fnmatch
import os
from pathlib import Path

from pydantic import BaseModel, Field

from selfupdate.errors import ExecutionError, StateError, ValidationError
from selfupdate.process import ProcessResult, ProcessRunner
from selfupdate.updates.models import UpdateInfo, UpdateOptions, UpdateResult
from selfupdate.updates.operations import timestamp_suffix
from selfupdate.updates.participant import UpdateParticipant

# Separators used in `git log --format` output
_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"
_LOG_FORMAT = "%H%x1f%s%x1f%an%x1f%aI%x1f%b%x1e"

EXECUTABLE_MODE = 0o755

STASH_MESSAGE = "selfupdate backup"


class CommitInfo(BaseModel):
    """Metadata of a single commit."""

    hash: str
    subject: str = ""
    author: str = ""
    date: str = ""
    body: str = ""


class RenamedPath(BaseModel):
    """A path renamed between two commits."""

    old_path: str
    new_path: str


class ChangeSet(BaseModel):
    """Paths touched between two commits, by kind of change."""

    added: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    renamed: list[RenamedPath] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.added) + len(self.modified) + len(self.deleted) + len(self.renamed)

    def present_paths(self) -> list[str]:
        """Paths that exist in the new commit."""
        return [*self.added, *self.modified, *(r.new_path for r in self.renamed)]


class SourceSyncInfo(UpdateInfo):
    """Check result of the source sync participant."""

    branch: str
    current_commit: str
    target_commit: str
    update_count: int = 0
    pending_commits: list[CommitInfo] = Field(
        default_factory=list, description="Pending commits, oldest first"
    )
    change_summary: str = ""
    files_changed: int = 0


class SourceSyncResult(UpdateResult):
    """Apply result of the source sync participant."""

    branch: str | None = None
    previous_commit: str | None = None
    new_commit: str | None = None
    commit: CommitInfo | None = None
    changes: ChangeSet = Field(default_factory=ChangeSet)
    permissions_fixed: list[str] = Field(default_factory=list)
    permission_issues: list[str] = Field(default_factory=list)


def parse_commit_log(output: str) -> list[CommitInfo]:
    """Parse ``git log`` output produced with the record/field separators."""
    commits = []
    for record in output.split(_RECORD_SEP):
        record = record.strip("\n")
        if not record.strip():
            continue
        fields = record.split(_FIELD_SEP)
        fields += [""] * (5 - len(fields))
        commits.append(
            CommitInfo(
                hash=fields[0].strip(),
                subject=fields[1],
                author=fields[2],
                date=fields[3],
                body=fields[4].strip(),
            )
        )
    return commits


def classify_name_status(output: str) -> ChangeSet:
    """
    Classify ``git diff --name-status -M`` output.

    Copies (``C``) count as added; type changes (``T``) as modified.
    """
    changes = ChangeSet()
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        status = parts[0][:1]
        if status == "A" or (status == "C" and len(parts) >= 3):
            changes.added.append(parts[-1])
        elif status in ("M", "T"):
            changes.modified.append(parts[1])
        elif status == "D":
            changes.deleted.append(parts[1])
        elif status == "R" and len(parts) >= 3:
            changes.renamed.append(RenamedPath(old_path=parts[1], new_path=parts[2]))
    return changes


class SourceSyncParticipant(UpdateParticipant):
    """
    Syncs a git working copy with ``<remote>/<branch>``.

    Example:
        >>> participant = SourceSyncParticipant(ProcessRunner(), "/srv/app")
        >>> info = await participant.check_for_updates()
        >>> info.update_count
        3
    """

    name = "git"

    def __init__(
        self,
        runner: ProcessRunner,
        repo_path: Path | str = ".",
        *,
        remote_name: str = "origin",
        remote_url: str | None = None,
        branch: str = "main",
        backup_prefix: str = "backup/",
        executable_patterns: list[str] | None = None,
    ) -> None:
        super().__init__()
        self.runner = runner
        self.repo_path = Path(repo_path)
        self.remote_name = remote_name
        self.remote_url = remote_url
        self.branch = branch
        self.backup_prefix = backup_prefix
        self.executable_patterns = (
            list(executable_patterns) if executable_patterns is not None else ["*.sh", "*.py"]
        )
        self.target_branch = branch
        self._changed_files: list[str] = []

    async def _git(self, *args: str, check: bool = True) -> ProcessResult:
        return await self.runner.run("git", *args, cwd=self.repo_path, check=check)

    def _remote_ref(self, branch: str) -> str:
        return f"{self.remote_name}/{branch}"

    async def _head(self) -> str:
        return (await self._git("rev-parse", "HEAD")).stdout.strip()

    async def _resolve_remote_ref(self, branch: str) -> str:
        result = await self._git(
            "rev-parse",
            "--verify",
            "--quiet",
            f"refs/remotes/{self._remote_ref(branch)}",
            check=False,
        )
        commit = result.stdout.strip()
        if not result.ok or not commit:
            raise StateError(
                f"Remote ref {self._remote_ref(branch)} does not exist",
                details={"remote": self.remote_name, "branch": branch},
            )
        return commit

    async def _branch_exists_on_remote(self, branch: str) -> bool:
        result = await self._git(
            "ls-remote", "--heads", self.remote_name, branch, check=False
        )
        if not result.ok:
            raise ExecutionError(
                f"Could not list branches of remote {self.remote_name}",
                details={"remote": self.remote_name, "stderr": result.stderr.strip()},
            )
        return any(
            line.split("\t")[-1] == f"refs/heads/{branch}"
            for line in result.stdout.splitlines()
        )

    async def _require_remote_branch(self, branch: str) -> None:
        if not await self._branch_exists_on_remote(branch):
            raise StateError(
                f"Branch '{branch}' does not exist on remote {self.remote_name}",
                details={"remote": self.remote_name, "branch": branch},
            )

    async def _is_dirty(self) -> bool:
        """Whether tracked files have local changes. Untracked files are ignored."""
        status = await self._git("status", "--porcelain", "--untracked-files=no")
        return bool(status.stdout.strip())

    async def _backup_branches(self, check: bool = True) -> list[str]:
        refs = await self._git(
            "for-each-ref",
            "--format=%(refname:short)",
            f"refs/heads/{self.backup_prefix}",
            check=check,
        )
        if not refs.ok:
            return []
        return sorted(line.strip() for line in refs.stdout.splitlines() if line.strip())

    async def _find_stash(self, backup_branch: str) -> str | None:
        """Reference (``stash@{n}``) of the stash taken with ``backup_branch``."""
        stashes = await self._git("stash", "list", "--format=%gd%x1f%gs")
        marker = f"{STASH_MESSAGE} {backup_branch}"
        for line in stashes.stdout.splitlines():
            ref, _, subject = line.partition(_FIELD_SEP)
            # Subject is "On <branch>: <message>"
            if subject.endswith(marker):
                return ref.strip()
        return None

    async def _current_branch(self) -> str | None:
        result = await self._git("symbolic-ref", "--quiet", "--short", "HEAD", check=False)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def prepare(self, options: UpdateOptions) -> None:
        self.target_branch = options.branch or self.branch

    async def list_backups(self) -> list[str]:
        return await self._backup_branches(check=False)

    # -------------------------------------------------------------------------
    # Check
    # -------------------------------------------------------------------------

    async def check_for_updates(self) -> SourceSyncInfo:
        branch = self.target_branch
        remote_ref = self._remote_ref(branch)

        self.log.info(f"Fetching {remote_ref}")
        await self._git("fetch", self.remote_name, branch)

        current = await self._head()
        target = await self._resolve_remote_ref(branch)

        if current == target:
            self.log.info(f"Up to date with {remote_ref} at {current[:12]}")
            return SourceSyncInfo(
                participant=self.name,
                has_update=False,
                branch=branch,
                current_commit=current,
                target_commit=target,
                message="Already up to date",
            )

        count = (await self._git("rev-list", "--count", f"HEAD..{remote_ref}")).stdout
        log_output = (
            await self._git("log", "--reverse", f"--format={_LOG_FORMAT}", f"HEAD..{remote_ref}")
        ).stdout
        summary = (await self._git("diff", "--shortstat", "HEAD", remote_ref)).stdout
        names = (await self._git("diff", "--name-only", "HEAD", remote_ref)).stdout

        update_count = int(count.strip() or 0)
        info = SourceSyncInfo(
            participant=self.name,
            has_update=True,
            branch=branch,
            current_commit=current,
            target_commit=target,
            update_count=update_count,
            pending_commits=parse_commit_log(log_output),
            change_summary=summary.strip(),
            files_changed=len([n for n in names.splitlines() if n.strip()]),
            message=f"{update_count} commit(s) behind {remote_ref}",
        )
        self.log.info(info.message)
        return info

    # -------------------------------------------------------------------------
    # Pre-update check
    # -------------------------------------------------------------------------

    async def pre_update_check(self) -> None:
        if self.runner.which("git") is None:
            raise ValidationError("git is not installed", details={"command": "git"})

        repo = await self._git("rev-parse", "--git-dir", check=False)
        if not repo.ok:
            if not self.remote_url:
                raise StateError(
                    f"{self.repo_path} is not a git repository and no remote URL is configured",
                    details={"repo_path": str(self.repo_path)},
                )
            self.log.warning(f"Initializing repository in {self.repo_path}")
            await self._git("init")
            await self._git("remote", "add", self.remote_name, self.remote_url)

        if self.remote_url:
            current_url = await self._git("remote", "get-url", self.remote_name, check=False)
            if not current_url.ok:
                await self._git("remote", "add", self.remote_name, self.remote_url)
            elif current_url.stdout.strip() != self.remote_url:
                self.log.warning(
                    f"Correcting URL of remote {self.remote_name}",
                    extra={"old_url": current_url.stdout.strip(), "new_url": self.remote_url},
                )
                await self._git("remote", "set-url", self.remote_name, self.remote_url)

        branch = self.target_branch
        await self._require_remote_branch(branch)

        if await self._is_dirty():
            self.log.warning("Working copy has uncommitted changes; they will be stashed")

        remote_ref = self._remote_ref(branch)
        unpushed = await self._git("rev-list", "--count", f"{remote_ref}..HEAD", check=False)
        if unpushed.ok and unpushed.stdout.strip() not in ("", "0"):
            self.log.warning(f"{unpushed.stdout.strip()} local commit(s) not on {remote_ref}")

        self.log.success("Repository checks passed")

    # -------------------------------------------------------------------------
    # Backup
    # -------------------------------------------------------------------------

    async def backup(self) -> str:
        """
        Stash local changes and create a backup branch at the current head.

        The stash message names the backup branch, so a later rollback (from
        another process, too) can find it.

        Returns:
            Name of the backup branch.
        """
        backup_branch = f"{self.backup_prefix}{timestamp_suffix()}"
        if await self._is_dirty():
            await self._git("stash", "push", "-m", f"{STASH_MESSAGE} {backup_branch}")
            self.log.info("Stashed local changes")

        await self._git("branch", backup_branch)
        self.log.success(f"Created backup branch {backup_branch}")
        return backup_branch

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    async def update(self, options: UpdateOptions) -> SourceSyncResult:
        self._changed_files = []
        branch = options.branch or self.branch
        self.target_branch = branch
        remote_ref = self._remote_ref(branch)

        await self._require_remote_branch(branch)
        await self._git("fetch", self.remote_name, branch)

        previous = await self._head()
        await self._resolve_remote_ref(branch)
        await self._git("reset", "--hard", remote_ref)
        new = await self._head()

        if previous == new:
            changes = ChangeSet()
        else:
            diff = await self._git("diff", "--name-status", "-M", previous, new)
            changes = classify_name_status(diff.stdout)
        self._changed_files = changes.present_paths()

        fixed, issues = self._fix_permissions(self._changed_files)

        commit_log = await self._git("log", "-1", f"--format={_LOG_FORMAT}", "HEAD")
        commits = parse_commit_log(commit_log.stdout)

        result = SourceSyncResult(
            participant=self.name,
            success=True,
            updated=previous != new,
            branch=branch,
            previous_commit=previous,
            new_commit=new,
            commit=commits[0] if commits else None,
            changes=changes,
            permissions_fixed=fixed,
            permission_issues=issues,
            message=(
                f"Updated {previous[:12]} -> {new[:12]} ({changes.total} path(s) changed)"
                if previous != new
                else "Already at target commit"
            ),
        )
        self.log.success(result.message)
        return result

    def _fix_permissions(self, paths: list[str]) -> tuple[list[str], list[str]]:
        fixed: list[str] = []
        issues: list[str] = []
        for relative in paths:
            name = os.path.basename(relative)
            if not any(fnmatch.fnmatch(name, pattern) for pattern in self.executable_patterns):
                continue
            path = self.repo_path / relative
            try:
                os.chmod(path, EXECUTABLE_MODE)
                fixed.append(relative)
            except OSError as e:
                issues.append(relative)
                self.log.warning(f"Could not set permissions on {relative}: {e}")
        if fixed:
            self.log.info(f"Made {len(fixed)} file(s) executable")
        return fixed, issues

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    async def rollback(self) -> None:
        branches = await self._backup_branches()
        if not branches:
            raise StateError(
                "No backup branch found",
                details={"prefix": self.backup_prefix},
            )

        latest = branches[-1]
        if await self._current_branch() == latest:
            # Already restored; a forced checkout would discard the popped stash
            self.log.info(f"Already on backup branch {latest}")
        else:
            self.log.info(f"Restoring backup branch {latest}")
            await self._git("checkout", "--force", latest)

        stash = await self._find_stash(latest)
        if stash is not None:
            await self._git("stash", "pop", stash)
            self.log.info(f"Restored stashed changes from {stash}")

        self.log.success(f"Rolled back to {latest}")
