"""Thin wrapper around the git command line for sync directories."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from lorehub.exceptions import GitCommandError

logger = logging.getLogger(__name__)


class GitRepository:
    """Run git commands inside one working directory.

    Local commands run once with a timeout. Commands that talk to a remote
    (fetch, push) are retried with exponential backoff.
    """

    def __init__(
        self,
        repo_path: str | Path,
        timeout: float = 60.0,
        retries: int = 3,
    ) -> None:
        """Initialize the repository wrapper.

        Args:
            repo_path: Working directory of the repository.
            timeout: Seconds before a single git invocation is abandoned.
            retries: Extra attempts for network commands.
        """
        self.repo_path = Path(repo_path)
        self.timeout = timeout
        self._network_retry = retry(
            stop=stop_after_attempt(max(retries, 0) + 1),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            retry=retry_if_exception_type(GitCommandError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def run(
        self,
        *args: str,
        check: bool = True,
        input: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a git command in the repository.

        Args:
            *args: Git command arguments.
            check: Whether to raise on non-zero exit.
            input: Optional text passed on stdin.

        Returns:
            Completed process result.

        Raises:
            GitCommandError: If check=True and the command fails, or if it
                times out.
            FileNotFoundError: If git is not installed.
        """
        cmd = ["git", "-C", str(self.repo_path)] + list(args)
        env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                input=input,
                timeout=self.timeout,
                env=env,
            )
        except subprocess.TimeoutExpired:
            raise GitCommandError(
                list(args), -1, f"timed out after {self.timeout} seconds"
            ) from None
        if check and result.returncode != 0:
            raise GitCommandError(list(args), result.returncode, result.stderr)
        return result

    def run_network(self, *args: str) -> subprocess.CompletedProcess[str]:
        """Run a git command that contacts a remote, retrying on failure."""

        @self._network_retry
        def _do_run() -> subprocess.CompletedProcess[str]:
            return self.run(*args)

        return _do_run()

    def is_repo(self) -> bool:
        """Check if the directory is itself the root of a git repository.

        Returns:
            True if a .git entry exists directly in the directory.
        """
        return (self.repo_path / ".git").exists()

    def head(self) -> str | None:
        """Get the commit HEAD points at, or None on an unborn branch."""
        result = self.run("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        sha = result.stdout.strip()
        return sha if result.returncode == 0 and sha else None

    def current_branch(self) -> str | None:
        result = self.run("symbolic-ref", "--quiet", "--short", "HEAD", check=False)
        branch = result.stdout.strip()
        return branch if result.returncode == 0 and branch else None

    def has_local_branch(self, branch: str) -> bool:
        result = self.run(
            "show-ref", "--verify", "--quiet", f"refs/heads/{branch}", check=False
        )
        return result.returncode == 0

    def has_remote_branch(self, branch: str, remote: str = "origin") -> bool:
        result = self.run(
            "show-ref",
            "--verify",
            "--quiet",
            f"refs/remotes/{remote}/{branch}",
            check=False,
        )
        return result.returncode == 0

    def remote_url(self, remote: str = "origin") -> str | None:
        result = self.run("remote", "get-url", remote, check=False)
        url = result.stdout.strip()
        return url if result.returncode == 0 and url else None

    def config_get(self, key: str) -> str | None:
        result = self.run("config", "--get", key, check=False)
        value = result.stdout.strip()
        return value if result.returncode == 0 and value else None

    def has_commit(self, ref: str) -> bool:
        result = self.run("cat-file", "-e", f"{ref}^{{commit}}", check=False)
        return result.returncode == 0

    def empty_tree(self) -> str:
        """Get the id of the empty tree in this repository's hash format."""
        return self.run("hash-object", "-t", "tree", "--stdin", input="").stdout.strip()

    def changed_files(self, since: str, until: str, pathspec: str) -> list[str]:
        """List files added or modified between two commits.

        Args:
            since: Starting commit or tree.
            until: Ending commit.
            pathspec: Only report paths under this prefix.

        Returns:
            Repository-relative paths, in git's order.
        """
        result = self.run(
            "diff", "--name-only", "--diff-filter=AM", since, until, "--", pathspec
        )
        return [line for line in result.stdout.splitlines() if line.strip()]

    def staged_files(self) -> list[str]:
        result = self.run("diff", "--cached", "--name-only")
        return [line for line in result.stdout.splitlines() if line.strip()]

    def conflicted_files(self) -> list[str]:
        result = self.run("diff", "--name-only", "--diff-filter=U", check=False)
        return sorted({line for line in result.stdout.splitlines() if line.strip()})

    def uncommitted_files(self) -> list[str]:
        result = self.run("status", "--porcelain")
        return [line[3:] for line in result.stdout.splitlines() if line.strip()]
