"""Pushing an updated file to a new branch of a git repository."""

from __future__ import annotations

import base64
import logging
import os
import subprocess
import tempfile
import time

from whalewatch.config import get_config

logger = logging.getLogger(__name__)

_COMMIT_MESSAGE = "Update file from host system"
_COMMIT_EMAIL = "bot@example.com"
_DEFAULT_AUTHOR = "whale-watcher"


def _auth_args(username: str, pat: str) -> list[str]:
    if not pat:
        return []
    credentials = base64.b64encode(f"{username}:{pat}".encode()).decode("ascii")
    return ["-c", f"http.extraHeader=Authorization: Basic {credentials}"]


def _git(*args: str) -> str:
    try:
        result = subprocess.run(["git", *args], capture_output=True, text=True)
    except OSError as exc:
        raise RuntimeError(f"Could not run git: {exc}") from exc
    if result.returncode != 0:
        raise RuntimeError(f"git failed: {result.stderr.strip()}")
    return result.stdout


def _read(path: str) -> bytes:
    with open(path, "rb") as handle:
        return handle.read()


def sync_file_to_repo_if_different(
    repo_url: str, branch: str, repo_file_path: str, host_file_path: str
) -> str:
    """Push the host file to a new branch if it differs from the repository copy.

    Returns the name of the pushed branch, or an empty string when nothing changed.
    """
    github = get_config().github
    auth = _auth_args(github.username, github.pat)
    author = github.username or _DEFAULT_AUTHOR
    relative_path = repo_file_path.lstrip("/")

    with tempfile.TemporaryDirectory(prefix="sync") as checkout:
        clone = [*auth, "clone"]
        if branch:
            clone += ["--branch", branch]
        try:
            _git(*clone, repo_url, checkout)
        except RuntimeError:
            logger.error("Could not checkout Repository")
            raise

        repo_file = os.path.join(checkout, relative_path)
        try:
            repo_data = _read(repo_file)
        except OSError:
            logger.error("Could not open in-repository file")
            raise
        try:
            host_data = _read(host_file_path)
        except OSError:
            logger.error("Could not read host file data")
            raise

        if host_data == repo_data:
            logger.debug("No changes to dockerfile detected. No PR needed")
            return ""

        new_branch = f"update-{int(time.time())}"
        _git("-C", checkout, "checkout", "-b", new_branch)
        with open(repo_file, "wb") as handle:
            handle.write(host_data)
        _git("-C", checkout, "add", "--", relative_path)
        _git(
            "-C",
            checkout,
            "-c",
            f"user.name={author}",
            "-c",
            f"user.email={_COMMIT_EMAIL}",
            "-c",
            "commit.gpgsign=false",
            "commit",
            "-m",
            _COMMIT_MESSAGE,
        )
        ref = f"refs/heads/{new_branch}"
        try:
            _git(*auth, "-C", checkout, "push", "origin", f"{ref}:{ref}")
        except RuntimeError:
            logger.error("Could not git push the fix commit")
            raise

    logger.info("Pushed updated file to branch '%s'", new_branch)
    return new_branch