# git.py
# Thin wrapper around the Git CLI.
# The CLI uses it to fill in the trigger payload (ref, sha, changed files)
# so nothing else in flowci shells out to git directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional


class GitUnavailable(RuntimeError):
    """git is not installed or the directory is not a work tree."""


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: directory to run git in

    Returns:
        Stdout with surrounding whitespace removed.

    Raises:
        GitUnavailable: git is missing or exited non-zero.
    """
    try:
        out = subprocess.check_output(
            ["git", *args],
            cwd=cwd,
            text=True,
            stderr=subprocess.DEVNULL,
        )
    except FileNotFoundError as e:
        raise GitUnavailable("git executable not found") from e
    except subprocess.CalledProcessError as e:
        raise GitUnavailable(f"git {' '.join(args)} exited with {e.returncode}") from e
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Full ref of the checked-out branch (refs/heads/<branch>).
    A detached HEAD yields the commit sha instead.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except GitUnavailable:
        return head_sha(cwd)


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`, the starting point of a branch diff."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repository root.

    Typical usage:
        files = changed_files(merge_base("origin/main"))
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    if not out:
        return []
    return out.splitlines()


def trigger_facts(compare_ref: Optional[str] = None, cwd: Optional[str | Path] = None) -> Dict[str, Any]:
    """
    ref / sha / changed_files for a trigger payload.

    Every fact is best effort: outside a git work tree the keys are None,
    and `changed_files` stays None unless `compare_ref` is given.
    """
    facts: Dict[str, Any] = {"ref": None, "sha": None, "changed_files": None}
    try:
        facts["sha"] = head_sha(cwd)
        facts["ref"] = get_current_ref(cwd)
    except GitUnavailable:
        return facts

    if compare_ref:
        try:
            facts["changed_files"] = changed_files(merge_base(compare_ref, cwd), cwd=cwd)
        except GitUnavailable:
            pass
    return facts
