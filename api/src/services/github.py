"""
GitHub service for webhook validation and repo operations.
"""

import hmac
import hashlib
import logging
import shutil
import tempfile
import subprocess
import os
from typing import Optional, Dict, Any

from api.src.config import get_settings
from api.src.models.event import Event, EventKind

logger = logging.getLogger(__name__)

settings = get_settings()

CONFIG_FILES = [
    ".conveyor.yml",
    ".conveyor.yaml",
    ".pipeline.yml",
    ".pipeline.yaml",
    "pipeline.yml",
    "pipeline.yaml",
]

PULL_REQUEST_ACTIONS = ("opened", "synchronize", "reopened")

class RepositoryError(Exception):
    """Raised when a repository cannot be cloned."""
    pass

def verify_signature(payload: bytes, signature: str) -> bool:
    """Verify GitHub webhook signature."""
    if not settings.github_webhook_secret:
        # Skip verification if no secret configured (development)
        return True

    expected = "sha256=" + hmac.new(
        settings.github_webhook_secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)

async def clone_repository(clone_url: str, commit_sha: str, branch: Optional[str] = None) -> str:
    """
    Clone repository to temporary directory.
    Returns path to cloned repo.
    """
    temp_dir = tempfile.mkdtemp(prefix="conveyor_")
    repo_path = os.path.join(temp_dir, "repo")

    clone_cmd = ["git", "clone", "--depth", "1"]
    if branch and not commit_sha:
        clone_cmd += ["--branch", branch]

    try:
        subprocess.run(
            clone_cmd + [clone_url, repo_path],
            check=True,
            capture_output=True,
            timeout=120
        )

        # Checkout specific commit if provided
        if commit_sha:
            subprocess.run(
                ["git", "fetch", "--depth", "1", "origin", commit_sha],
                cwd=repo_path,
                check=True,
                capture_output=True,
                timeout=60
            )
            subprocess.run(
                ["git", "checkout", commit_sha],
                cwd=repo_path,
                check=True,
                capture_output=True,
                timeout=30
            )

        return repo_path
    except subprocess.TimeoutExpired:
        cleanup_repo(repo_path)
        raise RepositoryError("Repository clone timed out")
    except subprocess.CalledProcessError as e:
        cleanup_repo(repo_path)
        raise RepositoryError(f"Failed to clone repository: {e.stderr.decode()}")

def get_head_commit(repo_path: str) -> str:
    result = subprocess.run(
        ["git", "rev-parse", "HEAD"],
        cwd=repo_path,
        check=True,
        capture_output=True,
        timeout=30
    )
    return result.stdout.decode().strip()

async def fetch_pipeline_config(repo_path: str) -> Optional[str]:
    """
    Read the pipeline file from repository.
    Returns the raw document text or None if not found.
    """
    for filename in CONFIG_FILES:
        config_path = os.path.join(repo_path, filename)
        if os.path.exists(config_path):
            with open(config_path, "r") as f:
                return f.read()

    return None

def parse_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract relevant info from GitHub push payload."""
    repo = payload.get("repository", {})
    head_commit = payload.get("head_commit") or {}

    # Get branch from ref (refs/heads/main -> main)
    ref = payload.get("ref", "")
    branch = ref.replace("refs/heads/", "") if ref.startswith("refs/heads/") else ref

    return {
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": head_commit.get("id", payload.get("after", "")),
        "branch": branch,
        "commit_message": head_commit.get("message", ""),
        "pusher": payload.get("pusher", {}).get("name", ""),
    }

def parse_pull_request_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract relevant info from GitHub pull_request payload.
    The run builds the head commit; `branch` is the base branch the PR targets.
    """
    repo = payload.get("repository", {})
    pull_request = payload.get("pull_request", {})
    head = pull_request.get("head", {})
    base = pull_request.get("base", {})

    # Forks carry their own clone URL on the head repo
    head_repo = head.get("repo") or repo

    return {
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": head_repo.get("clone_url", repo.get("clone_url", "")),
        "commit_sha": head.get("sha", ""),
        "branch": base.get("ref", ""),
        "head_branch": head.get("ref", ""),
        "pull_request": payload.get("number", pull_request.get("number")),
        "commit_message": pull_request.get("title", ""),
        "pusher": pull_request.get("user", {}).get("login", ""),
    }

def parse_repository_url(
    clone_url: str,
    branch: str,
    commit_sha: Optional[str] = None,
    triggered_by: str = "cron",
) -> Dict[str, Any]:
    """Build repo info for runs that do not come from a webhook."""
    path = clone_url.rstrip("/")
    if path.endswith(".git"):
        path = path[:-len(".git")]
    parts = path.replace(":", "/").split("/")
    full_name = "/".join(parts[-2:])

    return {
        "repo_name": parts[-1],
        "repo_full_name": full_name,
        "clone_url": clone_url,
        "commit_sha": commit_sha or "",
        "branch": branch,
        "commit_message": "",
        "pusher": triggered_by,
    }

def build_event(github_event: str, payload: Dict[str, Any]) -> Optional[Event]:
    """Map a GitHub event to a trigger event. Returns None for unhandled events."""
    if github_event == "push":
        webhook_data = parse_webhook_payload(payload)
        return Event(kind=EventKind.PUSH, branch=webhook_data["branch"] or None)

    if github_event == "pull_request":
        if payload.get("action") not in PULL_REQUEST_ACTIONS:
            return None
        webhook_data = parse_pull_request_payload(payload)
        return Event(kind=EventKind.PULL_REQUEST, branch=webhook_data["branch"] or None)

    return None

def cleanup_repo(repo_path: str):
    """Clean up cloned repository."""
    if not repo_path:
        return
    # Remove the parent temp directory
    parent = os.path.dirname(repo_path)
    try:
        shutil.rmtree(parent)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove {parent}: {e}")
