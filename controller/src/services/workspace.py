"""
Shared run workspace - the directory every step of a run sees.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict

from controller.src.config import get_settings

logger = logging.getLogger(__name__)

class WorkspaceError(Exception):
    """Raised when the run workspace cannot be prepared."""
    pass

def workspace_path(run_id: str) -> Path:
    return Path(get_settings().workspace_root) / run_id

def prepare_workspace(run_id: str, repo_info: Dict[str, Any]) -> Path:
    """
    Create the run workspace and check out the triggering commit into it.
    """
    path = workspace_path(run_id)
    path.mkdir(parents=True, exist_ok=True)

    clone_url = repo_info.get("clone_url")
    if not clone_url:
        logger.warning(f"No clone URL for run {run_id}, starting with an empty workspace")
        return path

    try:
        subprocess.run(
            ["git", "clone", "--depth", "1", clone_url, str(path)],
            check=True,
            capture_output=True,
            timeout=300,
        )

        commit_sha = repo_info.get("commit_sha")
        if commit_sha:
            subprocess.run(
                ["git", "fetch", "--depth", "1", "origin", commit_sha],
                cwd=path,
                check=True,
                capture_output=True,
                timeout=120,
            )
            subprocess.run(
                ["git", "checkout", commit_sha],
                cwd=path,
                check=True,
                capture_output=True,
                timeout=30,
            )
    except subprocess.TimeoutExpired:
        raise WorkspaceError("Repository clone timed out")
    except subprocess.CalledProcessError as e:
        raise WorkspaceError(f"Failed to clone repository: {e.stderr.decode()}")

    logger.info(f"Prepared workspace {path}")
    return path

def cleanup_workspace(path: Path):
    """Remove a run workspace."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove workspace {path}: {e}")
