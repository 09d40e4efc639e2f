"""Health check utilities for dependencies."""
import os
import shutil
from pathlib import Path
from typing import Any, Dict


def check_engine(engine_path: str) -> bool:
    """
    Check that the scan engine can be executed.

    Args:
        engine_path: Absolute path, or a bare name looked up on PATH

    Returns:
        True if the engine exists and is executable, False otherwise
    """
    if not engine_path:
        return False

    path = Path(engine_path)
    if not path.is_absolute() and os.sep not in engine_path:
        return shutil.which(engine_path) is not None

    return path.is_file() and os.access(path, os.X_OK)


def check_all_dependencies(
    engine_path: str, active_jobs: int = 0, subscribers: int = 0
) -> Dict[str, Any]:
    """
    Check all service dependencies.

    Args:
        engine_path: Scan engine executable
        active_jobs: Current number of pending/running jobs
        subscribers: Current number of event subscribers

    Returns:
        {
            "status": "healthy" | "unhealthy",
            "engine_healthy": bool,
            "engine_path": str,
            "active_jobs": int,
            "subscribers": int
        }
    """
    engine_healthy = check_engine(engine_path)

    return {
        "status": "healthy" if engine_healthy else "unhealthy",
        "engine_healthy": engine_healthy,
        "engine_path": engine_path,
        "active_jobs": active_jobs,
        "subscribers": subscribers,
    }
