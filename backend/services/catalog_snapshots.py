"""Previous-snapshot providers for catalog drift detection.

A provider returns the last committed version of the catalog file as a
dict, or raises SnapshotUnavailableError. GitSnapshotProvider reads HEAD
through the git binary; StaticSnapshotProvider serves an in-memory copy
(tests, or deployments without git).
"""
import copy
import json
import logging
import subprocess
from pathlib import Path
from typing import Optional, Dict, Any, Protocol

logger = logging.getLogger(__name__)


class SnapshotUnavailableError(Exception):
    pass


class SnapshotProvider(Protocol):
    def previous_snapshot(self, path: Path) -> Dict[str, Any]:
        ...


class GitSnapshotProvider:
    def __init__(self, revision: str = "HEAD", timeout_seconds: float = 5.0):
        self.revision = revision
        self.timeout_seconds = timeout_seconds

    def previous_snapshot(self, path: Path) -> Dict[str, Any]:
        path = Path(path)
        try:
            result = subprocess.run(
                ["git", "show", f"{self.revision}:./{path.name}"],
                cwd=str(path.parent),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise SnapshotUnavailableError(f"git not available: {e}") from e

        if result.returncode != 0:
            raise SnapshotUnavailableError(
                f"no committed version of {path.name}: {result.stderr.strip() or 'git show failed'}"
            )
        try:
            snapshot = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise SnapshotUnavailableError(f"committed {path.name} is not valid JSON: {e}") from e
        if not isinstance(snapshot, dict):
            raise SnapshotUnavailableError(f"committed {path.name} is not a JSON object")
        return snapshot


class StaticSnapshotProvider:
    def __init__(self, snapshot: Optional[Dict[str, Any]] = None):
        self.snapshot = snapshot

    def previous_snapshot(self, path: Path) -> Dict[str, Any]:
        if self.snapshot is None:
            raise SnapshotUnavailableError("no snapshot recorded")
        return copy.deepcopy(self.snapshot)
