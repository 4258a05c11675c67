"""Snapshot writer: capture repository state and session output for review.

Layout under the snapshot root:

    <job_id>/contract.json                  capability contract (optional)
    <job_id>/<snapshot_id>/git_status.txt
    <job_id>/<snapshot_id>/git_diff.patch
    <job_id>/<snapshot_id>/terminal_tail.txt
    <job_id>/<snapshot_id>/manifest.json
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from autoloop.config import AUTOLOOP_SNAPSHOTS
from autoloop.models import SnapshotResult

logger = logging.getLogger(__name__)

SOURCES = {
    "git_status": "git_status.txt",
    "git_diff": "git_diff.patch",
    "terminal_tail": "terminal_tail.txt",
}
MANIFEST = "manifest.json"
CONTRACT = "contract.json"


async def _run_git(*args: str, cwd: str | None = None) -> dict:
    """Execute git command and return output."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except OSError as e:
        return {"exit_code": -1, "stdout": "", "stderr": str(e)}
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
        raise
    return {
        "exit_code": proc.returncode,
        "stdout": stdout.decode(errors="replace"),
        "stderr": stderr.decode(errors="replace"),
    }


def new_snapshot_id(now: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp with ':' and '.' replaced so it is path-safe."""
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
    return stamp.replace(":", "-").replace(".", "-")


@dataclass
class ContractLevels:
    minimum: list[str] = field(default_factory=list)
    middle: list[str] = field(default_factory=list)
    maximum: list[str] = field(default_factory=list)


@dataclass
class Contract:
    """Capability contract a job is reviewed against."""

    id: str
    levels: ContractLevels = field(default_factory=ContractLevels)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "levels": {
                "minimum": list(self.levels.minimum),
                "middle": list(self.levels.middle),
                "maximum": list(self.levels.maximum),
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> Contract:
        levels = data.get("levels") or {}
        return cls(
            id=str(data.get("id", "")),
            levels=ContractLevels(
                minimum=list(levels.get("minimum") or []),
                middle=list(levels.get("middle") or []),
                maximum=list(levels.get("maximum") or []),
            ),
        )


@dataclass
class SnapshotData:
    """A loaded snapshot, ready to be put in front of a reviewer."""

    job_id: str
    snapshot_id: str
    manifest: dict
    diff: str
    logs: str
    contract: Contract | None = None


class SnapshotWriter:
    """Writes and reads snapshot directories."""

    def __init__(
        self,
        base_dir: Path | None = None,
        output_provider: Callable[[], list[str]] | None = None,
    ):
        self.base_dir = Path(base_dir or AUTOLOOP_SNAPSHOTS)
        self._output_provider = output_provider

    def snapshot_dir(self, job_id: str, snapshot_id: str) -> Path:
        return self.base_dir / job_id / snapshot_id

    async def create_snapshot(
        self,
        workspace: str,
        job_id: str,
        intent: str = "",
        recent_output: list[str] | None = None,
        verify_exit_code: int | None = None,
    ) -> SnapshotResult:
        """Capture git status, diff and the recent terminal tail for job_id."""
        try:
            now = datetime.now(timezone.utc)
            snapshot_id = new_snapshot_id(now)
            target = self.snapshot_dir(job_id, snapshot_id)
            target.mkdir(parents=True, exist_ok=True)

            status = await _run_git("status", "--porcelain", cwd=workspace or None)
            diff = await _run_git("diff", cwd=workspace or None)
            if status["exit_code"] != 0:
                logger.warning(f"git status failed in {workspace}: {status['stderr'].strip()}")

            if recent_output is None:
                recent_output = self._output_provider() if self._output_provider else []

            (target / SOURCES["git_status"]).write_text(status["stdout"])
            (target / SOURCES["git_diff"]).write_text(diff["stdout"])
            (target / SOURCES["terminal_tail"]).write_text("\n".join(recent_output))

            changed = [line for line in status["stdout"].split("\n") if line.strip()]
            summary = {
                "dirty": bool(status["stdout"].strip()),
                "changed_files": len(changed),
                "verify_exit_code": verify_exit_code,
            }
            manifest = {
                "snapshot_id": snapshot_id,
                "job_id": job_id,
                "workspace": workspace,
                "created_at": now.isoformat(),
                "intent": intent,
                "sources": dict(SOURCES),
                "summary": summary,
            }
            (target / MANIFEST).write_text(json.dumps(manifest, indent=2))
        except OSError as e:
            logger.error(f"Snapshot for job {job_id} failed: {e}")
            return SnapshotResult(success=False, error=str(e))

        logger.info(f"Created snapshot {snapshot_id} for job {job_id}")
        return SnapshotResult(success=True, snapshot_id=snapshot_id, summary=summary)

    def load_snapshot(self, job_id: str, snapshot_id: str) -> SnapshotData:
        """Read a snapshot back. Raises FileNotFoundError when it is missing."""
        target = self.snapshot_dir(job_id, snapshot_id)
        try:
            diff = (target / SOURCES["git_diff"]).read_text()
            logs = (target / SOURCES["terminal_tail"]).read_text()
            manifest = json.loads((target / MANIFEST).read_text())
        except FileNotFoundError as e:
            raise FileNotFoundError(f"Snapshot files not found: {target}") from e
        return SnapshotData(
            job_id=job_id,
            snapshot_id=snapshot_id,
            manifest=manifest,
            diff=diff,
            logs=logs,
            contract=self.load_contract(job_id),
        )

    # --- Contracts ---

    def save_contract(self, job_id: str, contract: Contract) -> Path:
        path = self.base_dir / job_id / CONTRACT
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(contract.to_dict(), indent=2))
        return path

    def load_contract(self, job_id: str) -> Contract | None:
        path = self.base_dir / job_id / CONTRACT
        if not path.exists():
            return None
        try:
            return Contract.from_dict(json.loads(path.read_text()))
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable contract for job {job_id}: {e}")
            return None
