"""Verify runner: allow-listed project checks inside a workspace."""

import asyncio
import logging
import shlex

from autoloop.models import VerifyResult

logger = logging.getLogger(__name__)

VERIFY_PROFILES: dict[str, str] = {
    "lint": "npm run lint",
    "build": "npm run build",
    "typecheck": "npm run typecheck",
    "test": "npm test",
}

TAIL_CHARS = 2000


def _tail(text: str, limit: int = TAIL_CHARS) -> str:
    return text[-limit:] if len(text) > limit else text


class VerifyRunner:
    """Runs one of a fixed set of verification commands."""

    def __init__(self, profiles: dict[str, str] | None = None, tail_chars: int = TAIL_CHARS):
        self.profiles = dict(profiles or VERIFY_PROFILES)
        self.tail_chars = tail_chars

    async def run_verify(self, workspace: str, profile: str) -> VerifyResult:
        """Run the profile's command in workspace.

        Unknown profiles fail closed without spawning anything. Cancelling the
        call kills the running command.
        """
        command = self.profiles.get(profile)
        if command is None:
            return VerifyResult(
                success=False,
                exit_code=-1,
                error=f"Profile '{profile}' not allowed/found.",
            )

        logger.info(f"Verify [{profile}] in {workspace}: {command}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *shlex.split(command),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workspace or None,
            )
        except OSError as e:
            logger.warning(f"Verify [{profile}] could not start: {e}")
            return VerifyResult(success=False, exit_code=-1, error=str(e))

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        exit_code = proc.returncode
        logger.info(f"Verify [{profile}] exited with {exit_code}")
        return VerifyResult(
            success=exit_code == 0,
            exit_code=exit_code,
            stdout_tail=_tail(stdout.decode(errors="replace"), self.tail_chars),
            stderr_tail=_tail(stderr.decode(errors="replace"), self.tail_chars),
        )
