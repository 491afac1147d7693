import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from ..errors import FatalError

logger = logging.getLogger("ocnectl.shell")


def run_command(
    cmd: List[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    cwd: Optional[Path] = None,
) -> subprocess.CompletedProcess:
    """Run an external tool such as helm, kubectl or clusterctl.

    Raises:
        FatalError: If the command exits non-zero and ``check`` is set, or the tool is missing
    """
    cmd_str = ' '.join(cmd)
    logger.debug(f"💻 Running: {cmd_str}")
    try:
        result = subprocess.run(
            cmd,
            check=check,
            text=True,
            cwd=cwd,
            stdout=subprocess.PIPE if capture_output else None,
            stderr=subprocess.PIPE if capture_output else None,
        )
        if capture_output:
            logger.debug(f"🟢 Output:\n{result.stdout}")
        return result
    except FileNotFoundError as e:
        raise FatalError(f"{cmd[0]} is not installed or not on PATH") from e
    except subprocess.CalledProcessError as e:
        msg = f"Command failed: {cmd_str} (exit code: {e.returncode})"
        if capture_output:
            msg += f"\nStdout:\n{e.stdout}\nStderr:\n{e.stderr}"
        raise FatalError(msg) from e
