"""Cordon, drain and uncordon nodes with kubectl."""
import logging
import re
from typing import List

from ... import constants
from ...errors import DrainError, FatalError, ValidationError
from ...utils.shell import run_command
from ..waiter import Waiter, wait_for

logger = logging.getLogger("ocnectl.update.drain")

_DURATION = re.compile(r"^(\d+(\.\d+)?(ns|us|µs|ms|s|m|h))+$")


def validate_timeout(timeout: str) -> str:
    """Check a kubectl duration such as ``30m`` or ``1h30m``."""
    if timeout == "0" or _DURATION.match(timeout):
        return timeout
    raise ValidationError(f"Invalid timeout format {timeout}")


def drain_command(node_name: str, kubeconfig: str, timeout: str = constants.DEFAULT_DRAIN_TIMEOUT,
                  delete_emptydir_data: bool = False, disable_eviction: bool = False) -> List[str]:
    cmd = ["kubectl", "drain", "--kubeconfig", kubeconfig]
    if delete_emptydir_data:
        cmd.append("--delete-emptydir-data")
    if disable_eviction:
        cmd.append("--disable-eviction")
    cmd += ["--force", "--ignore-daemonsets", f"--timeout={validate_timeout(timeout)}", node_name]
    return cmd


def cordon_and_drain(node_name: str, kubeconfig: str, timeout: str = constants.DEFAULT_DRAIN_TIMEOUT,
                     delete_emptydir_data: bool = False, disable_eviction: bool = False) -> None:
    """Cordon a node and evict its pods.

    Raises:
        DrainError: If the drain fails. The node stays cordoned.
    """
    cmd = drain_command(node_name, kubeconfig, timeout, delete_emptydir_data, disable_eviction)

    def drain() -> None:
        result = run_command(cmd, check=False, capture_output=True)
        if result.returncode != 0:
            raise DrainError(node_name, (result.stderr or result.stdout or "").strip())

    waiter = Waiter(f"Draining node {node_name}", drain)
    if wait_for([waiter]):
        if isinstance(waiter.error, DrainError):
            raise waiter.error
        raise DrainError(node_name, str(waiter.error))


def uncordon(node_name: str, kubeconfig: str) -> None:
    def run() -> None:
        run_command(["kubectl", "uncordon", "--kubeconfig", kubeconfig, node_name], capture_output=True)

    waiter = Waiter(f"Un-cordoning node {node_name}", run)
    if wait_for([waiter]):
        raise FatalError(f"Error un-cordoning node {node_name}: {waiter.error}")
