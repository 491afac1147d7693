from typing import Optional

import typer

from .. import constants
from ..modules.update import UpdateOptions, update_node

app = typer.Typer(help="Manage cluster nodes")


@app.command("update")
def update_cmd(
    node: str = typer.Option(..., "--node", "-N", help="Name of the node to update"),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", "-k", help="Kubeconfig of the cluster"),
    timeout: str = typer.Option(constants.DEFAULT_DRAIN_TIMEOUT, "--timeout", "-t",
                                help="How long to wait for the node to drain, such as 30m or 1h"),
    delete_emptydir_data: bool = typer.Option(False, "--delete-emptydir-data", "-c",
                                              help="Drain pods that use emptyDir volumes"),
    disable_eviction: bool = typer.Option(False, "--disable-eviction", "-p",
                                          help="Delete pods instead of evicting them, bypassing PodDisruptionBudgets"),
    pre_update_mode: str = typer.Option("default", "--pre-update-mode", "-m",
                                        help="Run pre-update steps: default, skip or only"),
):
    """Update a node to the ostree image staged on it."""
    update_node(UpdateOptions(
        node_name=node,
        kubeconfig=kubeconfig or "",
        timeout=timeout,
        delete_emptydir_data=delete_emptydir_data,
        disable_eviction=disable_eviction,
        pre_update_mode=pre_update_mode,
    ))
