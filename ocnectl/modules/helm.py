"""Install charts from the application catalog with the helm binary."""
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from .. import constants
from ..utils.shell import run_command

logger = logging.getLogger("ocnectl.helm")


@dataclass
class Application:
    name: str
    namespace: str
    release: str = ""
    version: str = ""
    repository: str = constants.CATALOG_REPOSITORY
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def release_name(self) -> str:
        return self.release or self.name

    @property
    def chart(self) -> str:
        return f"{self.repository.rstrip('/')}/{self.name}"


def does_release_exist(release: str, namespace: str, kubeconfig: str) -> bool:
    result = run_command(
        ["helm", "status", release, "--namespace", namespace, "--kubeconfig", kubeconfig],
        check=False, capture_output=True,
    )
    return result.returncode == 0


def install_application(app: Application, kubeconfig: str, timeout: str = "600s") -> None:
    logger.info(f"🚀 Installing {app.name} as '{app.release_name}' in namespace '{app.namespace}'")
    cmd = [
        "helm", "upgrade", "--install", app.release_name, app.chart,
        "--namespace", app.namespace, "--create-namespace",
        "--kubeconfig", kubeconfig,
        "--wait", "--timeout", timeout,
    ]
    if app.version:
        cmd += ["--version", app.version]

    values_path: Optional[str] = None
    if app.config:
        fd, values_path = tempfile.mkstemp(prefix=f"{app.release_name}-", suffix=".yaml")
        with os.fdopen(fd, "w") as f:
            yaml.safe_dump(app.config, f, default_flow_style=False)
        cmd += ["--values", values_path]

    try:
        run_command(cmd, capture_output=True)
    finally:
        if values_path:
            os.unlink(values_path)
    logger.info(f"✅ Application '{app.release_name}' installed successfully.")


def install_applications(apps: List[Application], kubeconfig: str) -> None:
    """Install applications in order, skipping releases that already exist."""
    for app in apps:
        if does_release_exist(app.release_name, app.namespace, kubeconfig):
            logger.debug("Release %s/%s already exists", app.namespace, app.release_name)
            continue
        install_application(app, kubeconfig)
