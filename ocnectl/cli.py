import logging
import sys

import typer

from .commands import cluster, image, node
from .errors import OcneError
from .logging import setup_logging

app = typer.Typer(help="Manage the lifecycle of Kubernetes clusters")

logger = logging.getLogger("ocnectl")

debug_mode = False

app.add_typer(cluster.app, name="cluster")
app.add_typer(node.app, name="node")
app.add_typer(image.app, name="image")


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """OCNECTL - Kubernetes cluster lifecycle CLI."""
    global debug_mode
    debug_mode = debug
    setup_logging(debug)
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug mode enabled")


def run():
    try:
        app()
    except OcneError as e:
        if debug_mode:
            logger.exception(f"❌ {e}")
        else:
            logger.error(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
