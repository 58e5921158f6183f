# src/netsynth/engine/setup.py
"""Component setup through an external executor.

The engine never waits on a setup. It starts the node's state machine,
hands the work to the executor and lets the future's continuation finish
the transition.
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future
from typing import Any

from netsynth.contracts import SetupExecutor
from netsynth.core.graph import ComponentNode
from netsynth.core.logging import get_logger

logger = get_logger(__name__)


def schedule_setup(
    node: ComponentNode, executor: SetupExecutor, fn: Callable[[], Any]
) -> Future[Any]:
    """Run fn as the setup of node.

    Raises:
        InvalidSetupTransition: If node is not in NOT_SETUP state
    """
    node.start_setup()
    future = executor.submit(fn)
    future.add_done_callback(lambda f: _setup_done(node, f))
    return future


def _setup_done(node: ComponentNode, future: Future[Any]) -> None:
    if future.cancelled():
        node.setup_failed()
        logger.warning("setup cancelled", node=node.node_id)
        return
    error = future.exception()
    if error is not None:
        node.setup_failed()
        logger.warning("setup failed", node=node.node_id, error=str(error))
        return
    node.setup_succeeded()
    logger.debug("setup finished", node=node.node_id)
