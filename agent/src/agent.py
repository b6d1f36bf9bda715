from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

from kubernetes.client import CoreV1Api

from agent.src.config import AgentConfig
from agent.src.kube import KubeConfigError, build_core_api, retrieve_kube_config
from agent.src.metrics import METRICS
from agent.src.node import Node, NodeExplorer, NodeResolutionError


class AgentError(RuntimeError):
    """Raised when the agent cannot complete startup."""


def run(
    stop_event: threading.Event,
    log: Any,
    cfg: AgentConfig,
    *,
    ready: threading.Event | None = None,
    explorer_factory: Callable[..., NodeExplorer] = NodeExplorer,
) -> Node:
    """Bootstrap the agent, resolve the current node, then block until stopped.

    Each stage failure is raised as :class:`AgentError` naming the stage,
    chained to the underlying error.  ``ready`` is set once the node has
    been resolved and cleared again on return.
    """
    log.with_fields(**{"develop-mode": cfg.develop_mode}).info("kubeip agent started")
    log.debug(
        "retry policy: %d attempts every %ss",
        cfg.retry_attempts,
        cfg.retry_interval.total_seconds(),
    )

    try:
        configuration = retrieve_kube_config(log, cfg)
    except KubeConfigError as exc:
        raise AgentError(f"retrieving kube config: {exc}") from exc

    try:
        core_api: CoreV1Api = build_core_api(configuration)
    except Exception as exc:
        raise AgentError(f"initializing kubernetes client: {exc}") from exc

    explorer = explorer_factory(
        core_api,
        node_name=cfg.node_name,
        develop_mode=cfg.develop_mode,
    )
    try:
        node = explorer.get_node()
    except NodeResolutionError as exc:
        METRICS.node_resolutions_total.labels(outcome="error").inc()
        raise AgentError(f"getting node: {exc}") from exc
    METRICS.node_resolutions_total.labels(outcome="success").inc()

    log.debug("node name: %s", node.name)
    log.with_fields(
        cloud=node.cloud,
        instance=node.instance,
        region=node.region,
        zone=node.zone,
        pool=node.pool,
    ).info("resolved node %s", node.name)

    if ready is not None:
        ready.set()
    METRICS.ready.set(1)
    try:
        stop_event.wait()
    finally:
        if ready is not None:
            ready.clear()
        METRICS.ready.set(0)

    log.info("kubeip agent stopped")
    return node
