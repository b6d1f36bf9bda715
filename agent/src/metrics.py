from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class AgentMetrics:
    """Prometheus metrics exported by the agent on ``/metrics``."""

    build_info: Info = field(
        default_factory=lambda: Info(
            "kubeip_agent_build",
            "Build information for the agent",
        )
    )
    node_resolutions_total: Counter = field(
        default_factory=lambda: Counter(
            "kubeip_agent_node_resolutions_total",
            "Total attempts to resolve the node the agent runs on",
            ["outcome"],
        )
    )
    ready: Gauge = field(
        default_factory=lambda: Gauge(
            "kubeip_agent_ready",
            "Whether the agent has resolved its node (1=yes, 0=no)",
        )
    )


METRICS = AgentMetrics()
