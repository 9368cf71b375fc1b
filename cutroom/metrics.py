"""Prometheus metrics for pipeline observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- cutroom_pipelines_created_total: Counter of pipelines created
- cutroom_stage_transitions_total: Counter of stage transitions by stage/status
- cutroom_attribution_percentage_total: Counter of percentage points credited
- cutroom_stage_execution_duration_seconds: Histogram of handler run time
- cutroom_rate_limited_total: Counter of requests rejected by the rate limiter

Each CutroomMetrics instance owns its registry so that several application
instances (for example in tests) never collide on metric names.
"""

import logging
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from cutroom.state.models import Attribution, StageName, StageStatus


logger = logging.getLogger(__name__)


# Stage handlers range from instant rule-based output to multi-minute
# generation calls
DEFAULT_DURATION_BUCKETS = (
    0.1,
    0.5,
    1.0,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
)


class CutroomMetrics:
    """Container for all Cutroom Prometheus metrics.

    Attributes:
        registry: The Prometheus registry for these metrics.

    Example:
        >>> metrics = CutroomMetrics()
        >>> metrics.record_stage_transition(StageName.SCRIPT, StageStatus.CLAIMED)
        >>> generate_metrics_output(metrics.registry)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics.

        Args:
            registry: Optional Prometheus registry. A fresh registry is
                      created when None.
        """
        self.registry = registry or CollectorRegistry()

        self.pipelines_created_total = Counter(
            "cutroom_pipelines_created_total",
            "Total number of pipelines created",
            registry=self.registry,
        )

        self.stage_transitions_total = Counter(
            "cutroom_stage_transitions_total",
            "Stage transitions by stage name and resulting status",
            labelnames=["stage", "status"],
            registry=self.registry,
        )

        self.attribution_percentage_total = Counter(
            "cutroom_attribution_percentage_total",
            "Attribution percentage points credited to agents",
            labelnames=["stage"],
            registry=self.registry,
        )

        self.stage_execution_duration_seconds = Histogram(
            "cutroom_stage_execution_duration_seconds",
            "Time spent inside stage handlers in seconds",
            labelnames=["stage", "result"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.rate_limited_total = Counter(
            "cutroom_rate_limited_total",
            "Requests rejected by the rate limiter",
            labelnames=["action"],
            registry=self.registry,
        )

    def record_pipeline_created(self) -> None:
        self.pipelines_created_total.inc()

    def record_stage_transition(self, stage: StageName, status: StageStatus) -> None:
        """Record that a stage entered ``status``."""
        self.stage_transitions_total.labels(
            stage=StageName(stage).value,
            status=StageStatus(status).value,
        ).inc()

    def record_attribution(self, attribution: Attribution) -> None:
        self.attribution_percentage_total.labels(
            stage=attribution.stage_name.value,
        ).inc(attribution.percentage)

    def record_execution_duration(
        self,
        stage: StageName,
        success: bool,
        duration_seconds: float,
    ) -> None:
        """Record how long a stage handler ran.

        Args:
            stage: The executed stage.
            success: Whether the handler reported success.
            duration_seconds: Wall-clock handler time.
        """
        self.stage_execution_duration_seconds.labels(
            stage=StageName(stage).value,
            result="success" if success else "failure",
        ).observe(duration_seconds)

    def record_rate_limited(self, action: str) -> None:
        self.rate_limited_total.labels(action=action).inc()


def generate_metrics_output(registry: CollectorRegistry) -> bytes:
    """Generate Prometheus text output for the /metrics endpoint."""
    return generate_latest(registry)
