"""Prometheus metrics for pipeline and batch execution."""

from prometheus_client import Counter, Histogram

# Pipeline step metrics
step_latency_ms = Histogram(
    "pipeline_step_latency_ms",
    "Pipeline step latency in milliseconds",
    ["step", "outcome"],
    buckets=[10, 50, 100, 500, 1000, 5000, 15000, 30000, 60000, 120000],
)

step_errors_total = Counter(
    "pipeline_step_errors_total",
    "Total pipeline step attempt failures",
    ["step", "reason"],
)

llm_calls_total = Counter(
    "llm_calls_total",
    "Total LLM requests",
    ["purpose", "outcome"],
)

llm_tokens_total = Counter(
    "llm_tokens_total",
    "Total LLM tokens used",
    ["purpose"],
)

# Batch metrics
messages_completed_total = Counter(
    "batch_messages_completed_total",
    "Messages marked COMPLETED",
    ["stream"],
)

watermark_events_total = Counter(
    "batch_watermark_events_total",
    "Watermark advances and holds",
    ["stream", "event"],
)

proposals_total = Counter(
    "batch_proposals_total",
    "Proposals after ruleset review",
    ["outcome"],
)

ruleset_cache_hits_total = Counter(
    "ruleset_cache_hits_total",
    "Ruleset cache lookups",
    ["result"],
)


class PrometheusPipelineMetrics:
    """Prometheus-based pipeline metrics implementation."""

    def record_step(self, step: str, outcome: str, latency_ms: float) -> None:
        """Record step attempt latency."""
        step_latency_ms.labels(step=step, outcome=outcome).observe(latency_ms)

    def inc_step_error(self, step: str, reason: str) -> None:
        """Increment step error counter."""
        step_errors_total.labels(step=step, reason=reason).inc()

    def record_llm_call(self, purpose: str, outcome: str, tokens: int = 0) -> None:
        """Record an LLM request and its token usage."""
        llm_calls_total.labels(purpose=purpose, outcome=outcome).inc()
        if tokens:
            llm_tokens_total.labels(purpose=purpose).inc(tokens)


class PrometheusBatchMetrics:
    """Prometheus-based batch processor metrics implementation."""

    def inc_completed(self, stream: str, count: int) -> None:
        """Count messages transitioned to COMPLETED."""
        if count:
            messages_completed_total.labels(stream=stream).inc(count)

    def inc_watermark(self, stream: str, event: str) -> None:
        """Count watermark advance/hold/skip events."""
        watermark_events_total.labels(stream=stream, event=event).inc()

    def inc_proposals(self, outcome: str, count: int = 1) -> None:
        """Count accepted or rejected proposals."""
        if count:
            proposals_total.labels(outcome=outcome).inc(count)

    def inc_ruleset_cache(self, result: str) -> None:
        """Count ruleset cache hits/misses."""
        ruleset_cache_hits_total.labels(result=result).inc()
