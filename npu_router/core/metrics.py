"""
npu-router :: Prometheus Metrics

Monitoring for the router process.
Every Router owns its own registry, so several routers (tests, benchmarks)
can live in one process without colliding.

Metrics:
  - npu_router_requests_total{intent}: utterances processed
  - npu_router_request_failures_total{intent}: unsuccessful responses
  - npu_router_model_loads_total{model,outcome}: constructions (ok / failed / skipped)
  - npu_router_evictions_total{model}: idle evictions and manual unloads
  - npu_router_tokens_generated_total{model}: sampled tokens
  - npu_router_generation_seconds{model}: generate() latency histogram
  - npu_router_loaded_models: sessions currently resident

INL - 2025
"""

import time
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    start_http_server,
)


class RouterMetrics:
    """Prometheus metrics for npu-router."""

    def __init__(self, port: Optional[int] = None, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.info = Info("npu_router", "Router information", registry=self.registry)
        self.info.info({"engine": "npu-router"})

        # Counters
        self.requests_total = Counter(
            "npu_router_requests_total", "Utterances processed",
            ["intent"], registry=self.registry,
        )
        self.request_failures = Counter(
            "npu_router_request_failures_total", "Unsuccessful responses",
            ["intent"], registry=self.registry,
        )
        self.model_loads = Counter(
            "npu_router_model_loads_total", "Model constructions by outcome",
            ["model", "outcome"], registry=self.registry,
        )
        self.evictions = Counter(
            "npu_router_evictions_total", "Sessions unloaded",
            ["model"], registry=self.registry,
        )
        self.tokens_generated = Counter(
            "npu_router_tokens_generated_total", "Tokens sampled",
            ["model"], registry=self.registry,
        )

        # Histograms
        self.generation_seconds = Histogram(
            "npu_router_generation_seconds",
            "Generation latency",
            ["model"],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

        # Gauges
        self.loaded_models = Gauge(
            "npu_router_loaded_models", "Sessions currently resident",
            registry=self.registry,
        )

        if port is not None:
            start_http_server(port, registry=self.registry)

    def on_request(self, intent: str):
        self.requests_total.labels(intent=intent).inc()
        return time.perf_counter()

    def on_request_failed(self, intent: str):
        self.request_failures.labels(intent=intent).inc()

    def on_load(self, model: str, outcome: str):
        self.model_loads.labels(model=model, outcome=outcome).inc()

    def on_evict(self, model: str):
        self.evictions.labels(model=model).inc()

    def on_generation(self, model: str, start_time: float, output_tokens: int):
        self.generation_seconds.labels(model=model).observe(time.perf_counter() - start_time)
        if output_tokens > 0:
            self.tokens_generated.labels(model=model).inc(output_tokens)

    def set_loaded(self, count: int):
        self.loaded_models.set(count)

    def value(self, name: str, **labels) -> float:
        """Current sample value (0.0 when never observed)."""
        result = self.registry.get_sample_value(name, labels or None)
        return result if result is not None else 0.0

    def render(self) -> bytes:
        """Prometheus text exposition."""
        return generate_latest(self.registry)
