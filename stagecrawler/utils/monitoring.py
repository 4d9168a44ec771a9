"""
Monitoring and metrics collection for the crawler stages.
"""

import logging
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server


class CrawlerMetrics:
    """Prometheus metrics for one stage process, kept in a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.logger = logging.getLogger(__name__)
        self.registry = registry or CollectorRegistry()

        self.admissions_total = Counter(
            'crawler_admissions_total',
            'Candidate URLs processed by the frontier, by outcome',
            ['outcome'],
            registry=self.registry
        )
        self.fetches_total = Counter(
            'crawler_fetches_total',
            'Fetch jobs processed, by outcome',
            ['outcome'],
            registry=self.registry
        )
        self.bytes_fetched_total = Counter(
            'crawler_bytes_fetched_total',
            'Total bytes of fetched pages persisted',
            registry=self.registry
        )
        self.pages_parsed_total = Counter(
            'crawler_pages_parsed_total',
            'Parse jobs completed',
            registry=self.registry
        )
        self.links_extracted_total = Counter(
            'crawler_links_extracted_total',
            'Candidate links published by the parse stage',
            registry=self.registry
        )
        self.crawl_stats = Gauge(
            'crawler_stat',
            'Crawl statistics aggregated by the analytics sink',
            ['name'],
            registry=self.registry
        )

    def start_server(self, port: int):
        """Start Prometheus metrics HTTP server."""
        start_http_server(port, registry=self.registry)
        self.logger.info(f"Prometheus metrics server started on port {port}")

    def record_admission(self, outcome: str):
        self.admissions_total.labels(outcome=outcome).inc()

    def record_fetch(self, outcome: str, size: int = 0):
        self.fetches_total.labels(outcome=outcome).inc()
        if size:
            self.bytes_fetched_total.inc(size)

    def record_parse(self, links: int):
        self.pages_parsed_total.inc()
        self.links_extracted_total.inc(links)

    def update_crawl_stats(self, stats: Dict[str, Any]):
        """Update gauges from a statistics snapshot."""
        for key, value in stats.items():
            if isinstance(value, (int, float)):
                self.crawl_stats.labels(name=key).set(value)

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Current value of a sample, 0.0 when it was never recorded."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0
