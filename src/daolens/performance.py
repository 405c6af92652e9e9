"""Runtime counters exported as Prometheus metrics.

`metrics` is a module-level singleton; import it from anywhere and update it in place. No internal imports
in this module.
"""

from typing import Any

from prometheus_client import Counter
from prometheus_client import Histogram
from prometheus_client.metrics import MetricWrapperBase


def _collect(metric: MetricWrapperBase) -> float | dict[str, float]:
    """Read current value of a metric; labeled metrics are returned per label set"""
    values: dict[str, float] = {}
    for family in metric.collect():
        for sample in family.samples:
            if not sample.name.endswith(('_total', '_sum')):
                continue
            if sample.labels:
                values[','.join(sample.labels.values())] = sample.value
            else:
                return round(sample.value, 2)
    return values


class _MetricManager:
    # NOTE: If you want your metric to be part of the stats, it should not be private (start with _)

    # NOTE: Orchestrator metrics
    requests_total: Counter = Counter('daolens_requests_total', 'Total number of analytics requests', ['category'])
    cache_hits: Counter = Counter('daolens_cache_hits_total', 'Requests served from cache', ['category'])
    cache_misses: Counter = Counter('daolens_cache_misses_total', 'Requests not served from cache', ['category'])
    cache_stale: Counter = Counter(
        'daolens_cache_stale_total', 'Cache entries ignored as expired or empty', ['category']
    )
    remote_fallbacks: Counter = Counter(
        'daolens_remote_fallbacks_total', 'Remote source lookups that fell back to loaders', ['category']
    )
    requests_cancelled: Counter = Counter(
        'daolens_requests_cancelled_total', 'Requests superseded or torn down', ['category']
    )
    requests_failed: Counter = Counter('daolens_requests_failed_total', 'Requests failed', ['category'])

    # NOTE: Crawler metrics
    accounts_visited: Counter = Counter('daolens_crawler_accounts_visited_total', 'Accounts queried by the crawler')
    edges_found: Counter = Counter('daolens_crawler_edges_total', 'Delegation edges recorded by the crawler')
    partial_failures: Counter = Counter(
        'daolens_crawler_partial_failures_total', 'Per-account queries that failed and were skipped'
    )
    time_in_crawl: Histogram = Histogram('daolens_crawler_duration_seconds', 'Time spent in a single crawl')

    # NOTE: Datasource metrics
    time_in_requests: Histogram = Histogram(
        'daolens_datasource_time_in_requests_seconds', 'Time spent in datasource requests', ['datasource']
    )
    _http_errors: Counter = Counter(
        'daolens_http_errors_total',
        'HTTP requests that failed, by datasource and status (0 for transport errors)',
        ['datasource', 'status'],
    )

    def set_http_error(self, datasource: str, status: int) -> None:
        self._http_errors.labels(datasource=datasource, status=status).inc()

    def stats(self) -> dict[str, Any]:
        return {
            name: _collect(value)
            for name, value in vars(type(self)).items()
            if not name.startswith('_') and isinstance(value, MetricWrapperBase)
        }


metrics = _MetricManager()


def get_stats() -> dict[str, Any]:
    return {
        'metrics': metrics.stats(),
    }
