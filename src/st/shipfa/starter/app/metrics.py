"""
Metrics Abstraction Layer for the Starter Service

Request handlers, the Mailgun client and the authentication routes emit counters and
timers through a single MetricsClient interface. The concrete backend is picked at
startup from Settings.metrics_backend:

- OTELMetricsClient: OpenTelemetry SDK, exported over OTLP and/or Prometheus
- TelegrafCompatibilityClient: Wrapper around aio-statsd's TelegrafStatsdClient
- NoOpMetricsClient: Discards everything (default, and used by tests)

Metric names are dotted and prefixed with the service prefix, e.g.
``starter.server.request.count`` or ``starter.webhook.mailgun.forwarded``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, Union

try:
    from opentelemetry import metrics
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False

from aio_statsd import TelegrafStatsdClient

logger = logging.getLogger(__name__)

TagDict = Optional[Dict[str, Any]]


class MetricsClient(ABC):
    """
    Abstract metrics client interface.

    Tags are passed as a flat dictionary; backends convert them to their own
    representation (StatsD tags, OpenTelemetry attributes).
    """

    @abstractmethod
    def increment(
        self, name: str, value: Union[int, float] = 1, tag_dict: TagDict = None
    ) -> None:
        """
        Increment a counter metric by the specified value.

        Args:
            name: Metric name (e.g., 'starter.server.request.count')
            value: Amount to increment by (default: 1)
            tag_dict: Optional tags/attributes for metric dimensions
        """

    @abstractmethod
    def gauge(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        """Set a gauge metric to the specified value."""

    @abstractmethod
    def timer(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        """
        Record a duration in seconds.

        Args:
            name: Metric name (e.g., 'starter.server.request.time')
            value: Duration in seconds
            tag_dict: Optional tags/attributes for metric dimensions
        """

    @abstractmethod
    async def close(self) -> None:
        """Flush pending metrics and release network resources."""


class OTELMetricsClient(MetricsClient):
    """
    OpenTelemetry metrics client.

    Instruments are created lazily on first use and cached by name.
    """

    def __init__(
        self,
        service_name: str = "starter",
        service_version: str = "1.0.0",
        exporter_endpoint: Optional[str] = None,
        export_interval_seconds: int = 30,
    ):
        if not OTEL_AVAILABLE:
            raise ImportError(
                "OpenTelemetry packages not available. Install with: "
                "pip install 'shipfast-starter[otel]'"
            )

        resource = Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: service_version,
        })

        if exporter_endpoint:
            reader = PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=exporter_endpoint),
                export_interval_millis=export_interval_seconds * 1000,
            )
            metrics.set_meter_provider(
                MeterProvider(resource=resource, metric_readers=[reader])
            )

        self.meter = metrics.get_meter(service_name)

        self._counters: Dict[str, Any] = {}
        self._gauges: Dict[str, Any] = {}
        self._histograms: Dict[str, Any] = {}

    @staticmethod
    def _attributes(tag_dict: TagDict) -> Dict[str, str]:
        return {str(k): str(v) for k, v in (tag_dict or {}).items()}

    def increment(
        self, name: str, value: Union[int, float] = 1, tag_dict: TagDict = None
    ) -> None:
        if name not in self._counters:
            self._counters[name] = self.meter.create_counter(name=name)
        self._counters[name].add(value, attributes=self._attributes(tag_dict))

    def gauge(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        # UpDownCounter is the closest synchronous instrument to a StatsD gauge.
        if name not in self._gauges:
            self._gauges[name] = self.meter.create_up_down_counter(name=name)
        self._gauges[name].add(value, attributes=self._attributes(tag_dict))

    def timer(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        if name not in self._histograms:
            self._histograms[name] = self.meter.create_histogram(name=name, unit="s")
        self._histograms[name].record(value, attributes=self._attributes(tag_dict))

    async def close(self) -> None:
        meter_provider = metrics.get_meter_provider()
        if hasattr(meter_provider, "shutdown"):
            try:
                meter_provider.shutdown()
            except Exception as e:
                logger.warning(f"Error closing OTEL metrics client: {e}")


class TelegrafCompatibilityClient(MetricsClient):
    """
    MetricsClient wrapper around an aio-statsd TelegrafStatsdClient.

    The wrapped client must already be connected; close() closes it.
    """

    def __init__(self, telegraf_client: Any):
        self.client = telegraf_client

    def increment(
        self, name: str, value: Union[int, float] = 1, tag_dict: TagDict = None
    ) -> None:
        self.client.increment(name, value, tag_dict=tag_dict or {})

    def gauge(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        self.client.gauge(name, value, tag_dict=tag_dict or {})

    def timer(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        self.client.timer(name, value, tag_dict=tag_dict or {})

    async def close(self) -> None:
        try:
            await self.client.close()
        except Exception as e:
            logger.warning(f"Error closing Telegraf client: {e}")


class NoOpMetricsClient(MetricsClient):
    """Metrics client that records nothing."""

    def increment(
        self, name: str, value: Union[int, float] = 1, tag_dict: TagDict = None
    ) -> None:
        pass

    def gauge(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        pass

    def timer(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        pass

    async def close(self) -> None:
        pass


async def create_metrics_client(
    backend: str,
    service_name: str = "starter",
    host: str = "localhost",
    port: int = 8125,
    otel_endpoint: Optional[str] = None,
    debug: bool = False,
) -> MetricsClient:
    """
    Create and connect the metrics client for the requested backend.

    Args:
        backend: Backend type ('otel', 'telegraf', 'none')
        service_name: Service name for OTEL resource attribution
        host: Telegraf/StatsD host
        port: Telegraf/StatsD port
        otel_endpoint: OpenTelemetry OTLP endpoint
        debug: Enable debug logging in the StatsD client

    Returns:
        MetricsClient: Ready to use metrics client

    Raises:
        ValueError: If the backend is unknown or its packages are missing
    """
    backend = backend.lower()

    if backend == "otel":
        if not OTEL_AVAILABLE:
            raise ValueError(
                "OpenTelemetry packages required for 'otel' backend. "
                "Install with: pip install 'shipfast-starter[otel]'"
            )
        return OTELMetricsClient(
            service_name=service_name, exporter_endpoint=otel_endpoint
        )

    if backend == "telegraf":
        telegraf_client = TelegrafStatsdClient(host=host, port=port, debug=debug)
        await telegraf_client.connect()
        return TelegrafCompatibilityClient(telegraf_client)

    if backend == "none":
        logger.info("Metrics collection disabled (no-op client)")
        return NoOpMetricsClient()

    raise ValueError(
        f"Invalid metrics backend: {backend}. "
        f"Supported backends: 'otel', 'telegraf', 'none'"
    )
