from typing import Dict
from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class RelayMetrics:
    """
    Prometheus metrics for one Relay.
    Each instance owns its registry so several relays (or tests) can coexist in a process.
    """
    def __init__(self, stream: str, group: str, consumer: str):
        self.registry = CollectorRegistry()
        self._labels = {"stream": stream, "group": group, "consumer": consumer}
        names = list(self._labels)

        self.records_fetched = Counter(
            "streamrelay_records_fetched", "Records fetched from the stream", names, registry=self.registry)
        self.records_delivered = Counter(
            "streamrelay_records_delivered", "Records confirmed by the sink", names, registry=self.registry)
        self.records_acked = Counter(
            "streamrelay_records_acked", "Records acknowledged in the consumer group", names, registry=self.registry)
        self.records_rejected = Counter(
            "streamrelay_records_rejected", "Records the sink can never deliver", names, registry=self.registry)
        self.send_failures = Counter(
            "streamrelay_send_failures", "Batches that failed to send", names, registry=self.registry)
        self.reclaimed = Counter(
            "streamrelay_reclaimed", "Pending entries reclaimed from idle consumers", names, registry=self.registry)
        self.running = Gauge(
            "streamrelay_running", "1 while the processing loop is running", names, registry=self.registry)

    def inc(self, counter: Counter, amount: int = 1) -> None:
        if amount > 0:
            counter.labels(**self._labels).inc(amount)

    def set_running(self, running: bool) -> None:
        self.running.labels(**self._labels).set(1 if running else 0)

    def snapshot(self) -> Dict[str, float]:
        res = {}
        for metric in self.registry.collect():
            for sample in metric.samples:
                if sample.name.endswith("_created"):
                    continue
                res[sample.name] = sample.value
        return res

    def render(self) -> bytes:
        return generate_latest(self.registry)
