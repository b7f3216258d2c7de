import time

from prometheus_client import CollectorRegistry, Counter, generate_latest


class Metrics:
    """Prometheus counters for one app instance.

    Each instance owns its own ``CollectorRegistry`` and is stored on
    ``app.state``, so two apps in one process never share samples.
    """

    def __init__(self):
        self.registry = CollectorRegistry()
        self.started_at = time.monotonic()

        self.oauth_callback = Counter(
            "oauth_callback",
            "OAuth callback results",
            ["result"],
            registry=self.registry,
        )
        self.installation_changes = Counter(
            "installation_changes",
            "Installations created, updated or revoked",
            ["change"],
            registry=self.registry,
        )
        self.proxy_calls = Counter(
            "proxy_calls",
            "Proxied HighLevel API calls",
            ["outcome"],
            registry=self.registry,
        )
        self.token_refresh = Counter(
            "token_refresh",
            "Token refresh operations",
            ["result"],
            registry=self.registry,
        )
        self.refresh_sweeps = Counter(
            "refresh_sweeps",
            "Background refresh sweeps",
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "rate_limited",
            "Requests rejected by the rate limiter",
            ["scope"],
            registry=self.registry,
        )

    def value(self, name: str, **labels) -> float:
        """Current value of counter `name` (without the `_total` suffix)."""
        return self.registry.get_sample_value(f"{name}_total", labels) or 0.0

    def snapshot(self) -> dict:
        counters = {}
        for metric in self.registry.collect():
            for sample in metric.samples:
                if not sample.name.endswith("_total"):
                    continue
                if sample.labels:
                    key = ",".join(sample.labels.values())
                    counters.setdefault(sample.name, {})[key] = sample.value
                else:
                    counters[sample.name] = sample.value
        return {"counters": counters, "uptime_s": round(time.monotonic() - self.started_at, 1)}

    def exposition(self) -> bytes:
        return generate_latest(self.registry)
