from .metrics import Counter, Histogram, remote_call_latency_seconds, remote_call_total

__all__ = ["Counter", "Histogram", "remote_call_latency_seconds", "remote_call_total"]
