from typing import Dict, List, Optional

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# Transcription service metrics
active_sessions = Gauge('transcription_active_sessions', 'Number of active speaker sessions')
batches_total = Counter('transcription_batches_total', 'Flushed batches by outcome', ['outcome'])
provider_calls_total = Counter('transcription_provider_calls_total', 'Upstream provider calls', ['operation', 'status'])
rate_limits_total = Counter('transcription_rate_limits_total', 'Upstream 429 responses')
batch_latency_seconds = Histogram('transcription_batch_latency_seconds', 'Flush-to-emit latency')
languages_detected_total = Counter('transcription_language_detected_total', 'Accepted transcripts by language', ['language'])
degraded_sessions_total = Counter('transcription_degraded_sessions_total', 'Sessions that disabled translation')


def record_batch(outcome: str, latency: Optional[float] = None):
    """Record a flushed batch outcome"""
    batches_total.labels(outcome=outcome).inc()
    if latency is not None:
        batch_latency_seconds.observe(latency)


def record_provider_call(operation: str, status: str):
    provider_calls_total.labels(operation=operation, status=status).inc()
    if status == "rate_limited":
        rate_limits_total.inc()


def record_language(language: str):
    languages_detected_total.labels(language=language).inc()


def update_active_sessions(count: int):
    active_sessions.set(count)


async def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


class SessionStats:
    """Running per-session counters reported on /sessions and at close"""

    def __init__(self):
        self.batches = 0
        self.emitted = 0
        self.empty = 0
        self.rejected = 0
        self.duplicates = 0
        self.failed = 0
        self.provider_errors = 0
        self.rate_limits = 0
        self.latencies: List[float] = []
        self.scores: List[float] = []
        self.languages: Dict[str, int] = {}

    def record(self, outcome: str, latency_ms: Optional[float] = None):
        self.batches += 1
        if outcome == "emitted":
            self.emitted += 1
        elif outcome == "empty":
            self.empty += 1
        elif outcome == "rejected":
            self.rejected += 1
        elif outcome == "duplicate":
            self.duplicates += 1
        elif outcome == "failed":
            self.failed += 1
        if latency_ms is not None:
            self.latencies.append(latency_ms)
        record_batch(outcome, latency_ms / 1000.0 if latency_ms is not None else None)

    def record_emitted(self, language: str, score: float):
        self.scores.append(score)
        self.languages[language] = self.languages.get(language, 0) + 1
        record_language(language)

    def record_provider_call(self, operation: str, status: str):
        if status != "success":
            self.provider_errors += 1
        if status == "rate_limited":
            self.rate_limits += 1
        record_provider_call(operation, status)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self.latencies) / len(self.latencies) if self.latencies else 0.0

    @property
    def avg_score(self) -> float:
        return sum(self.scores) / len(self.scores) if self.scores else 0.0

    def summary(self) -> Dict[str, object]:
        return {
            "batches": self.batches,
            "emitted": self.emitted,
            "empty": self.empty,
            "rejected": self.rejected,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "avg_latency_ms": round(self.avg_latency_ms),
            "avg_score": round(self.avg_score),
            "languages": dict(self.languages),
            "provider_errors": self.provider_errors,
            "rate_limits": self.rate_limits,
        }
