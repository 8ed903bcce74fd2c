"""Read-only scoring and reporting over recorded session metrics."""

from datetime import datetime, timezone
from statistics import mean

from ..config import DEFAULT_THRESHOLDS
from ..logging_config import get_logger
from ..storage import IStorage

logger = get_logger(__name__)

METRIC_NAMES = ("response_time", "error_rate", "completion_rate", "resource_utilization")

# Metrics where a smaller value is better
_LOWER_IS_BETTER = {"response_time", "error_rate", "resource_utilization"}


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def health_bucket(score: float) -> str:
    if score >= 0.9:
        return "excellent"
    if score >= 0.7:
        return "good"
    if score >= 0.5:
        return "fair"
    return "poor"


class SessionAnalytics:
    """Derives scores, health and reports from per-session metrics.

    Metrics are recorded as entries of named float values. Averages use every
    entry carrying the metric, except completion and error rates, which are
    cumulative and read from the latest entry.
    """

    def __init__(self, storage: IStorage | None = None, thresholds: dict | None = None):
        self._storage = storage
        self._thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self._metrics: dict[str, list[dict]] = {}

    @property
    def thresholds(self) -> dict[str, float]:
        return dict(self._thresholds)

    async def record_metrics(self, session_id: str, metrics: dict) -> dict:
        """Record one metrics entry for a session."""
        entry = {
            "timestamp": datetime.now(timezone.utc),
            "metrics": {name: float(value) for name, value in metrics.items()},
        }
        self._metrics.setdefault(session_id, []).append(entry)

        if self._storage is not None:
            await self._storage.save_metrics(session_id, entry["metrics"], entry["timestamp"])
        return entry

    async def load_metrics(self, session_id: str) -> list[dict]:
        """Reload a session's metrics from storage."""
        if self._storage is None:
            return self.get_metrics(session_id)
        entries = await self._storage.get_metrics(session_id)
        self._metrics[session_id] = entries
        return list(entries)

    def get_metrics(self, session_id: str) -> list[dict]:
        return list(self._metrics.get(session_id, []))

    def forget(self, session_id: str) -> None:
        self._metrics.pop(session_id, None)

    def _values(self, session_id: str, name: str) -> list[float]:
        return [
            entry["metrics"][name]
            for entry in self._metrics.get(session_id, [])
            if name in entry["metrics"]
        ]

    def summarize(self, session_id: str) -> dict[str, float]:
        """Representative value per metric (only metrics that were recorded)."""
        summary = {}
        for name in METRIC_NAMES:
            values = self._values(session_id, name)
            if not values:
                continue
            if name in ("completion_rate", "error_rate"):
                summary[name] = values[-1]
            elif name == "response_time":
                # zero entries are bookkeeping, not round-trips
                timed = [v for v in values if v > 0]
                summary[name] = mean(timed) if timed else 0.0
            else:
                summary[name] = mean(values)
        return summary

    def _scores(self, summary: dict[str, float]) -> dict[str, float]:
        thresholds = self._thresholds
        scores = {}
        if "response_time" in summary:
            scores["response_time"] = _clamp(
                1 - summary["response_time"] / thresholds["response_time"]
            )
        if "error_rate" in summary:
            scores["error_rate"] = _clamp(1 - summary["error_rate"] / thresholds["error_rate"])
        if "completion_rate" in summary:
            scores["completion_rate"] = _clamp(
                summary["completion_rate"] / thresholds["completion_rate"]
            )
        if "resource_utilization" in summary:
            scores["resource_utilization"] = _clamp(
                1 - summary["resource_utilization"] / thresholds["resource_utilization"]
            )
        return scores

    def get_performance_score(self, session_id: str) -> float:
        """Mean of the normalized scores in [0, 1]; 0.0 without metrics."""
        scores = self._scores(self.summarize(session_id))
        if not scores:
            return 0.0
        return round(mean(scores.values()), 4)

    def get_health_status(self, session_id: str) -> dict:
        summary = self.summarize(session_id)
        score = self.get_performance_score(session_id)
        issues, warnings = self._diagnose(summary)
        return {
            "status": health_bucket(score) if summary else "unknown",
            "score": score,
            "issues": issues,
            "warnings": warnings,
        }

    def _diagnose(self, summary: dict[str, float]) -> tuple[list[str], list[str]]:
        thresholds = self._thresholds
        issues: list[str] = []
        warnings: list[str] = []

        response_time = summary.get("response_time")
        if response_time is not None:
            if response_time > thresholds["response_time"]:
                issues.append(
                    f"Average response time {response_time:.0f} ms exceeds "
                    f"{thresholds['response_time']:.0f} ms"
                )
            elif response_time > 0.8 * thresholds["response_time"]:
                warnings.append("Average response time is close to its threshold")

        error_rate = summary.get("error_rate")
        if error_rate is not None:
            if error_rate > thresholds["error_rate"]:
                issues.append(
                    f"Error rate {error_rate:.2%} exceeds {thresholds['error_rate']:.2%}"
                )
            elif error_rate > 0:
                warnings.append(f"Errors recorded (rate {error_rate:.2%})")

        completion_rate = summary.get("completion_rate")
        if completion_rate is not None and completion_rate < thresholds["completion_rate"]:
            warnings.append(f"Completion rate {completion_rate:.0%} below target")

        utilization = summary.get("resource_utilization")
        if utilization is not None and utilization > thresholds["resource_utilization"]:
            warnings.append(f"Resource utilization {utilization:.0%} above target")

        return issues, warnings

    def _trends(self, session_id: str) -> dict[str, str]:
        trends = {}
        for name in METRIC_NAMES:
            values = self._values(session_id, name)
            if len(values) < 2:
                trends[name] = "insufficient_data"
                continue
            half = len(values) // 2
            before, after = mean(values[:half]), mean(values[half:])
            if abs(after - before) <= 1e-9:
                trends[name] = "stable"
            elif (after < before) == (name in _LOWER_IS_BETTER):
                trends[name] = "improving"
            else:
                trends[name] = "degrading"
        return trends

    def get_optimization_recommendations(self, session_id: str) -> dict[str, list[str]]:
        summary = self.summarize(session_id)
        thresholds = self._thresholds
        recommendations: dict[str, list[str]] = {
            "performance_improvements": [],
            "resource_optimizations": [],
            "quality_improvements": [],
            "efficiency_gains": [],
        }

        if summary.get("response_time", 0.0) > thresholds["response_time"]:
            recommendations["performance_improvements"].append(
                "Register more agents for slow steps or raise step timeouts"
            )
        if summary.get("resource_utilization", 0.0) > thresholds["resource_utilization"]:
            recommendations["resource_optimizations"].append(
                "Agents are saturated; add capacity or stagger session starts"
            )
        if summary.get("error_rate", 0.0) > thresholds["error_rate"]:
            recommendations["quality_improvements"].append(
                "Investigate failing agents; configure fallback capabilities"
            )
        if "completion_rate" in summary and summary["completion_rate"] < thresholds["completion_rate"]:
            recommendations["efficiency_gains"].append(
                "Resume or recover the session to finish its remaining steps"
            )
        return recommendations

    def generate_report(self, session_id: str) -> dict:
        metrics = self._metrics.get(session_id, [])
        return {
            "session_id": session_id,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "metrics_count": len(metrics),
            "summary": self.summarize(session_id),
            "performance_score": self.get_performance_score(session_id),
            "health": self.get_health_status(session_id),
            "trends": self._trends(session_id),
            "recommendations": self.get_optimization_recommendations(session_id),
        }

    def compare_sessions(self, session_ids: list[str]) -> dict:
        """Side-by-side scores, best first."""
        sessions = {
            session_id: {
                "performance_score": self.get_performance_score(session_id),
                "health": self.get_health_status(session_id)["status"],
                "summary": self.summarize(session_id),
            }
            for session_id in session_ids
        }
        ranking = sorted(
            session_ids,
            key=lambda session_id: sessions[session_id]["performance_score"],
            reverse=True,
        )
        return {
            "sessions": sessions,
            "ranking": ranking,
            "best": ranking[0] if ranking else None,
            "worst": ranking[-1] if ranking else None,
        }
