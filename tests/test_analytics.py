"""Tests for SessionAnalytics."""

import pytest

from agency.sessions import SessionAnalytics
from agency.sessions.analytics import health_bucket


@pytest.fixture
def memory_analytics():
    """Analytics without persistence."""
    return SessionAnalytics()


class TestScoring:
    """Tests for the performance score."""

    @pytest.mark.asyncio
    async def test_no_metrics_scores_zero(self, memory_analytics):
        assert memory_analytics.get_performance_score("s1") == 0.0
        assert memory_analytics.get_health_status("s1")["status"] == "unknown"

    @pytest.mark.asyncio
    async def test_perfect_session(self, memory_analytics):
        await memory_analytics.record_metrics(
            "s1",
            {
                "response_time": 0.0,
                "error_rate": 0.0,
                "completion_rate": 1.0,
                "resource_utilization": 0.0,
            },
        )

        assert memory_analytics.get_performance_score("s1") == 1.0
        assert memory_analytics.get_health_status("s1")["status"] == "excellent"

    @pytest.mark.asyncio
    async def test_component_formulas(self, memory_analytics):
        """Test each clamped component against the default thresholds."""
        await memory_analytics.record_metrics(
            "s1",
            {
                "response_time": 2500.0,  # 1 - 2500/5000 = 0.5
                "error_rate": 0.1,  # 1 - 0.1/0.05 clamps to 0
                "completion_rate": 0.475,  # 0.475/0.95 = 0.5
                "resource_utilization": 0.4,  # 1 - 0.4/0.8 = 0.5
            },
        )

        assert memory_analytics.get_performance_score("s1") == pytest.approx(0.375)

    @pytest.mark.asyncio
    async def test_partial_metrics_average_available_scores(self, memory_analytics):
        await memory_analytics.record_metrics("s1", {"completion_rate": 0.95})

        assert memory_analytics.get_performance_score("s1") == 1.0

    @pytest.mark.asyncio
    async def test_rates_use_latest_entry(self, memory_analytics):
        """Test cumulative rates read from the newest entry."""
        await memory_analytics.record_metrics("s1", {"completion_rate": 0.0, "error_rate": 0.5})
        await memory_analytics.record_metrics("s1", {"completion_rate": 1.0, "error_rate": 0.0})

        summary = memory_analytics.summarize("s1")
        assert summary == {"completion_rate": 1.0, "error_rate": 0.0}

    @pytest.mark.asyncio
    async def test_response_time_ignores_zero_entries(self, memory_analytics):
        for value in (0.0, 100.0, 300.0):
            await memory_analytics.record_metrics("s1", {"response_time": value})

        assert memory_analytics.summarize("s1")["response_time"] == 200.0

    @pytest.mark.asyncio
    async def test_custom_thresholds(self):
        analytics = SessionAnalytics(thresholds={"response_time": 100.0})
        await analytics.record_metrics("s1", {"response_time": 50.0})

        assert analytics.thresholds["response_time"] == 100.0
        assert analytics.thresholds["error_rate"] == 0.05
        assert analytics.get_performance_score("s1") == 0.5

    @pytest.mark.parametrize(
        "score,bucket",
        [(1.0, "excellent"), (0.9, "excellent"), (0.7, "good"), (0.5, "fair"), (0.49, "poor")],
    )
    def test_health_buckets(self, score, bucket):
        assert health_bucket(score) == bucket


class TestDiagnostics:
    """Tests for health issues, trends and recommendations."""

    @pytest.mark.asyncio
    async def test_issues_and_recommendations(self, memory_analytics):
        await memory_analytics.record_metrics(
            "s1",
            {
                "response_time": 9000.0,
                "error_rate": 0.2,
                "completion_rate": 0.5,
                "resource_utilization": 0.95,
            },
        )

        health = memory_analytics.get_health_status("s1")
        assert health["status"] == "poor"
        assert len(health["issues"]) == 2
        assert len(health["warnings"]) == 2

        recommendations = memory_analytics.get_optimization_recommendations("s1")
        assert set(recommendations) == {
            "performance_improvements",
            "resource_optimizations",
            "quality_improvements",
            "efficiency_gains",
        }
        assert all(len(items) == 1 for items in recommendations.values())

    @pytest.mark.asyncio
    async def test_healthy_session_has_no_recommendations(self, memory_analytics):
        await memory_analytics.record_metrics(
            "s1", {"response_time": 10.0, "error_rate": 0.0, "completion_rate": 1.0}
        )

        recommendations = memory_analytics.get_optimization_recommendations("s1")
        assert all(items == [] for items in recommendations.values())
        assert memory_analytics.get_health_status("s1")["issues"] == []

    @pytest.mark.asyncio
    async def test_trends(self, memory_analytics):
        for response_time, completion in ((400.0, 0.2), (300.0, 0.4), (200.0, 0.6), (100.0, 0.8)):
            await memory_analytics.record_metrics(
                "s1",
                {
                    "response_time": response_time,
                    "completion_rate": completion,
                    "resource_utilization": 0.5,
                },
            )

        trends = memory_analytics.generate_report("s1")["trends"]
        assert trends["response_time"] == "improving"
        assert trends["completion_rate"] == "improving"
        assert trends["resource_utilization"] == "stable"
        assert trends["error_rate"] == "insufficient_data"

    @pytest.mark.asyncio
    async def test_degrading_error_rate(self, memory_analytics):
        for rate in (0.0, 0.0, 0.1, 0.2):
            await memory_analytics.record_metrics("s1", {"error_rate": rate})

        assert memory_analytics.generate_report("s1")["trends"]["error_rate"] == "degrading"


class TestReportsAndPersistence:
    """Tests for reports, comparison and storage."""

    @pytest.mark.asyncio
    async def test_generate_report(self, memory_analytics):
        await memory_analytics.record_metrics("s1", {"completion_rate": 1.0})

        report = memory_analytics.generate_report("s1")

        assert report["session_id"] == "s1"
        assert report["metrics_count"] == 1
        assert report["performance_score"] == 1.0
        assert report["health"]["status"] == "excellent"

    @pytest.mark.asyncio
    async def test_compare_sessions(self, memory_analytics):
        await memory_analytics.record_metrics("good", {"completion_rate": 1.0})
        await memory_analytics.record_metrics("bad", {"completion_rate": 0.0})

        comparison = memory_analytics.compare_sessions(["bad", "good", "empty"])

        assert comparison["ranking"][0] == "good"
        assert comparison["best"] == "good"
        assert comparison["sessions"]["good"]["health"] == "excellent"
        assert comparison["sessions"]["empty"]["performance_score"] == 0.0

    @pytest.mark.asyncio
    async def test_compare_matches_health_status(self, memory_analytics):
        """Test that comparison health agrees with get_health_status per session."""
        await memory_analytics.record_metrics("bad", {"completion_rate": 0.0})

        comparison = memory_analytics.compare_sessions(["bad", "empty"])

        assert comparison["sessions"]["empty"]["health"] == "unknown"
        for session_id in ("bad", "empty"):
            assert comparison["sessions"][session_id]["health"] == (
                memory_analytics.get_health_status(session_id)["status"]
            )

    def test_compare_nothing(self, memory_analytics):
        comparison = memory_analytics.compare_sessions([])

        assert comparison["best"] is None
        assert comparison["worst"] is None

    @pytest.mark.asyncio
    async def test_metrics_persist_and_reload(self, storage):
        writer = SessionAnalytics(storage)
        await writer.record_metrics("s1", {"completion_rate": 0.5})
        await writer.record_metrics("s1", {"completion_rate": 1.0})

        reader = SessionAnalytics(storage)
        assert reader.get_metrics("s1") == []
        loaded = await reader.load_metrics("s1")

        assert [entry["metrics"] for entry in loaded] == [
            {"completion_rate": 0.5},
            {"completion_rate": 1.0},
        ]
        assert reader.get_performance_score("s1") == 1.0

    @pytest.mark.asyncio
    async def test_forget(self, memory_analytics):
        await memory_analytics.record_metrics("s1", {"completion_rate": 1.0})

        memory_analytics.forget("s1")

        assert memory_analytics.get_metrics("s1") == []
