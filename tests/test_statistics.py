import pytest

from gemstone_analysis.models import PrimaryImageDecision
from gemstone_analysis.statistics import AnalysisStatistics, format_duration, format_report


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def statistics(clock):
    stats = AnalysisStatistics(clock=clock)
    for _ in range(3):
        stats.add_item()
    stats.record_success(
        "a", 3, 0.03, 6000, primary=PrimaryImageDecision(image_id="img-1", index=1, score=92)
    )
    stats.record_success(
        "b",
        5,
        0.05,
        9000,
        primary=PrimaryImageDecision(image_id="img-7", index=2, score=45, needs_review=True),
        validation_passed=False,
    )
    stats.record_error("c", "SN-c", "invoking", "timed out", image_count=4, cost_usd=0.02, time_ms=180000)
    clock.now = 120.0
    return stats


class TestAnalysisStatistics:
    def test_summary(self, statistics):
        summary = statistics.get_report()["summary"]

        assert summary["total_items"] == 3
        assert summary["analyzed_items"] == 2
        assert summary["incomplete_items"] == 1
        assert summary["failed_items"] == 1
        assert summary["success_rate"] == 66.7
        assert summary["total_images"] == 8
        assert summary["avg_images_per_item"] == 4.0
        assert summary["elapsed"] == "2m 0s"

    def test_cost_includes_failed_items(self, statistics):
        cost = statistics.get_report()["cost"]

        assert cost["total_usd"] == pytest.approx(0.1)
        assert cost["per_item_usd"] == pytest.approx(0.05)
        assert cost["per_image_usd"] == pytest.approx(0.0125)
        assert cost["projected_100_items_usd"] == pytest.approx(5.0)
        assert cost["projected_1000_items_usd"] == pytest.approx(50.0)

    def test_performance(self, statistics):
        performance = statistics.get_report()["performance"]

        assert performance["avg_item_time_ms"] == 7500
        assert performance["items_per_minute"] == 1.0

    def test_primary_images(self, statistics):
        primary = statistics.get_report()["primary_images"]

        assert primary["total_selections"] == 2
        assert primary["flagged_for_review"] == 1
        assert primary["avg_score"] == 68.5
        assert primary["score_distribution"] == {
            "90-100": 1,
            "80-89": 0,
            "70-79": 0,
            "60-69": 0,
            "Below 60": 1,
        }

    def test_errors(self, statistics):
        report = statistics.get_report()

        assert report["errors_by_stage"] == {"invoking": 1}
        assert report["errors"][0]["context"] == "SN-c"
        assert report["errors"][0]["error"] == "timed out"

    def test_reported_errors_are_capped(self, clock):
        stats = AnalysisStatistics(clock=clock)
        for i in range(12):
            stats.record_error(f"g{i}", f"g{i}", "fetching", "HTTP 404")

        report = stats.get_report()

        assert report["summary"]["failed_items"] == 12
        assert len(report["errors"]) == 10

    def test_empty_run(self, clock):
        report = AnalysisStatistics(clock=clock).get_report()

        assert report["summary"]["success_rate"] == 0.0
        assert report["cost"]["per_item_usd"] == 0.0
        assert report["performance"]["items_per_minute"] == 0.0


class TestFormatting:
    @pytest.mark.parametrize(
        "ms, expected",
        [(850, "850ms"), (12300, "12.3s"), (245000, "4m 5s"), (3720000, "1h 2m")],
    )
    def test_format_duration(self, ms, expected):
        assert format_duration(ms) == expected

    def test_format_report(self, statistics):
        lines = format_report(statistics.get_report())

        assert "   Gemstones: 2/3 (66.7%), 1 incomplete" in lines
        assert "   Selections Made: 2 (1 flagged for review)" in lines
        assert "ERRORS (first 10):" in lines
        assert "   1. SN-c [invoking]: timed out" in lines
