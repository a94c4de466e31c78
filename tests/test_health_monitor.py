"""Tests for integration health scoring and alerting."""

from datetime import datetime, timedelta, timezone

import pytest

from scripts.sync import health_monitor

NOW = datetime.now(timezone.utc)


def ago(**kwargs):
    return (NOW - timedelta(**kwargs)).isoformat()


class TestPlatformChecks:
    def test_calendly_without_recent_logs(self, db):
        result = health_monitor.check_calendly("p1", NOW)
        assert result["health_score"] == 60
        assert result["metrics"]["warning"] == "No recent sync activity"

    def test_calendly_low_success_rate_and_stale_events(self, db):
        db.seed(
            "calendly_sync_logs",
            {"project_id": "p1", "sync_status": "completed", "created_at": ago(hours=1)},
            {"project_id": "p1", "sync_status": "failed", "created_at": ago(hours=2)},
            {"project_id": "p1", "sync_status": "failed", "created_at": ago(hours=3)},
            {"project_id": "p1", "sync_status": "failed", "created_at": ago(hours=30)},
        )
        db.add("calendly_events", {"project_id": "p1", "status": "active", "scheduled_at": ago(days=2)})

        result = health_monitor.check_calendly("p1", NOW)

        assert result["health_score"] == 50
        assert result["metrics"]["success_rate"] == 33.3
        assert result["data_quality"] == 80
        assert result["metrics"]["stale_events"] == 1

    def test_facebook_freshness(self, db):
        db.add("project_integration_data", {"project_id": "p1", "platform": "facebook", "updated_at": ago(hours=3)})
        db.add("project_integration_data", {"project_id": "p2", "platform": "facebook", "updated_at": ago(hours=30)})
        assert health_monitor.check_facebook("p1", NOW)["health_score"] == 100
        assert health_monitor.check_facebook("p2", NOW)["health_score"] == 50
        assert health_monitor.check_facebook("p3", NOW)["health_score"] == 50

    def test_ghl_activity_window(self, db):
        db.add("ghl_form_submissions", {"project_id": "p1", "submitted_at": ago(days=3)})
        assert health_monitor.check_ghl("p1", NOW)["health_score"] == 100
        assert health_monitor.check_ghl("p2", NOW)["health_score"] == 70

    def test_unknown_platform(self):
        result = health_monitor.check_platform({"project_id": "p1", "platform": "zoho_crm"}, NOW)
        assert (result["health_score"], result["data_quality"]) == (50, 50)

    @pytest.mark.parametrize("value, operator, threshold, expected", [
        (40, "less_than", 50, True),
        (60, "less_than", 50, False),
        (90, "greater_than", 80, True),
        (50, "equals", 50, True),
        (50, "between", 50, False),
    ])
    def test_threshold_operators(self, value, operator, threshold, expected):
        assert health_monitor.threshold_breached(value, operator, threshold) is expected


class TestCheckHealth:
    @pytest.fixture
    def integrations(self, db):
        db.seed(
            "project_integrations",
            {"project_id": "p1", "platform": "calendly", "is_connected": True},
            {"project_id": "p1", "platform": "ghl", "is_connected": True},
            {"project_id": "p2", "platform": "facebook", "is_connected": False},
        )
        db.add("ghl_form_submissions", {"project_id": "p1", "submitted_at": ago(hours=1)})
        return db

    @pytest.mark.asyncio
    async def test_scores_recorded_and_stamped(self, integrations):
        result = await health_monitor.check_health()

        assert result["summary"] == {
            "total_checked": 2,
            "healthy": 1,
            "unhealthy": 1,
            "average_health_score": 80.0,
        }
        metrics = integrations.rows("sync_health_metrics")
        assert len(metrics) == 6
        assert {m["metric_type"] for m in metrics} == {"health_score", "data_quality", "sync_duration"}
        calendly = next(
            r for r in integrations.rows("project_integrations") if r["platform"] == "calendly"
        )
        assert calendly["sync_health_score"] == 60
        assert calendly["last_health_check"]

    @pytest.mark.asyncio
    async def test_platform_filter(self, integrations):
        result = await health_monitor.check_health("p1", "ghl")
        assert [r["platform"] for r in result["results"]] == ["ghl"]
        assert result["results"][0]["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_alert_opened_once_within_cooldown(self, integrations):
        integrations.add("alert_configurations", {
            "project_id": "p1", "platform": "calendly", "metric_type": "health_score",
            "threshold_operator": "less_than", "threshold_value": 70,
            "cooldown_minutes": 60, "is_enabled": True,
        })

        first = await health_monitor.check_health("p1", "calendly")
        second = await health_monitor.check_health("p1", "calendly")

        assert first["results"][0]["alerts_opened"] == 1
        assert second["results"][0]["alerts_opened"] == 0
        incident = integrations.rows("alert_incidents")[0]
        assert incident["severity"] == "medium"
        assert incident["title"] == "calendly health score alert"

    @pytest.mark.asyncio
    async def test_failed_check_reports_unhealthy(self, integrations):
        integrations.fail_tables.add("calendly_sync_logs")

        result = await health_monitor.check_health("p1", "calendly")

        assert result["results"][0]["status"] == "unhealthy"
        assert "simulated failure" in result["results"][0]["error"]
