"""Tests for call charts, attribution, page analytics, forecasting and rollups."""

from datetime import date, datetime, timezone

import pytest

from scripts.analytics import aggregation, attribution, chart_data, forecast


class TestCallChart:
    def test_buckets_by_local_booking_day(self):
        events = [
            {"created_at": "2026-03-01T15:00:00Z", "status": "active"},
            {"created_at": "2026-03-02T03:00:00Z", "status": "canceled"},
            {"created_at": "2026-03-02T16:00:00Z", "status": "no_show"},
            {"created_at": "2026-03-02T17:00:00Z", "status": "active"},
        ]

        series = chart_data.generate_call_chart(
            events, date(2026, 3, 1), date(2026, 3, 3), "America/New_York",
            page_views_by_date={"2026-03-02": 5},
        )

        assert [p["date"] for p in series] == ["Mar 1", "Mar 2", "Mar 3"]
        first, second, third = series
        assert (first["callsBooked"], first["cancelled"], first["callsTaken"]) == (2, 1, 1)
        assert first["showUpRate"] == 100.0
        assert (second["noShows"], second["callsTaken"], second["showUpRate"]) == (1, 0, 0.0)
        assert second["pageViews"] == 5
        assert third["totalBookings"] == 0
        assert third["showUpRate"] == 0

    def test_call_stats_with_previous_period(self):
        events = [
            {"id": 1, "calendly_event_id": "a", "status": "active", "is_closed": True,
             "created_at": "2026-03-09T10:00:00Z", "scheduled_at": "2026-03-10T10:00:00Z"},
            {"id": 2, "calendly_event_id": "a", "status": "active",
             "created_at": "2026-03-09T10:00:00Z", "scheduled_at": "2026-03-10T10:00:00Z"},
            {"id": 3, "calendly_event_id": "b", "status": "active",
             "created_at": "2026-03-09T12:00:00Z", "scheduled_at": "2026-03-13T10:00:00Z"},
            {"id": 4, "calendly_event_id": "c", "status": "canceled",
             "created_at": "2026-03-02T10:00:00Z", "scheduled_at": "2026-03-09T10:00:00Z",
             "cancelled_at": "2026-03-05T10:00:00Z"},
            {"id": 5, "calendly_event_id": "d", "status": "active",
             "created_at": "2026-03-03T10:00:00Z", "scheduled_at": "2026-03-04T10:00:00Z"},
        ]

        stats = chart_data.calculate_call_stats(
            events, date(2026, 3, 8), date(2026, 3, 14),
            now=datetime(2026, 3, 12, tzinfo=timezone.utc),
        )

        assert stats["totalBookings"] == 2
        assert stats["callsTaken"] == 2
        assert stats["cancelled"] == 0
        assert stats["categoryBreakdown"] == {"cancelled": 0, "completed": 1, "upcoming": 1, "closed": 1}
        assert stats["showUpRate"] == 100
        assert stats["closeRate"] == 100
        assert stats["previousTotalBookings"] == 2
        assert stats["previousCallsTaken"] == 1
        assert stats["previousCancelled"] == 1
        assert stats["previousShowUpRate"] == 50
        assert stats["previousCloseRate"] == 0
        assert stats["duplicatesRemoved"] == 1


SESSIONS = [
    {"session_id": "s1", "utm_source": "google", "utm_campaign": "spring", "created_at": "2026-03-01T00:00:00Z"},
    {"session_id": "s2", "utm_source": "facebook", "utm_campaign": "retarget", "created_at": "2026-03-03T00:00:00Z"},
    {"session_id": "s3", "created_at": "2026-03-05T00:00:00Z"},
]


class TestAttribution:
    @pytest.fixture
    def tracked(self, db):
        for session in SESSIONS:
            db.add("tracking_sessions", {"project_id": "p1", **session})
        db.seed(
            "tracking_events",
            {"project_id": "p1", "session_id": "s1", "event_type": "page_view",
             "contact_email": "x@example.com", "created_at": "2026-03-01T00:05:00Z"},
            {"id": "e1", "project_id": "p1", "session_id": "s2", "event_type": "purchase",
             "contact_email": "x@example.com", "revenue_amount": 100,
             "created_at": "2026-03-03T00:05:00Z"},
            {"id": "e2", "project_id": "p1", "session_id": "s3", "event_type": "purchase",
             "revenue_amount": "50", "created_at": "2026-03-05T00:05:00Z"},
        )
        return db

    def test_unknown_model(self):
        with pytest.raises(ValueError):
            attribution.credit_touches([], "u_shaped")

    @pytest.mark.parametrize("model, expected", [
        ("first_touch", {("google", "spring"): 100.0, ("(direct)", "(none)"): 50.0}),
        ("last_touch", {("facebook", "retarget"): 100.0, ("(direct)", "(none)"): 50.0}),
        ("linear", {("google", "spring"): 50.0, ("facebook", "retarget"): 50.0, ("(direct)", "(none)"): 50.0}),
    ])
    def test_report_by_model(self, tracked, model, expected):
        report = attribution.attribution_report(
            "p1", "2026-03-01T00:00:00+00:00", "2026-03-31T00:00:00+00:00", model,
        )

        revenue = {(c["source"], c["campaign"]): c["revenue"] for c in report["channels"]}
        assert revenue == expected
        assert report["totalRevenue"] == 150.0
        assert report["totalConversions"] == 2
        assert report["model"] == model

    def test_conversion_without_session_is_direct(self):
        report = attribution.attribute([{"id": "x", "revenue_amount": 20}], {})
        assert report["channels"] == [{
            "source": "(direct)", "campaign": "(none)",
            "conversions": 1.0, "revenue": 20.0, "share": 100.0,
        }]

    def test_record_attribution(self, db):
        row = attribution.record_attribution(
            "p1", SESSIONS[0], {"id": "e9", "session_id": "s1", "contact_email": "a@b.co"}, 42.0,
        )
        assert row["utm_source"] == "google"
        assert row["attributed_revenue"] == 42.0
        assert db.rows("attribution_data")[0]["attribution_model"] == "first_touch"


FUNNEL = [
    {"name": "Opt-in", "url": "https://site.com/optin", "type": "landing"},
    {"name": "Checkout", "url": "/checkout", "type": "checkout"},
]


class TestPageAnalytics:
    def test_page_details(self):
        assert attribution.page_details("https://site.com/optin?utm_source=x", FUNNEL)["name"] == "Opt-in"
        assert attribution.page_details("https://site.com/", [])["name"] == "Home Page"
        unknown = attribution.page_details("https://site.com/thank-you", [])
        assert unknown == {"name": "Thank you", "type": "thankyou", "order": 999}
        assert attribution.page_details("", [])["name"] == "Unknown Page"

    def test_page_metrics_in_funnel_order(self):
        events = [
            {"page_url": "https://site.com/checkout", "session_id": "a", "revenue_amount": 97},
            {"page_url": "https://site.com/optin?utm=1", "session_id": "a"},
            {"page_url": "https://site.com/optin", "session_id": "b"},
            {"page_url": "https://site.com/other", "session_id": "c"},
        ]

        pages = attribution.page_analytics(events, FUNNEL, tracks_purchases=True)

        assert [p["name"] for p in pages] == ["Opt-in", "Checkout"]
        assert (pages[0]["totalEvents"], pages[0]["uniqueVisitors"]) == (2, 2)
        assert pages[1]["conversionRate"] == 100.0
        assert pages[1]["revenuePerVisitor"] == 97.0

        metrics = attribution.key_metrics(events, tracks_purchases=True)
        assert metrics["totalConversions"] == 1
        assert metrics["avgOrderValue"] == 97.0
        assert metrics["uniqueVisitors"] == 3
        assert metrics["conversionRate"] == 25.0

    def test_revenue_hidden_without_purchase_tracking(self):
        events = [{"page_url": "https://site.com/checkout", "revenue_amount": 97}]
        assert attribution.page_analytics(events, FUNNEL)[1]["revenue"] == 0
        assert attribution.key_metrics(events)["totalRevenue"] == 0

    def test_event_type_breakdown(self):
        breakdown = attribution.event_type_breakdown([
            {"event_type": "page_view"}, {"event_type": "page_view"}, {"event_type": "purchase"},
        ])
        assert breakdown[0] == {"eventType": "Page View", "rawType": "page_view", "count": 2}


class TestForecast:
    def test_linear_trend(self):
        trend = forecast.linear_trend([1, 2, 3, 4])
        assert trend["slope"] == pytest.approx(1.0)
        assert trend["intercept"] == pytest.approx(1.0)
        assert trend["r_squared"] == pytest.approx(1.0)
        assert forecast.linear_trend([5]) == {"slope": 0.0, "intercept": 0.0, "r_squared": 0.0}

    def test_moving_average(self):
        assert forecast.moving_average([1, 2, 3], 2) == [1, 1.5, 2.5]

    def test_weekly_seasonality(self):
        weekly = [10, 0, 0, 0, 0, 0, 0] * 3
        assert forecast.detect_seasonality(weekly)["period"] == 7
        assert forecast.detect_seasonality(list(range(10, 24))) is None
        assert forecast.detect_seasonality([1, 2, 3]) is None

    def test_forecast_extends_series(self):
        history = [{"date": f"2026-03-{d:02d}", "value": 9 + d} for d in range(1, 15)]
        history.append({"date": "2026-03-20", "value": None})

        result = forecast.generate_forecast(history, 7)

        actual = [p for p in result["data"] if p["isActual"]]
        predicted = [p for p in result["data"] if not p["isActual"]]
        assert len(actual) == 14
        assert [p["date"] for p in predicted][:2] == ["2026-03-15", "2026-03-16"]
        assert predicted[0]["value"] == 24
        assert predicted[0]["confidence"] == 94
        assert predicted[-1]["confidence"] == 60
        assert result["trend"] == "increasing"
        assert result["accuracy"] == 100.0

    def test_empty_history(self):
        assert forecast.generate_forecast([], 7)["trend"] == "stable"

    def test_scenarios(self):
        scenarios = forecast.scenario_forecasts(100, {"slope": 2, "r_squared": 1}, 10, 5)
        assert scenarios == {"optimistic": 161, "realistic": 120, "pessimistic": 85, "confidence": 100}

    def test_load_daily_history_zero_fills(self, db):
        db.seed(
            "calendly_events",
            {"project_id": "p1", "created_at": "2026-03-08T10:00:00Z"},
            {"project_id": "p1", "created_at": "2026-03-10T01:00:00Z"},
            {"project_id": "p1", "created_at": "2026-03-10T02:00:00Z"},
            {"project_id": "p1", "created_at": "2026-03-05T02:00:00Z"},
        )
        history = forecast.load_daily_history("p1", "bookings", days=3, today=date(2026, 3, 10))
        assert [h["value"] for h in history] == [1, 0, 2]

    def test_unknown_metric(self, db):
        with pytest.raises(ValueError):
            forecast.load_daily_history("p1", "churn")


class TestDailyAggregation:
    def test_rows_grouped_by_landing_page(self):
        rows = aggregation.build_daily_rows("p1", date(2026, 3, 1), [
            {"page_url": "https://site.com/optin?utm=x", "session_id": "s1"},
            {"page_url": "https://site.com/optin", "session_id": "s2"},
            {"page_url": "https://site.com/optin", "session_id": "s1"},
            {"page_url": "https://site.com/", "session_id": "s3"},
        ])
        assert [(r["landing_page_name"], r["total_page_views"], r["unique_visitors"]) for r in rows] == [
            ("Home Page", 1, 1), ("Optin", 3, 2),
        ]
        assert rows[1]["landing_page_url"] == "https://site.com/optin"

    def test_aggregate_is_idempotent(self, db):
        db.add("projects", {"id": "p1", "name": "Launch"})
        db.seed(
            "tracking_events",
            {"project_id": "p1", "event_type": "page_view", "page_url": "https://site.com/",
             "session_id": "s1", "created_at": "2026-03-01T12:00:00Z"},
            {"project_id": "p1", "event_type": "click", "page_url": "https://site.com/",
             "session_id": "s1", "created_at": "2026-03-01T12:01:00Z"},
        )

        first = aggregation.aggregate_daily_metrics(dates=[date(2026, 3, 1)])
        aggregation.aggregate_daily_metrics("p1", [date(2026, 3, 1)])

        assert first["processed_dates"] == ["2026-03-01"]
        assert first["rows_written"] == 1
        stored = db.rows("project_daily_metrics")
        assert len(stored) == 1
        assert stored[0]["total_page_views"] == 1

    def test_default_dates(self):
        days = aggregation.default_dates(date(2026, 3, 10))
        assert days[0] == date(2026, 3, 4)
        assert days[-1] == date(2026, 3, 10)
