"""Tests for the Google Calendar adapter."""

import pytest
from datetime import datetime, timezone

import responses

from activity_sync.models import Account, ActivityType, Provider
from activity_sync.providers.errors import AuthenticationFailed
from activity_sync.providers.google_calendar import (
    GoogleCalendarAdapter,
    is_accepted,
    is_all_day,
    is_user_attendee,
)
from activity_sync.providers.http_client import ProviderHttpClient, RetryPolicy

API = "https://www.googleapis.com/calendar/v3"
START = datetime(2026, 3, 10, tzinfo=timezone.utc)
END = datetime(2026, 3, 10, 23, 59, 59, tzinfo=timezone.utc)

STANDUP = {
    "id": "standup1",
    "summary": "Standup",
    "htmlLink": "https://calendar.google.com/event?eid=standup1",
    "start": {"dateTime": "2026-03-10T09:00:00+01:00"},
    "end": {"dateTime": "2026-03-10T09:15:00+01:00"},
    "attendees": [
        {"email": "me@example.com", "self": True, "responseStatus": "accepted"},
        {"email": "Bob@Example.com", "displayName": "Bob", "responseStatus": "accepted"},
    ],
}

DECLINED = {
    "id": "review1",
    "summary": "Design review",
    "start": {"dateTime": "2026-03-10T14:00:00Z"},
    "end": {"dateTime": "2026-03-10T15:00:00Z"},
    "attendees": [{"email": "me@example.com", "self": True, "responseStatus": "declined"}],
}

HOLIDAY = {
    "id": "holiday1",
    "summary": "Holiday",
    "start": {"date": "2026-03-10"},
    "end": {"date": "2026-03-11"},
}

NOT_INVITED = {
    "id": "other1",
    "summary": "Someone else's meeting",
    "start": {"dateTime": "2026-03-10T16:00:00Z"},
    "attendees": [{"email": "alice@example.com"}],
}


def _account(**overrides) -> Account:
    values = dict(
        id="gcal-1",
        provider=Provider.GOOGLE_CALENDAR,
        display_name="Work Calendar",
        calendar_ids=["primary"],
    )
    values.update(overrides)
    return Account(**values)


class TestEventFilters:
    """Tests for the attendee and all-day helpers."""

    def test_is_user_attendee(self):
        assert is_user_attendee(STANDUP) is True
        assert is_user_attendee(HOLIDAY) is True
        assert is_user_attendee(NOT_INVITED) is False

    def test_is_accepted(self):
        assert is_accepted(STANDUP) is True
        assert is_accepted(DECLINED) is False
        assert is_accepted(HOLIDAY) is True

    def test_is_all_day(self):
        assert is_all_day(HOLIDAY) is True
        assert is_all_day(STANDUP) is False


class TestGoogleCalendarAdapter:
    """Tests for GoogleCalendarAdapter.fetch_activities."""

    def setup_method(self):
        """Set up test fixtures."""
        self.http = ProviderHttpClient(retry_policy=RetryPolicy(max_retries=0))
        self.adapter = GoogleCalendarAdapter(self.http)

    def teardown_method(self):
        """Clean up."""
        self.http.close()

    @responses.activate
    def test_fetch_meetings(self):
        responses.add(
            responses.GET, f"{API}/calendars/primary/events",
            json={"items": [STANDUP, DECLINED, HOLIDAY, NOT_INVITED]},
        )

        activities = self.adapter.fetch_activities(_account(), "tok", START, END)

        assert [a.source_id for a in activities] == ["review1", "standup1", "holiday1"]
        standup = activities[1]
        assert standup.id == "google-calendar:gcal-1:event-standup1"
        assert standup.type == ActivityType.MEETING
        assert standup.timestamp == datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)
        assert standup.participants == ["me@example.com", "Bob"]
        assert standup.calendar_id == "primary"
        assert standup.attendees[1].avatar_url.startswith("https://www.gravatar.com/avatar/")
        assert activities[2].is_all_day is True
        assert responses.calls[0].request.headers["Authorization"] == "Bearer tok"

    @responses.activate
    def test_display_preferences_filter_events(self):
        responses.add(
            responses.GET, f"{API}/calendars/primary/events",
            json={"items": [STANDUP, DECLINED, HOLIDAY]},
        )
        account = _account(show_only_accepted_events=True, hide_all_day_events=True)

        activities = self.adapter.fetch_activities(account, "tok", START, END)

        assert [a.source_id for a in activities] == ["standup1"]

    @responses.activate
    def test_paginates_with_page_token(self):
        responses.add(
            responses.GET, f"{API}/calendars/primary/events",
            json={"items": [STANDUP], "nextPageToken": "p2"},
        )
        responses.add(
            responses.GET, f"{API}/calendars/primary/events",
            json={"items": [DECLINED]},
        )

        activities = self.adapter.fetch_activities(_account(), "tok", START, END)

        assert len(activities) == 2
        assert "pageToken=p2" in responses.calls[1].request.url

    @responses.activate
    def test_lists_calendars_when_none_selected(self):
        responses.add(
            responses.GET, f"{API}/users/me/calendarList",
            json={"items": [{"id": "primary"}, {"id": "team@group.calendar.google.com"}]},
        )
        responses.add(responses.GET, f"{API}/calendars/primary/events", json={"items": [STANDUP]})
        responses.add(
            responses.GET, f"{API}/calendars/team%40group.calendar.google.com/events",
            status=404,
        )

        activities = self.adapter.fetch_activities(_account(calendar_ids=None), "tok", START, END)

        # The unreadable calendar is skipped
        assert [a.source_id for a in activities] == ["standup1"]

    @responses.activate
    def test_auth_failure_is_not_skipped(self):
        responses.add(responses.GET, f"{API}/calendars/primary/events", status=401)

        with pytest.raises(AuthenticationFailed):
            self.adapter.fetch_activities(_account(), "tok", START, END)
