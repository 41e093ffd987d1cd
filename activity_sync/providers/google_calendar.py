"""Google Calendar provider adapter (Calendar API v3)."""

import hashlib
import logging
from datetime import datetime
from typing import Optional
from urllib.parse import quote

from ..dates import format_timestamp, parse_timestamp, start_of_day
from ..models import Account, ActivityType, Participant, Provider, UnifiedActivity, activity_id
from .base import BaseProviderAdapter
from .errors import AuthenticationFailed, ProviderError, RateLimited

__all__ = ["GoogleCalendarAdapter"]

logger = logging.getLogger(__name__)

BASE_URL = "https://www.googleapis.com/calendar/v3"
MAX_PAGES = 20


def _gravatar_url(email: str) -> str:
    digest = hashlib.md5(email.strip().lower().encode("utf-8")).hexdigest()
    return f"https://www.gravatar.com/avatar/{digest}?s=40&d=mp"


def _self_attendee(event: dict) -> Optional[dict]:
    for attendee in event.get("attendees") or []:
        if attendee.get("self"):
            return attendee
    return None


def is_user_attendee(event: dict) -> bool:
    """Events without attendees are the user's own (focus time, reminders)."""
    if not event.get("attendees"):
        return True
    return _self_attendee(event) is not None


def is_accepted(event: dict) -> bool:
    me = _self_attendee(event)
    if me is None or not me.get("responseStatus"):
        return True
    return me["responseStatus"] == "accepted"


def is_all_day(event: dict) -> bool:
    start = event.get("start") or {}
    return bool(start.get("date")) and not start.get("dateTime")


class GoogleCalendarAdapter(BaseProviderAdapter):
    """Meetings from the selected (or all readable) calendars."""

    provider = Provider.GOOGLE_CALENDAR

    def fetch_activities(
        self, account: Account, token: str, start: datetime, end: datetime
    ) -> list[UnifiedActivity]:
        headers = {"Authorization": f"Bearer {token}"}
        calendar_ids = account.calendar_ids or self._list_calendars(headers)

        activities: list[UnifiedActivity] = []
        for calendar_id in calendar_ids:
            try:
                events = self._list_events(calendar_id, headers, start, end)
            except (AuthenticationFailed, RateLimited):
                raise
            except ProviderError as e:
                # A single unreadable calendar must not hide the others
                logger.warning(f"Google Calendar: skipping calendar {calendar_id}: {e}")
                continue

            for event in events:
                if not is_user_attendee(event):
                    continue
                if account.show_only_accepted_events and not is_accepted(event):
                    continue
                if account.hide_all_day_events and is_all_day(event):
                    continue
                activity = self._normalize(event, account.id, calendar_id)
                if activity is not None:
                    activities.append(activity)

        activities.sort(key=lambda a: a.timestamp, reverse=True)
        logger.info(f"Google Calendar: {len(activities)} events for {account.display_name}")
        return activities

    def _list_calendars(self, headers: dict) -> list[str]:
        data = self.http.get_json(
            f"{BASE_URL}/users/me/calendarList",
            headers=headers,
            params={"minAccessRole": "reader", "maxResults": 250},
        )
        return [entry["id"] for entry in data.get("items") or [] if entry.get("id")]

    def _list_events(
        self, calendar_id: str, headers: dict, start: datetime, end: datetime
    ) -> list[dict]:
        url = f"{BASE_URL}/calendars/{quote(calendar_id, safe='')}/events"
        params = {
            "timeMin": format_timestamp(start),
            "timeMax": format_timestamp(end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": 2500,
            "showDeleted": "false",
        }
        events: list[dict] = []
        page_token: Optional[str] = None
        for _ in range(MAX_PAGES):
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            data = self.http.get_json(url, headers=headers, params=page_params)
            items = data.get("items") or []
            if not items:
                break
            events.extend(items)
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return events

    def _normalize(self, event: dict, account_id: str, calendar_id: str) -> Optional[UnifiedActivity]:
        start = event.get("start") or {}
        end = event.get("end") or {}
        if start.get("dateTime"):
            timestamp = parse_timestamp(start["dateTime"])
            end_timestamp = parse_timestamp(end.get("dateTime"))
            all_day = False
        elif start.get("date"):
            timestamp = start_of_day(start["date"])
            end_timestamp = start_of_day(end["date"]) if end.get("date") else None
            all_day = True
        else:
            timestamp = None
        if timestamp is None:
            logger.debug(f"Google Calendar: skipping event {event.get('id')} without start")
            return None

        attendees = event.get("attendees") or []
        names = [a.get("displayName") or a.get("email") for a in attendees]
        names = [n for n in names if n]
        participants = [
            Participant(
                username=a.get("displayName") or a.get("email") or "Unknown",
                avatar_url=_gravatar_url(a["email"]) if a.get("email") else None,
            )
            for a in attendees
        ]

        return UnifiedActivity(
            id=activity_id(self.provider, account_id, f"event-{event['id']}"),
            provider=self.provider,
            account_id=account_id,
            source_id=event["id"],
            type=ActivityType.MEETING,
            timestamp=timestamp,
            title=event.get("summary"),
            summary=event.get("description"),
            participants=names or None,
            url=event.get("htmlLink"),
            end_timestamp=end_timestamp,
            is_all_day=all_day,
            attendees=participants or None,
            calendar_id=calendar_id,
        )
