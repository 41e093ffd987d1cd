"""Core data model shared by adapters, the cache and the session."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .dates import date_key, format_timestamp, parse_timestamp

__all__ = [
    "Provider",
    "AuthMethod",
    "ActivityType",
    "TicketSystem",
    "TicketSource",
    "LinkedTicket",
    "Participant",
    "Account",
    "UnifiedActivity",
    "HeatMapBucket",
    "DayIndexEntry",
    "activity_id",
]


class Provider(str, Enum):
    """Closed set of supported activity sources."""

    GITLAB = "gitlab"
    AZURE_DEVOPS = "azure-devops"
    GOOGLE_CALENDAR = "google-calendar"

    @property
    def display_name(self) -> str:
        return {
            Provider.GITLAB: "GitLab",
            Provider.AZURE_DEVOPS: "Azure DevOps",
            Provider.GOOGLE_CALENDAR: "Google Calendar",
        }[self]


class AuthMethod(str, Enum):
    OAUTH = "oauth"
    PAT = "pat"


class ActivityType(str, Enum):
    COMMIT = "commit"
    PULL_REQUEST = "pull_request"
    ISSUE = "issue"
    ISSUE_COMMENT = "issue_comment"
    CODE_REVIEW = "code_review"
    MEETING = "meeting"
    WORK_ITEM = "work_item"
    DEPLOYMENT = "deployment"
    RELEASE = "release"
    WIKI = "wiki"
    OTHER = "other"


class TicketSystem(str, Enum):
    JIRA = "jira"
    AZURE_BOARDS = "azure_boards"
    GITLAB_ISSUE = "gitlab_issue"
    GITHUB_ISSUE = "github_issue"
    LINEAR = "linear"
    YOUTRACK = "youtrack"
    SHORTCUT = "shortcut"
    UNKNOWN = "unknown"


class TicketSource(str, Enum):
    """Where a ticket reference was found."""

    BRANCH = "branch"
    TITLE = "title"
    DESCRIPTION = "description"
    API_LINK = "api_link"


def activity_id(provider: Provider, account_id: str, source_key: str) -> str:
    """Build the globally unique id of an activity.

    The id only depends on provider, account and the provider-side key,
    so fetching the same event twice yields the same id.
    """
    return f"{provider.value}:{account_id}:{source_key}"


@dataclass
class LinkedTicket:
    """A ticket reference attached to an activity."""

    system: TicketSystem
    key: str
    source: TicketSource
    title: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "system": self.system.value,
            "key": self.key,
            "source": self.source.value,
        }
        if self.title is not None:
            data["title"] = self.title
        if self.url is not None:
            data["url"] = self.url
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LinkedTicket":
        return cls(
            system=TicketSystem(data.get("system", TicketSystem.UNKNOWN.value)),
            key=data["key"],
            source=TicketSource(data.get("source", TicketSource.TITLE.value)),
            title=data.get("title"),
            url=data.get("url"),
        )


@dataclass
class Participant:
    username: str
    avatar_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {"username": self.username, "avatar_url": self.avatar_url}

    @classmethod
    def from_dict(cls, data: dict) -> "Participant":
        return cls(username=data["username"], avatar_url=data.get("avatar_url"))


@dataclass
class Account:
    """A configured provider identity."""

    id: str
    provider: Provider
    display_name: str
    host: Optional[str] = None
    organization: Optional[str] = None
    projects: Optional[list[str]] = None
    calendar_ids: Optional[list[str]] = None
    auth_method: AuthMethod = AuthMethod.PAT
    is_enabled: bool = True
    enabled_event_types: Optional[set[ActivityType]] = None
    username: Optional[str] = None
    show_only_my_events: bool = True
    show_only_accepted_events: bool = False
    hide_all_day_events: bool = False

    def is_event_type_enabled(self, activity_type: ActivityType) -> bool:
        """No explicit selection means every type is shown."""
        if self.enabled_event_types is None:
            return True
        return activity_type in self.enabled_event_types

    def is_calendar_enabled(self, calendar_id: Optional[str]) -> bool:
        if calendar_id is None or not self.calendar_ids:
            return True
        return calendar_id in self.calendar_ids

    def is_my_event(self, activity: "UnifiedActivity") -> bool:
        """Whether the activity was authored by this account's user.

        Without a configured username (or with the filter turned off)
        every activity counts as the user's own.
        """
        if not self.show_only_my_events or not self.username:
            return True
        if not activity.participants:
            return True
        wanted = self.username.lower()
        return any(p.lower() == wanted for p in activity.participants)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider.value,
            "display_name": self.display_name,
            "host": self.host,
            "organization": self.organization,
            "projects": self.projects,
            "calendar_ids": self.calendar_ids,
            "auth_method": self.auth_method.value,
            "is_enabled": self.is_enabled,
            "enabled_event_types": (
                sorted(t.value for t in self.enabled_event_types)
                if self.enabled_event_types is not None
                else None
            ),
            "username": self.username,
            "show_only_my_events": self.show_only_my_events,
            "show_only_accepted_events": self.show_only_accepted_events,
            "hide_all_day_events": self.hide_all_day_events,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Account":
        event_types = data.get("enabled_event_types")
        return cls(
            id=data["id"],
            provider=Provider(data["provider"]),
            display_name=data.get("display_name") or data["id"],
            host=data.get("host"),
            organization=data.get("organization"),
            projects=data.get("projects"),
            calendar_ids=data.get("calendar_ids"),
            auth_method=AuthMethod(data.get("auth_method", AuthMethod.PAT.value)),
            is_enabled=data.get("is_enabled", True),
            enabled_event_types=(
                {ActivityType(t) for t in event_types} if event_types is not None else None
            ),
            username=data.get("username"),
            show_only_my_events=data.get("show_only_my_events", True),
            show_only_accepted_events=data.get("show_only_accepted_events", False),
            hide_all_day_events=data.get("hide_all_day_events", False),
        )


@dataclass
class UnifiedActivity:
    """One normalized event from any provider."""

    id: str
    provider: Provider
    account_id: str
    source_id: str
    type: ActivityType
    timestamp: datetime
    title: Optional[str] = None
    summary: Optional[str] = None
    participants: Optional[list[str]] = None
    url: Optional[str] = None
    source_ref: Optional[str] = None
    target_ref: Optional[str] = None
    project_name: Optional[str] = None
    linked_tickets: Optional[list[LinkedTicket]] = None
    raw_event_type: Optional[str] = None
    end_timestamp: Optional[datetime] = None
    is_all_day: bool = False
    attendees: Optional[list[Participant]] = None
    calendar_id: Optional[str] = None
    comment_count: Optional[int] = None
    is_draft: Optional[bool] = None
    labels: Optional[list[str]] = None

    @property
    def date_key(self) -> str:
        return date_key(self.timestamp)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "provider": self.provider.value,
            "account_id": self.account_id,
            "source_id": self.source_id,
            "type": self.type.value,
            "timestamp": format_timestamp(self.timestamp),
            "is_all_day": self.is_all_day,
        }
        optional = {
            "title": self.title,
            "summary": self.summary,
            "participants": self.participants,
            "url": self.url,
            "source_ref": self.source_ref,
            "target_ref": self.target_ref,
            "project_name": self.project_name,
            "raw_event_type": self.raw_event_type,
            "calendar_id": self.calendar_id,
            "comment_count": self.comment_count,
            "is_draft": self.is_draft,
            "labels": self.labels,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        if self.end_timestamp is not None:
            data["end_timestamp"] = format_timestamp(self.end_timestamp)
        if self.linked_tickets is not None:
            data["linked_tickets"] = [t.to_dict() for t in self.linked_tickets]
        if self.attendees is not None:
            data["attendees"] = [a.to_dict() for a in self.attendees]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "UnifiedActivity":
        timestamp = parse_timestamp(data["timestamp"])
        if timestamp is None:
            raise ValueError(f"Invalid activity timestamp: {data['timestamp']!r}")
        tickets = data.get("linked_tickets")
        attendees = data.get("attendees")
        return cls(
            id=data["id"],
            provider=Provider(data["provider"]),
            account_id=data["account_id"],
            source_id=data["source_id"],
            type=ActivityType(data["type"]),
            timestamp=timestamp,
            title=data.get("title"),
            summary=data.get("summary"),
            participants=data.get("participants"),
            url=data.get("url"),
            source_ref=data.get("source_ref"),
            target_ref=data.get("target_ref"),
            project_name=data.get("project_name"),
            linked_tickets=(
                [LinkedTicket.from_dict(t) for t in tickets] if tickets is not None else None
            ),
            raw_event_type=data.get("raw_event_type"),
            end_timestamp=parse_timestamp(data.get("end_timestamp")),
            is_all_day=data.get("is_all_day", False),
            attendees=(
                [Participant.from_dict(a) for a in attendees] if attendees is not None else None
            ),
            calendar_id=data.get("calendar_id"),
            comment_count=data.get("comment_count"),
            is_draft=data.get("is_draft"),
            labels=data.get("labels"),
        )


@dataclass
class HeatMapBucket:
    """Aggregated activity count for one calendar date."""

    date: str
    count: int
    breakdown: Optional[dict[Provider, int]] = None

    def to_dict(self) -> dict:
        data: dict = {"date": self.date, "count": self.count}
        if self.breakdown is not None:
            data["breakdown"] = {p.value: n for p, n in self.breakdown.items()}
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "HeatMapBucket":
        breakdown = data.get("breakdown")
        return cls(
            date=data["date"],
            count=data["count"],
            breakdown=(
                {Provider(p): n for p, n in breakdown.items()} if breakdown is not None else None
            ),
        )


@dataclass
class DayIndexEntry:
    """Metadata for one (account, date) cache slot.

    Presence means the day was fetched at least once, possibly with zero
    results.
    """

    fetched_at: datetime
    count: int

    def to_dict(self) -> dict:
        return {"fetched_at": format_timestamp(self.fetched_at), "count": self.count}

    @classmethod
    def from_dict(cls, data: dict) -> "DayIndexEntry":
        return cls(fetched_at=parse_timestamp(data["fetched_at"]), count=data["count"])

