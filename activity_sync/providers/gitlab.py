"""GitLab provider adapter (REST API v4)."""

import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from ..dates import date_key, parse_timestamp
from ..models import (
    Account,
    ActivityType,
    AuthMethod,
    LinkedTicket,
    Participant,
    Provider,
    TicketSource,
    TicketSystem,
    UnifiedActivity,
    activity_id,
)
from ..transforms import tickets
from .base import BaseProviderAdapter
from .errors import DecodingFailed, InvalidResponse, NetworkError

__all__ = ["GitLabAdapter", "DEFAULT_BASE_URL"]

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://gitlab.com"
PER_PAGE = 100
MAX_PAGES = 10

# Failures tolerated while enriching events; auth and rate limits still propagate.
_ENRICHMENT_ERRORS = (NetworkError, DecodingFailed, InvalidResponse)

_PUSH_ACTIONS = ("pushed to", "pushed new")
_MERGE_TITLE = re.compile(r"Merge branch '([^']+)' into")

_EVENT_TYPES = {
    "created:MergeRequest": ActivityType.PULL_REQUEST,
    "opened:MergeRequest": ActivityType.PULL_REQUEST,
    "updated:MergeRequest": ActivityType.PULL_REQUEST,
    "closed:MergeRequest": ActivityType.PULL_REQUEST,
    "reopened:MergeRequest": ActivityType.PULL_REQUEST,
    "merged:MergeRequest": ActivityType.PULL_REQUEST,
    "accepted:MergeRequest": ActivityType.PULL_REQUEST,
    "approved:MergeRequest": ActivityType.CODE_REVIEW,
    "created:Issue": ActivityType.ISSUE,
    "opened:Issue": ActivityType.ISSUE,
    "updated:Issue": ActivityType.ISSUE,
    "closed:Issue": ActivityType.ISSUE,
    "reopened:Issue": ActivityType.ISSUE,
    "created:WikiPage::Meta": ActivityType.WIKI,
    "updated:WikiPage::Meta": ActivityType.WIKI,
}


def _base_url(account: Account) -> str:
    if not account.host:
        return DEFAULT_BASE_URL
    host = account.host.rstrip("/")
    return host if host.startswith("http") else f"https://{host}"


def map_event_type(event: dict) -> ActivityType:
    """Classify a raw GitLab event."""
    action = event.get("action_name") or ""
    target_type = event.get("target_type")
    if action in _PUSH_ACTIONS and event.get("push_data"):
        return ActivityType.COMMIT
    if action == "commented on":
        note = event.get("note") or {}
        if note.get("noteable_type") == "MergeRequest":
            return ActivityType.CODE_REVIEW
        return ActivityType.ISSUE_COMMENT
    mapped = _EVENT_TYPES.get(f"{action}:{target_type or ''}")
    if mapped:
        return mapped
    if target_type == "MergeRequest":
        return ActivityType.PULL_REQUEST
    if target_type == "Issue":
        return ActivityType.ISSUE
    return ActivityType.OTHER


class GitLabAdapter(BaseProviderAdapter):
    """Fetches the authenticated user's events and enriches them."""

    provider = Provider.GITLAB

    def fetch_activities(
        self, account: Account, token: str, start: datetime, end: datetime
    ) -> list[UnifiedActivity]:
        base_url = _base_url(account)
        headers = self._auth_headers(account, token)

        user = self._get(base_url, "/user", headers)
        # after/before are exclusive date bounds
        params = {
            "after": date_key(start - timedelta(days=1)),
            "before": date_key(end + timedelta(days=1)),
        }
        logger.info(
            f"GitLab: fetching events for {user.get('username')} "
            f"({params['after']} to {params['before']})"
        )
        events = self._fetch_all_pages(base_url, f"/users/{user['id']}/events", headers, params)

        projects = self._fetch_projects(base_url, headers, events)
        merge_requests, related_issues = self._fetch_merge_requests(base_url, headers, events)

        activities = []
        for event in events:
            activity = self._normalize(
                event, account.id, base_url, projects, merge_requests, related_issues
            )
            if activity is not None and self._in_window(activity, start, end):
                activities.append(activity)

        activities.sort(key=lambda a: a.timestamp, reverse=True)
        logger.info(f"GitLab: {len(activities)} activities for {account.display_name}")
        return activities

    # -- HTTP -------------------------------------------------------------

    @staticmethod
    def _auth_headers(account: Account, token: str) -> dict:
        if account.auth_method == AuthMethod.OAUTH:
            return {"Authorization": f"Bearer {token}"}
        return {"PRIVATE-TOKEN": token}

    def _get(self, base_url: str, path: str, headers: dict, params: Optional[dict] = None):
        return self.http.get_json(f"{base_url}/api/v4{path}", headers=headers, params=params)

    def _fetch_all_pages(
        self, base_url: str, path: str, headers: dict, params: dict
    ) -> list[dict]:
        results: list[dict] = []
        for page in range(1, MAX_PAGES + 1):
            page_items = self._get(
                base_url, path, headers, {**params, "page": page, "per_page": PER_PAGE}
            )
            if not isinstance(page_items, list):
                raise InvalidResponse(f"Expected a list of events from {path}")
            if not page_items:
                break
            results.extend(page_items)
        else:
            overflow = self._get(
                base_url, path, headers, {**params, "page": MAX_PAGES + 1, "per_page": PER_PAGE}
            )
            if overflow:
                # A truncated window would be cached as complete
                raise InvalidResponse(
                    f"Events from {path} exceed {MAX_PAGES} pages"
                )
        return results

    def _fetch_projects(self, base_url: str, headers: dict, events: list[dict]) -> dict[int, dict]:
        projects: dict[int, dict] = {}
        for project_id in sorted({e["project_id"] for e in events if e.get("project_id")}):
            try:
                projects[project_id] = self._get(base_url, f"/projects/{project_id}", headers)
            except _ENRICHMENT_ERRORS as e:
                logger.debug(f"GitLab: project {project_id} lookup failed: {e}")
        return projects

    def _fetch_merge_requests(
        self, base_url: str, headers: dict, events: list[dict]
    ) -> tuple[dict[tuple[int, int], dict], dict[tuple[int, int], list[dict]]]:
        details: dict[tuple[int, int], dict] = {}
        related: dict[tuple[int, int], list[dict]] = {}
        seen: set[tuple[int, int]] = set()
        for event in events:
            key = _merge_request_key(event)
            if key is None or key in seen:
                continue
            seen.add(key)
            project_id, iid = key
            path = f"/projects/{project_id}/merge_requests/{iid}"
            try:
                details[key] = self._get(base_url, path, headers)
            except _ENRICHMENT_ERRORS as e:
                logger.debug(f"GitLab: merge request {project_id}!{iid} lookup failed: {e}")
            try:
                issues = self._get(base_url, f"{path}/closes_issues", headers)
                related[key] = issues if isinstance(issues, list) else []
            except _ENRICHMENT_ERRORS as e:
                logger.debug(f"GitLab: related issues for {project_id}!{iid} failed: {e}")
        return details, related

    # -- Normalization ----------------------------------------------------

    def _normalize(
        self,
        event: dict,
        account_id: str,
        base_url: str,
        projects: dict[int, dict],
        merge_requests: dict[tuple[int, int], dict],
        related_issues: dict[tuple[int, int], list[dict]],
    ) -> Optional[UnifiedActivity]:
        timestamp = parse_timestamp(event.get("created_at"))
        if timestamp is None:
            logger.debug(f"GitLab: skipping event {event.get('id')} without timestamp")
            return None

        activity_type = map_event_type(event)
        project = projects.get(event.get("project_id"), {})
        action = event.get("action_name") or ""
        target_type = event.get("target_type")
        push_data = event.get("push_data")
        note = event.get("note")

        source_id = str(event["id"])
        summary = None
        source_ref = None
        target_ref = None
        linked: Optional[list[LinkedTicket]] = None
        reviewers: Optional[list[Participant]] = None

        mr_key = _merge_request_key(event)
        mr = merge_requests.get(mr_key) if mr_key else None
        if mr_key:
            linked = self._merge_request_tickets(
                mr, related_issues.get(mr_key, []), event.get("target_title")
            )
            if mr:
                source_ref = mr.get("source_branch") or None
                target_ref = mr.get("target_branch") or None
                reviewers = _mr_participants(mr)

        if action in _PUSH_ACTIONS and push_data:
            ref = push_data.get("ref") or ""
            title = push_data.get("commit_title") or f"Commit to {ref}"
            count = push_data.get("commit_count") or 0
            if count > 1:
                summary = f"{count} commits pushed to {ref}"
            source_ref = ref or None
            source_id = push_data.get("commit_to") or source_id
            linked = _push_tickets(ref, push_data.get("commit_title")) or None
        elif note:
            noteable_id = note.get("noteable_iid") or note.get("noteable_id")
            title = f"Comment on {note.get('noteable_type')} #{noteable_id}"
            body = note.get("body")
            summary = body[:200] if body else None
        else:
            title = event.get("target_title") or f"{action} {target_type or 'item'}"

        author = event.get("author") or {}
        raw_event_type = f"{action}:{target_type}" if target_type else action

        return UnifiedActivity(
            id=activity_id(self.provider, account_id, f"event-{event['id']}"),
            provider=self.provider,
            account_id=account_id,
            source_id=source_id,
            type=activity_type,
            timestamp=timestamp,
            title=title,
            summary=summary,
            participants=[event.get("author_username") or author.get("username") or "unknown"],
            url=_event_url(base_url, event, project.get("path_with_namespace")),
            source_ref=source_ref,
            target_ref=target_ref,
            project_name=project.get("name"),
            linked_tickets=linked,
            raw_event_type=raw_event_type,
            attendees=reviewers,
            labels=(mr.get("labels") or None) if mr else None,
            is_draft=mr.get("draft") if mr else None,
        )

    @staticmethod
    def _merge_request_tickets(
        mr: Optional[dict], related: list[dict], target_title: Optional[str]
    ) -> Optional[list[LinkedTicket]]:
        api_linked = [
            LinkedTicket(
                system=TicketSystem.GITLAB_ISSUE,
                key=f"#{issue['iid']}",
                source=TicketSource.API_LINK,
                title=issue.get("title"),
                url=issue.get("web_url"),
            )
            for issue in related
            if issue.get("iid") is not None
        ]
        extracted = tickets.extract_from_activity(
            branch_name=mr.get("source_branch") if mr else None,
            title=target_title,
            description=mr.get("description") if mr else None,
            default_system=TicketSystem.GITLAB_ISSUE,
        )
        merged = tickets.merge(extracted, api_linked)
        return merged or None


def _merge_request_key(event: dict) -> Optional[tuple[int, int]]:
    """(project id, MR iid) for MR events and comments on MRs."""
    project_id = event.get("project_id")
    if not project_id:
        return None
    if event.get("target_type") == "MergeRequest" and event.get("target_iid"):
        return project_id, event["target_iid"]
    note = event.get("note") or {}
    if note.get("noteable_type") == "MergeRequest" and note.get("noteable_iid"):
        return project_id, note["noteable_iid"]
    return None


def _push_tickets(ref: str, commit_title: Optional[str]) -> list[LinkedTicket]:
    found = tickets.extract(ref, TicketSource.BRANCH, TicketSystem.GITLAB_ISSUE)
    if not found and commit_title:
        # Merge commits carry the source branch in their title
        match = _MERGE_TITLE.search(commit_title)
        if match:
            found = tickets.extract(match.group(1), TicketSource.BRANCH, TicketSystem.GITLAB_ISSUE)
    return found


def _mr_participants(mr: dict) -> Optional[list[Participant]]:
    seen: set[str] = set()
    participants = []
    for person in (mr.get("reviewers") or []) + (mr.get("assignees") or []):
        username = person.get("username")
        if username and username not in seen:
            seen.add(username)
            participants.append(Participant(username=username, avatar_url=person.get("avatar_url")))
    return participants or None


def _event_url(base_url: str, event: dict, project_path: Optional[str]) -> Optional[str]:
    if not project_path:
        return None
    base = f"{base_url}/{project_path}"
    target_type = event.get("target_type")
    target_iid = event.get("target_iid")
    if target_type == "MergeRequest" and target_iid:
        return f"{base}/-/merge_requests/{target_iid}"
    if target_type == "Issue" and target_iid:
        return f"{base}/-/issues/{target_iid}"
    push_data = event.get("push_data") or {}
    if event.get("action_name") in _PUSH_ACTIONS and push_data.get("commit_to"):
        return f"{base}/-/commit/{push_data['commit_to']}"
    note = event.get("note") or {}
    noteable_iid = note.get("noteable_iid")
    if noteable_iid:
        if note.get("noteable_type") == "MergeRequest":
            return f"{base}/-/merge_requests/{noteable_iid}#note_{note.get('id')}"
        if note.get("noteable_type") == "Issue":
            return f"{base}/-/issues/{noteable_iid}#note_{note.get('id')}"
    return None
