"""Collapse runs of similar, time-adjacent activities into display groups.

Commits to the same branch and project, or comments/reviews on the same
merge request or issue, are grouped when each member follows the
previous one within two hours.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence, Union

from ..models import ActivityType, UnifiedActivity

__all__ = [
    "ActivityGroup",
    "DisplayItem",
    "collapse",
    "MAX_TIME_GAP",
]

MAX_TIME_GAP = timedelta(hours=2)

_BRANCH_IN_SUMMARY = (
    re.compile(r"to ([^\s,]+)"),
    re.compile(r"Branch: ([^\s,]+)"),
)

_TARGET_IN_TITLE = (
    (re.compile(r"MR #?(\d+)"), "MR"),
    (re.compile(r"PR #?(\d+)"), "PR"),
    (re.compile(r"[Mm]erge [Rr]equest #?(\d+)"), "MR"),
    (re.compile(r"[Pp]ull [Rr]equest #?(\d+)"), "PR"),
    (re.compile(r"[Ii]ssue #?(\d+)"), "Issue"),
    (re.compile(r"#(\d+)"), "Issue"),
)

_TARGET_IN_URL = (
    (re.compile(r"/merge_requests?/(\d+)"), "MR"),
    (re.compile(r"/pull/(\d+)"), "PR"),
    (re.compile(r"/pullrequest/(\d+)"), "PR"),
    (re.compile(r"/issues/(\d+)"), "Issue"),
    (re.compile(r"/_workitems/edit/(\d+)"), "WorkItem"),
)

_COMMENT_TYPES = (ActivityType.ISSUE_COMMENT, ActivityType.CODE_REVIEW)


@dataclass
class ActivityGroup:
    """Two or more activities shown as one row, in ascending time order."""

    id: str
    kind: str  # "commits" or "comments"
    activities: list[UnifiedActivity]
    project: str
    branch: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None

    @property
    def timestamp(self) -> datetime:
        return self.activities[0].timestamp

    @property
    def summary_text(self) -> str:
        count = len(self.activities)
        if self.kind == "commits":
            return f"{count} commits to {self.branch}"
        return f"{count} comments on {self.target_type} #{self.target_id}"


DisplayItem = Union[UnifiedActivity, ActivityGroup]


def _branch_from_summary(summary: Optional[str]) -> Optional[str]:
    if not summary:
        return None
    for pattern in _BRANCH_IN_SUMMARY:
        match = pattern.search(summary)
        if match:
            return match.group(1)
    return None


def _commit_key(activity: UnifiedActivity) -> Optional[tuple]:
    if activity.type != ActivityType.COMMIT:
        return None
    branch = activity.source_ref or _branch_from_summary(activity.summary)
    if not branch:
        return None
    return ("commits", branch, activity.project_name or "unknown")


def _comment_target(activity: UnifiedActivity) -> Optional[tuple[str, str]]:
    if activity.title:
        for pattern, target_type in _TARGET_IN_TITLE:
            match = pattern.search(activity.title)
            if match:
                return target_type, match.group(1)
    if activity.url:
        for pattern, target_type in _TARGET_IN_URL:
            match = pattern.search(activity.url)
            if match:
                return target_type, match.group(1)
    return None


def _comment_key(activity: UnifiedActivity) -> Optional[tuple]:
    if activity.type not in _COMMENT_TYPES:
        return None
    target = _comment_target(activity)
    if target is None:
        return None
    return ("comments", target[0], target[1], activity.project_name or "unknown")


def _group_key(activity: UnifiedActivity) -> Optional[tuple]:
    return _commit_key(activity) or _comment_key(activity)


def _build_group(key: tuple, members: list[UnifiedActivity]) -> ActivityGroup:
    first_id = members[0].id
    if key[0] == "commits":
        _, branch, project = key
        return ActivityGroup(
            id=f"commit-group:{branch}:{project}:{first_id}",
            kind="commits",
            activities=members,
            project=project,
            branch=branch,
        )
    _, target_type, target_id, project = key
    return ActivityGroup(
        id=f"comment-group:{target_type}:{target_id}:{project}:{first_id}",
        kind="comments",
        activities=members,
        project=project,
        target_type=target_type,
        target_id=target_id,
    )


def collapse(activities: Sequence[UnifiedActivity]) -> list[DisplayItem]:
    """Group consecutive similar activities; output is ascending by time."""
    ordered = sorted(activities, key=lambda a: a.timestamp)
    result: list[DisplayItem] = []
    i = 0
    while i < len(ordered):
        activity = ordered[i]
        key = _group_key(activity)
        if key is None:
            result.append(activity)
            i += 1
            continue

        members = [activity]
        j = i + 1
        while j < len(ordered):
            candidate = ordered[j]
            if _group_key(candidate) != key:
                break
            if candidate.timestamp - members[-1].timestamp > MAX_TIME_GAP:
                break
            members.append(candidate)
            j += 1

        if len(members) > 1:
            result.append(_build_group(key, members))
        else:
            result.append(activity)
        i = j
    return result
