"""Azure DevOps provider adapter (REST API 7.0)."""

import base64
import logging
from datetime import datetime
from typing import Optional

from ..dates import format_timestamp, parse_timestamp
from ..models import (
    Account,
    ActivityType,
    AuthMethod,
    LinkedTicket,
    Provider,
    TicketSource,
    TicketSystem,
    UnifiedActivity,
    activity_id,
)
from ..transforms import tickets
from .base import BaseProviderAdapter
from .errors import ConfigurationError, DecodingFailed, InvalidResponse, NetworkError

__all__ = ["AzureDevOpsAdapter"]

logger = logging.getLogger(__name__)

BASE_URL = "https://dev.azure.com"
API_VERSION = "7.0"
MAX_PROJECTS = 10
MAX_REPOSITORIES = 10
PAGE_SIZE = 100
MAX_WORK_ITEMS = 100

# Per-project sub-fetches that may fail without failing the whole account.
_SKIPPABLE_ERRORS = (NetworkError, DecodingFailed, InvalidResponse)

_WORK_ITEM_FIELDS = ",".join(
    [
        "System.Id",
        "System.Title",
        "System.WorkItemType",
        "System.State",
        "System.CreatedDate",
        "System.ChangedDate",
        "System.CreatedBy",
    ]
)


def _strip_ref(ref: Optional[str]) -> Optional[str]:
    if not ref:
        return None
    return ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref


class AzureDevOpsAdapter(BaseProviderAdapter):
    """Pull requests, commits and work items for one organization."""

    provider = Provider.AZURE_DEVOPS

    def fetch_activities(
        self, account: Account, token: str, start: datetime, end: datetime
    ) -> list[UnifiedActivity]:
        organization = account.organization
        if not organization:
            raise ConfigurationError("Azure DevOps requires organization")

        headers = self._auth_headers(account, token)
        connection = self._get(organization, None, "/connectionData", headers)
        user = connection.get("authenticatedUser") or {}
        if not user.get("id"):
            raise InvalidResponse("connectionData did not include the authenticated user")

        if account.projects:
            project_names = account.projects[:MAX_PROJECTS]
        else:
            projects = self._get(organization, None, "/projects", headers).get("value", [])
            project_names = [p["name"] for p in projects[:MAX_PROJECTS]]
        logger.info(f"Azure DevOps: {organization} has {len(project_names)} projects to scan")

        activities: list[UnifiedActivity] = []
        for project in project_names:
            for fetch in (self._pull_requests, self._commits, self._work_items):
                try:
                    activities.extend(
                        fetch(account, organization, project, headers, user, start, end)
                    )
                except _SKIPPABLE_ERRORS as e:
                    logger.warning(
                        f"Azure DevOps: {fetch.__name__.strip('_')} failed for {project}: {e}"
                    )

        activities = [a for a in activities if self._in_window(a, start, end)]
        activities.sort(key=lambda a: a.timestamp, reverse=True)
        logger.info(f"Azure DevOps: {len(activities)} activities for {account.display_name}")
        return activities

    # -- HTTP -------------------------------------------------------------

    @staticmethod
    def _auth_headers(account: Account, token: str) -> dict:
        if account.auth_method == AuthMethod.OAUTH:
            return {"Authorization": f"Bearer {token}"}
        encoded = base64.b64encode(f":{token}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {encoded}"}

    @staticmethod
    def _url(organization: str, project: Optional[str], endpoint: str) -> str:
        if project:
            return f"{BASE_URL}/{organization}/{project}/_apis{endpoint}"
        return f"{BASE_URL}/{organization}/_apis{endpoint}"

    def _get(
        self,
        organization: str,
        project: Optional[str],
        endpoint: str,
        headers: dict,
        params: Optional[dict] = None,
    ) -> dict:
        query = {"api-version": API_VERSION}
        query.update(params or {})
        data = self.http.get_json(self._url(organization, project, endpoint), headers, query)
        if not isinstance(data, dict):
            raise InvalidResponse(f"Unexpected payload from {endpoint}")
        return data

    def _get_paged(
        self,
        organization: str,
        project: str,
        endpoint: str,
        headers: dict,
        params: dict,
    ) -> list[dict]:
        items: list[dict] = []
        skip = 0
        while True:
            page = self._get(
                organization, project, endpoint, headers,
                {**params, "$top": PAGE_SIZE, "$skip": skip},
            ).get("value", [])
            items.extend(page)
            if len(page) < PAGE_SIZE:
                return items
            skip += PAGE_SIZE

    # -- Fetchers ---------------------------------------------------------

    def _pull_requests(self, account, organization, project, headers, user, start, end):
        prs = self._get_paged(
            organization, project, "/git/pullrequests", headers,
            {"searchCriteria.status": "all", "searchCriteria.creatorId": user["id"]},
        )
        activities = []
        for pr in prs:
            timestamp = parse_timestamp(pr.get("closedDate") or pr.get("creationDate"))
            if timestamp is None or not start <= timestamp <= end:
                continue
            linked = self._pr_work_items(organization, project, pr, headers)
            activities.append(self._normalize_pr(pr, timestamp, account.id, organization, linked))
        return activities

    def _pr_work_items(self, organization, project, pr, headers) -> list[LinkedTicket]:
        repo_id = (pr.get("repository") or {}).get("id")
        if not repo_id:
            return []
        try:
            refs = self._get(
                organization, project,
                f"/git/repositories/{repo_id}/pullRequests/{pr['pullRequestId']}/workitems",
                headers,
            ).get("value", [])
        except _SKIPPABLE_ERRORS as e:
            logger.debug(f"Azure DevOps: work item links for PR {pr['pullRequestId']} failed: {e}")
            return []
        return [
            LinkedTicket(
                system=TicketSystem.AZURE_BOARDS,
                key=f"AB#{ref['id']}",
                source=TicketSource.API_LINK,
                url=f"{BASE_URL}/{organization}/{project}/_workitems/edit/{ref['id']}",
            )
            for ref in refs
            if ref.get("id")
        ]

    def _commits(self, account, organization, project, headers, user, start, end):
        repos = self._get(organization, project, "/git/repositories", headers).get("value", [])
        activities = []
        for repo in repos[:MAX_REPOSITORIES]:
            commits = self._get_paged(
                organization, project, f"/git/repositories/{repo['id']}/commits", headers,
                {
                    "searchCriteria.fromDate": format_timestamp(start),
                    "searchCriteria.toDate": format_timestamp(end),
                },
            )
            for commit in commits:
                activity = self._normalize_commit(commit, account.id, organization, project, repo["name"])
                if activity is not None:
                    activities.append(activity)
        return activities

    def _work_items(self, account, organization, project, headers, user, start, end):
        query = (
            "SELECT [System.Id] FROM WorkItems "
            f"WHERE [System.ChangedDate] >= '{start.date().isoformat()}' "
            f"AND [System.ChangedDate] <= '{end.date().isoformat()}' "
            f"AND [System.TeamProject] = '{project}' "
            "AND [System.AssignedTo] = @Me ORDER BY [System.ChangedDate] DESC"
        )
        result = self.http.post_json(
            self._url(organization, project, "/wit/wiql"),
            headers=headers,
            json_body={"query": query},
            params={"api-version": API_VERSION},
        )
        refs = (result or {}).get("workItems") or []
        if not refs:
            return []
        ids = ",".join(str(ref["id"]) for ref in refs[:MAX_WORK_ITEMS])
        items = self._get(
            organization, None, "/wit/workitems", headers,
            {"ids": ids, "fields": _WORK_ITEM_FIELDS},
        ).get("value", [])
        activities = []
        for item in items:
            activity = self._normalize_work_item(item, account.id, organization, project)
            if activity is not None:
                activities.append(activity)
        return activities

    # -- Normalization ----------------------------------------------------

    def _normalize_pr(self, pr, timestamp, account_id, organization, api_linked):
        repo = pr.get("repository") or {}
        project_name = (repo.get("project") or {}).get("name", "")
        branch = _strip_ref(pr.get("sourceRefName"))
        extracted = tickets.extract_from_activity(
            branch_name=branch,
            title=pr.get("title"),
            description=pr.get("description"),
            default_system=TicketSystem.AZURE_BOARDS,
        )
        linked = tickets.merge(extracted, api_linked)
        pr_id = pr["pullRequestId"]
        return UnifiedActivity(
            id=activity_id(self.provider, account_id, f"pr-{pr_id}"),
            provider=self.provider,
            account_id=account_id,
            source_id=str(pr_id),
            type=ActivityType.PULL_REQUEST,
            timestamp=timestamp,
            title=pr.get("title"),
            participants=[(pr.get("createdBy") or {}).get("displayName", "unknown")],
            url=f"{BASE_URL}/{organization}/{project_name}/_git/{repo.get('name')}/pullrequest/{pr_id}",
            source_ref=branch,
            target_ref=_strip_ref(pr.get("targetRefName")),
            project_name=repo.get("name"),
            linked_tickets=linked or None,
            raw_event_type=f"pull_request:{pr.get('status')}",
            is_draft=pr.get("isDraft"),
        )

    def _normalize_commit(self, commit, account_id, organization, project, repo_name):
        author = commit.get("author") or {}
        timestamp = parse_timestamp(author.get("date"))
        if timestamp is None:
            return None
        comment = commit.get("comment") or ""
        first_line = comment.split("\n", 1)[0]
        linked = tickets.extract_from_activity(
            title=first_line, description=comment, default_system=TicketSystem.AZURE_BOARDS
        )
        commit_id = commit["commitId"]
        return UnifiedActivity(
            id=activity_id(self.provider, account_id, f"commit-{commit_id[:8]}"),
            provider=self.provider,
            account_id=account_id,
            source_id=commit_id,
            type=ActivityType.COMMIT,
            timestamp=timestamp,
            title=first_line[:100],
            summary=comment[:200] if len(comment) > 100 else None,
            participants=[author.get("name", "unknown")],
            url=f"{BASE_URL}/{organization}/{project}/_git/{repo_name}/commit/{commit_id}",
            project_name=repo_name,
            linked_tickets=linked or None,
            raw_event_type="commit",
        )

    def _normalize_work_item(self, item, account_id, organization, project):
        fields = item.get("fields") or {}
        timestamp = parse_timestamp(fields.get("System.ChangedDate")) or parse_timestamp(
            fields.get("System.CreatedDate")
        )
        if timestamp is None:
            return None
        work_item_type = fields.get("System.WorkItemType", "Work Item")
        title = fields.get("System.Title") or f"Work Item #{item['id']}"
        created_by = fields.get("System.CreatedBy")
        if isinstance(created_by, dict):
            created_by = created_by.get("displayName")
        return UnifiedActivity(
            id=activity_id(self.provider, account_id, f"wi-{item['id']}"),
            provider=self.provider,
            account_id=account_id,
            source_id=str(item["id"]),
            type=ActivityType.WORK_ITEM,
            timestamp=timestamp,
            title=f"[{work_item_type}] {title}",
            participants=[created_by] if created_by else None,
            url=f"{BASE_URL}/{organization}/{project}/_workitems/edit/{item['id']}",
            project_name=project,
            raw_event_type=f"work_item:{work_item_type}",
        )
