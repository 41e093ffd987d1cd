"""Tests for the Azure DevOps adapter."""

import pytest
from datetime import datetime, timezone

import responses

from activity_sync.models import Account, ActivityType, AuthMethod, Provider, TicketSource
from activity_sync.providers.azure_devops import AzureDevOpsAdapter
from activity_sync.providers.errors import AuthenticationFailed, ConfigurationError
from activity_sync.providers.http_client import ProviderHttpClient, RetryPolicy

ORG = "https://dev.azure.com/acme"
START = datetime(2026, 3, 10, tzinfo=timezone.utc)
END = datetime(2026, 3, 10, 23, 59, 59, tzinfo=timezone.utc)

PULL_REQUEST = {
    "pullRequestId": 11,
    "title": "Login page AB#123",
    "status": "active",
    "creationDate": "2026-03-10T10:00:00.123Z",
    "sourceRefName": "refs/heads/feature/717018-login",
    "targetRefName": "refs/heads/main",
    "createdBy": {"displayName": "Dev"},
    "repository": {"id": "r1", "name": "web-repo", "project": {"name": "Web"}},
    "isDraft": False,
}

OLD_PULL_REQUEST = dict(PULL_REQUEST, pullRequestId=10, creationDate="2026-02-01T10:00:00Z")

COMMIT = {
    "commitId": "deadbeefcafe0001",
    "author": {"name": "Dev", "date": "2026-03-10T12:00:00Z"},
    "comment": "Fix typo in login copy",
}


def _account(**overrides) -> Account:
    values = dict(
        id="ado-1",
        provider=Provider.AZURE_DEVOPS,
        display_name="Acme DevOps",
        organization="acme",
        projects=["Web"],
    )
    values.update(overrides)
    return Account(**values)


class TestAzureDevOpsAdapter:
    """Tests for AzureDevOpsAdapter.fetch_activities."""

    def setup_method(self):
        """Set up test fixtures."""
        self.http = ProviderHttpClient(retry_policy=RetryPolicy(max_retries=0))
        self.adapter = AzureDevOpsAdapter(self.http)

    def teardown_method(self):
        """Clean up."""
        self.http.close()

    def test_missing_organization(self):
        with pytest.raises(ConfigurationError) as exc:
            self.adapter.fetch_activities(_account(organization=None), "pat", START, END)

        assert "organization" in str(exc.value)

    @responses.activate
    def test_fetch_pull_requests_and_commits(self):
        responses.add(
            responses.GET, f"{ORG}/_apis/connectionData",
            json={"authenticatedUser": {"id": "u1"}},
        )
        responses.add(
            responses.GET, f"{ORG}/Web/_apis/git/pullrequests",
            json={"value": [PULL_REQUEST, OLD_PULL_REQUEST]},
        )
        responses.add(
            responses.GET, f"{ORG}/Web/_apis/git/repositories/r1/pullRequests/11/workitems",
            json={"value": [{"id": "123"}]},
        )
        responses.add(
            responses.GET, f"{ORG}/Web/_apis/git/repositories",
            json={"value": [{"id": "r1", "name": "web-repo"}]},
        )
        responses.add(
            responses.GET, f"{ORG}/Web/_apis/git/repositories/r1/commits",
            json={"value": [COMMIT]},
        )
        # Work item query failing must not fail the account
        responses.add(responses.POST, f"{ORG}/Web/_apis/wit/wiql", status=500)

        activities = self.adapter.fetch_activities(_account(), "pat", START, END)

        assert [a.id for a in activities] == [
            "azure-devops:ado-1:commit-deadbeef",
            "azure-devops:ado-1:pr-11",
        ]
        commit, pr = activities

        assert commit.type == ActivityType.COMMIT
        assert commit.title == "Fix typo in login copy"
        assert commit.url == f"{ORG}/Web/_git/web-repo/commit/deadbeefcafe0001"

        assert pr.type == ActivityType.PULL_REQUEST
        assert pr.source_ref == "feature/717018-login"
        assert pr.target_ref == "main"
        assert pr.participants == ["Dev"]
        assert pr.url == f"{ORG}/Web/_git/web-repo/pullrequest/11"
        assert [(t.key, t.source) for t in pr.linked_tickets] == [
            ("AB#123", TicketSource.API_LINK),
            ("AB#717018", TicketSource.BRANCH),
        ]

    @responses.activate
    def test_pat_uses_basic_auth(self):
        responses.add(responses.GET, f"{ORG}/_apis/connectionData", status=401)

        with pytest.raises(AuthenticationFailed):
            self.adapter.fetch_activities(_account(), "pat", START, END)

        assert responses.calls[0].request.headers["Authorization"] == "Basic OnBhdA=="
        assert "api-version=7.0" in responses.calls[0].request.url

    @responses.activate
    def test_oauth_uses_bearer(self):
        responses.add(responses.GET, f"{ORG}/_apis/connectionData", status=401)

        with pytest.raises(AuthenticationFailed):
            self.adapter.fetch_activities(_account(auth_method=AuthMethod.OAUTH), "tok", START, END)

        assert responses.calls[0].request.headers["Authorization"] == "Bearer tok"

    @responses.activate
    def test_work_items(self):
        responses.add(
            responses.GET, f"{ORG}/_apis/connectionData",
            json={"authenticatedUser": {"id": "u1"}},
        )
        responses.add(responses.GET, f"{ORG}/Web/_apis/git/pullrequests", json={"value": []})
        responses.add(responses.GET, f"{ORG}/Web/_apis/git/repositories", json={"value": []})
        responses.add(
            responses.POST, f"{ORG}/Web/_apis/wit/wiql",
            json={"workItems": [{"id": 501}]},
        )
        responses.add(
            responses.GET, f"{ORG}/_apis/wit/workitems",
            json={
                "value": [
                    {
                        "id": 501,
                        "fields": {
                            "System.Title": "Checkout flow",
                            "System.WorkItemType": "User Story",
                            "System.ChangedDate": "2026-03-10T15:30:00.47Z",
                            "System.CreatedBy": {"displayName": "PM"},
                        },
                    }
                ]
            },
        )

        activities = self.adapter.fetch_activities(_account(), "pat", START, END)

        assert len(activities) == 1
        item = activities[0]
        assert item.id == "azure-devops:ado-1:wi-501"
        assert item.type == ActivityType.WORK_ITEM
        assert item.title == "[User Story] Checkout flow"
        assert item.participants == ["PM"]
        assert item.url == f"{ORG}/Web/_workitems/edit/501"
