import unittest
from datetime import datetime, timezone

from src.domain.exceptions import ValidationException
from src.infrastructure.acl import GitHubTranslator


class TestIssueTranslation(unittest.TestCase):
    def setUp(self) -> None:
        self.raw_issue = {
            "id": 1,
            "number": 1347,
            "title": "Found a bug",
            "body": None,
            "state": "closed",
            "comments": 3,
            "locked": True,
            "html_url": "https://github.com/octocat/Hello-World/issues/1347",
            "created_at": "2024-01-02T03:04:05Z",
            "updated_at": "2024-01-03T03:04:05Z",
            "closed_at": "2024-01-04T03:04:05Z",
            "user": {"id": 1, "login": "octocat"},
            "labels": [{"id": 208045946, "name": "bug"}],
            "assignees": [{"id": 2, "login": "hubot"}],
            "milestone": {"id": 1002604, "number": 1, "title": "v1.0",
                          "created_at": "2024-01-01T00:00:00Z", "updated_at": "2024-01-01T00:00:00Z"},
        }

    def test_to_issue_flattens_nested_records_to_ids(self) -> None:
        issue = GitHubTranslator.to_issue(self.raw_issue)

        self.assertEqual(issue.user_id, 1)
        self.assertEqual(issue.milestone_id, 1002604)
        self.assertEqual(issue.label_ids, [208045946])
        self.assertEqual(issue.assignee_ids, [2])
        self.assertEqual(issue.body, "")
        self.assertTrue(issue.locked)
        self.assertEqual(issue.closed_at, datetime(2024, 1, 4, 3, 4, 5, tzinfo=timezone.utc))

    def test_absent_optional_references_stay_none(self) -> None:
        self.raw_issue.update(closed_at=None, milestone=None, user=None, state="open")

        issue = GitHubTranslator.to_issue(self.raw_issue)

        self.assertIsNone(issue.closed_at)
        self.assertIsNone(issue.milestone_id)
        self.assertIsNone(issue.user_id)

    def test_missing_updated_at_raises(self) -> None:
        del self.raw_issue["updated_at"]

        with self.assertRaises(ValidationException):
            GitHubTranslator.to_issue(self.raw_issue)

    def test_missing_id_raises(self) -> None:
        del self.raw_issue["id"]

        with self.assertRaises(ValidationException):
            GitHubTranslator.to_issue(self.raw_issue)

    def test_to_milestone_keeps_due_on_optional(self) -> None:
        milestone = GitHubTranslator.to_milestone(self.raw_issue["milestone"])
        self.assertIsNone(milestone.due_on)

        raw = dict(self.raw_issue["milestone"], due_on="2024-06-01T07:00:00Z")
        self.assertEqual(
            GitHubTranslator.to_milestone(raw).due_on,
            datetime(2024, 6, 1, 7, 0, 0, tzinfo=timezone.utc),
        )


class TestRepositoryTranslation(unittest.TestCase):
    def test_to_repository_derives_full_name_and_default_branch(self) -> None:
        raw_repo = {
            "id": 1296269,
            "name": "Hello-World",
            "owner": {"login": "octocat"},
            "stargazers_count": 80,
            "language": None,
            "created_at": "2011-01-26T19:01:12Z",
            "updated_at": "2011-01-26T19:14:43Z",
        }

        repository = GitHubTranslator.to_repository(raw_repo)

        self.assertEqual(repository.full_name, "octocat/Hello-World")
        self.assertEqual(repository.default_branch, "main")
        self.assertEqual(repository.stargazers_count, 80)
        self.assertEqual(repository.language, "")
        self.assertIsNone(repository.pushed_at)

    def test_explicit_values_win(self) -> None:
        raw_repo = {
            "id": 1,
            "name": "x",
            "full_name": "org/x",
            "owner": {"login": "someone"},
            "default_branch": "develop",
            "pushed_at": "2024-01-02T03:04:05Z",
            "created_at": "2024-01-02T03:04:05Z",
            "updated_at": "2024-01-02T03:04:05Z",
        }

        repository = GitHubTranslator.to_repository(raw_repo)

        self.assertEqual(repository.full_name, "org/x")
        self.assertEqual(repository.default_branch, "develop")
        self.assertEqual(repository.pushed_at, datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
