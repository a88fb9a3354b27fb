import unittest
from datetime import datetime, timezone

from src.domain.exceptions import WebhookPayloadError
from src.infrastructure.acl import GitHubTranslator, parse_github_datetime


class TestGitHubTranslator(unittest.TestCase):
    def test_to_issue_parses_labels_and_timestamps(self) -> None:
        raw_issue = {
            "number": 7,
            "title": "Crash on start",
            "body": "Steps to reproduce",
            "state": "open",
            "labels": [{"id": 11, "name": "bug", "color": "d73a4a"}, "help wanted"],
            "created_at": "2024-01-02T03:04:05Z",
            "updated_at": "2024-01-03T00:00:00Z",
        }

        issue = GitHubTranslator.to_issue(raw_issue)

        self.assertEqual(issue.number, 7)
        self.assertEqual(issue.label_names, ["bug", "help wanted"])
        self.assertEqual(issue.labels[0].color, "d73a4a")
        self.assertEqual(issue.labels[1].color, "gray")
        self.assertEqual(
            issue.upstream_created_at,
            datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        )
        self.assertIsNone(issue.created_at)

    def test_null_body_becomes_empty_string(self) -> None:
        issue = GitHubTranslator.to_issue({"number": 1, "title": "t", "state": "closed", "body": None})
        self.assertEqual(issue.body, "")
        self.assertEqual(issue.labels, [])

    def test_missing_required_fields_raises(self) -> None:
        raw_issue = {"number": 3, "state": "open"}

        self.assertEqual(GitHubTranslator.missing_issue_fields(raw_issue), ["title"])
        with self.assertRaises(ValueError):
            GitHubTranslator.to_issue(raw_issue)

    def test_to_label_defaults_color(self) -> None:
        label = GitHubTranslator.to_label({"name": "docs"})
        self.assertEqual(label.id, 0)
        self.assertEqual(label.color, "gray")

    def test_to_label_without_name_raises(self) -> None:
        with self.assertRaises(ValueError):
            GitHubTranslator.to_label({"color": "fff"})

    def test_repository_of_reads_owner_login(self) -> None:
        event = {"repository": {"name": "hello", "owner": {"login": "octocat"}}}
        self.assertEqual(GitHubTranslator.repository_of(event), ("octocat", "hello"))

    def test_repository_of_missing_owner_raises(self) -> None:
        with self.assertRaises(WebhookPayloadError):
            GitHubTranslator.repository_of({"repository": {"name": "hello"}})

    def test_parse_github_datetime_handles_empty(self) -> None:
        self.assertIsNone(parse_github_datetime(None))
        self.assertIsNone(parse_github_datetime(""))
