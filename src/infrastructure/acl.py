from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from src.domain.exceptions import WebhookPayloadError
from src.domain.models import IssueEntity, LabelEntity

REQUIRED_ISSUE_FIELDS = ("number", "title", "state")


def parse_github_datetime(raw_date: Optional[str]) -> Optional[datetime]:
    if not raw_date:
        return None
    return datetime.fromisoformat(raw_date.replace("Z", "+00:00"))


class GitHubTranslator:
    """
    Anti-corruption layer that translates raw GitHub REST and webhook JSON into domain entities.
    """

    @staticmethod
    def to_label(raw_label: Dict[str, Any]) -> LabelEntity:
        """
        Transforms a raw GitHub label object into a LabelEntity.

        Args:
            raw_label (Dict[str, Any]): A label object from the REST API or a webhook payload.

        Returns:
            LabelEntity: The domain model instance representing the label.
        """
        name = raw_label.get('name')
        if not name:
            raise ValueError("name is required to build LabelEntity.")

        return LabelEntity(
            id=raw_label.get('id') or 0,
            name=name,
            color=raw_label.get('color') or "gray",
            description=raw_label.get('description'),
        )

    @classmethod
    def to_issue(cls, raw_issue: Dict[str, Any]) -> IssueEntity:
        """
        Transforms a raw GitHub issue object into an IssueEntity.

        Labels may arrive either as objects or as bare names; both are accepted.
        The mirror's own created_at is left unset so that the store decides it.

        Args:
            raw_issue (Dict[str, Any]): An issue object from the REST API or a webhook payload.

        Returns:
            IssueEntity: The domain model instance representing the issue.
        """
        missing = cls.missing_issue_fields(raw_issue)
        if missing:
            raise ValueError(f"{', '.join(missing)} required to build IssueEntity.")

        labels: List[LabelEntity] = []
        for raw_label in raw_issue.get('labels') or []:
            if isinstance(raw_label, str):
                labels.append(LabelEntity(name=raw_label))
            elif isinstance(raw_label, dict) and raw_label.get('name'):
                labels.append(cls.to_label(raw_label))

        return IssueEntity(
            number=raw_issue['number'],
            title=raw_issue['title'],
            body=raw_issue.get('body') or "",
            state=raw_issue['state'],
            labels=labels,
            upstream_created_at=parse_github_datetime(raw_issue.get('created_at')),
            updated_at=parse_github_datetime(raw_issue.get('updated_at')),
        )

    @staticmethod
    def missing_issue_fields(raw_issue: Dict[str, Any]) -> List[str]:
        return [field for field in REQUIRED_ISSUE_FIELDS if not raw_issue.get(field)]

    @staticmethod
    def repository_of(event: Dict[str, Any]) -> Tuple[str, str]:
        """Extracts (owner, repo) from a webhook payload."""
        repository = event.get('repository') or {}
        owner = (repository.get('owner') or {}).get('login')
        repo = repository.get('name')
        if not owner or not repo:
            raise WebhookPayloadError("Payload is missing repository.owner.login or repository.name.")
        return owner, repo
