from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
from pydantic import BaseModel, Field, ConfigDict, SecretStr


def repo_key(owner: str, repo: str) -> str:
    """Case-insensitive identity of a repository, used for every (owner, repo) comparison."""
    return f"{owner.strip().lower()}/{repo.strip().lower()}"


def parse_label_filter(value: Union[str, Sequence[str], None]) -> List[str]:
    """
    Normalises a label filter into a sorted list of unique label names.

    Accepts either a comma-separated string (as sent by the presentation layer)
    or a sequence of names.
    """
    if not value:
        return []
    names = value.split(",") if isinstance(value, str) else value
    return sorted({name.strip() for name in names if name and name.strip()})


class SyncStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    WEBHOOK = "webhook"


class PublicRepoConfig(BaseModel):
    """Non-sensitive view of a repository configuration. Safe to cache and return to callers."""
    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    page_size: int


class RepoConfig(BaseModel):
    """
    Active configuration for one mirrored repository.

    The credential is always held in its encrypted form; it is decrypted only by
    the ConfigResolver right before an upstream call.
    """
    model_config = ConfigDict(frozen=True)

    owner: str = Field(..., min_length=1, description="Login of the repository owner")
    repo: str = Field(..., min_length=1, description="Repository name")
    credential: SecretStr = Field(..., description="Encrypted GitHub token")
    page_size: int = Field(10, ge=1, le=100, description="Issues per page served to readers")

    @property
    def key(self) -> str:
        return repo_key(self.owner, self.repo)

    def matches(self, owner: Optional[str], repo: Optional[str]) -> bool:
        if owner is None or repo is None:
            return True
        return self.key == repo_key(owner, repo)

    def public(self) -> PublicRepoConfig:
        return PublicRepoConfig(owner=self.owner, repo=self.repo, page_size=self.page_size)


class LabelEntity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = Field(0, description="GitHub label id, 0 for labels only known by name")
    name: str = Field(..., min_length=1)
    color: str = "gray"
    description: Optional[str] = None


class IssueEntity(BaseModel):
    """
    Mirrored GitHub issue.

    created_at is when this mirror first saw the issue and never changes afterwards;
    upstream_created_at is GitHub's own creation timestamp.
    """
    model_config = ConfigDict(frozen=True)

    number: int = Field(..., ge=1)
    title: str
    body: str = ""
    state: str
    labels: List[LabelEntity] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    upstream_created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def label_names(self) -> List[str]:
        return [label.name for label in self.labels]


class SyncRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    owner: str
    repo: str
    status: SyncStatus
    sync_type: SyncType
    issues_synced: int = Field(0, ge=0)
    error_message: Optional[str] = None
    last_sync_at: datetime


class SyncResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    sync_type: SyncType
    issues_synced: int
    labels_synced: int = 0
    labels_failed: int = 0
    last_sync_at: datetime


class IssuePage(BaseModel):
    issues: List[IssueEntity]
    total: int
    page: int
    page_size: int
    last_sync_at: Optional[datetime] = None


class IngestResult(BaseModel):
    """HTTP-shaped outcome of a webhook delivery."""
    status_code: int
    body: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.status_code == 200


def merge_issues(
    existing: Dict[int, IssueEntity], delta: Iterable[IssueEntity]
) -> Dict[int, IssueEntity]:
    """
    Merges a delta into a loaded issue set keyed by issue number.

    New and updated issues replace old entries; issues absent from the delta are kept.
    """
    merged = dict(existing)
    for issue in delta:
        merged[issue.number] = issue
    return merged
