from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union
from urllib.parse import quote

from src.domain.models import parse_label_filter

ISSUES = "issues"
ISSUE = "issue"
LABELS = "labels"
CONFIG = "config"
DELIVERY = "delivery"

NAMESPACES = (ISSUES, ISSUE, LABELS, CONFIG, DELIVERY)


@dataclass(frozen=True)
class CacheKey:
    """
    Structured cache and coalescing key: namespace + owner + repo + extra parts.

    Every component is URL-quoted when rendered, so a ':' inside a label filter can
    never make two different keys collide. A key with fewer parts acts as a prefix
    of every key that extends it.
    """

    namespace: str
    owner: str = ""
    repo: str = ""
    parts: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "owner", self.owner.strip().lower())
        object.__setattr__(self, "repo", self.repo.strip().lower())
        object.__setattr__(self, "parts", tuple(str(part) for part in self.parts))

    def render(self) -> str:
        components = (self.namespace, self.owner, self.repo) + self.parts
        return ":".join(quote(component, safe="") for component in components)

    def is_prefix_of(self, rendered_key: str) -> bool:
        rendered = self.render()
        return rendered_key == rendered or rendered_key.startswith(rendered + ":")

    def __str__(self) -> str:
        return self.render()

    @classmethod
    def prefix(cls, namespace: str, owner: str, repo: str) -> "CacheKey":
        return cls(namespace, owner, repo)

    @classmethod
    def issues(
        cls,
        owner: str,
        repo: str,
        page: int = 1,
        label_filter: Union[str, Sequence[str], None] = None,
    ) -> "CacheKey":
        return cls(ISSUES, owner, repo, (str(page), ",".join(parse_label_filter(label_filter))))

    @classmethod
    def issue(cls, owner: str, repo: str, number: int) -> "CacheKey":
        return cls(ISSUE, owner, repo, (str(number),))

    @classmethod
    def labels(cls, owner: str, repo: str) -> "CacheKey":
        return cls(LABELS, owner, repo, ("all",))

    @classmethod
    def config(cls, owner: Optional[str] = None, repo: Optional[str] = None) -> "CacheKey":
        if owner is None or repo is None:
            return cls(CONFIG, parts=("active",))
        return cls(CONFIG, owner, repo)

    @classmethod
    def delivery(cls, delivery_id: str) -> "CacheKey":
        return cls(DELIVERY, parts=(delivery_id,))
