import logging
from typing import Optional

from src.domain.cache_keys import CacheKey
from src.domain.exceptions import ConfigError
from src.domain.models import PublicRepoConfig, RepoConfig
from src.infrastructure.cache import MISS, CacheTierManager
from src.infrastructure.database import MirrorRepository
from src.infrastructure.encryption import CredentialCipher
from src.infrastructure.settings import Settings

logger = logging.getLogger(__name__)


class ConfigResolver:
    """
    Produces the active RepoConfig from layered sources. First match wins:

    1. the in-process override (set explicitly, or by the last successful resolution),
    2. GITHUB_OWNER / GITHUB_REPO / GITHUB_TOKEN from the environment, when complete
       and matching the requested repository,
    3. the persisted configuration for the requested repository, or the most recently
       saved one when no repository is requested.

    Credentials stay encrypted inside RepoConfig. Only credential_for() decrypts, and
    only the non-sensitive PublicRepoConfig is ever written to the cache.
    """

    def __init__(
        self,
        repository: MirrorRepository,
        cipher: CredentialCipher,
        cache: CacheTierManager,
        env_owner: Optional[str] = None,
        env_repo: Optional[str] = None,
        env_token: Optional[str] = None,
        default_page_size: int = 10,
    ):
        self.repository = repository
        self.cipher = cipher
        self.cache = cache
        self.default_page_size = default_page_size
        self._env_owner = env_owner
        self._env_repo = env_repo
        self._env_token = env_token
        self._env_config: Optional[RepoConfig] = None
        self._override: Optional[RepoConfig] = None

    @classmethod
    def from_settings(
        cls, settings: Settings, repository: MirrorRepository, cipher: CredentialCipher, cache: CacheTierManager
    ) -> "ConfigResolver":
        return cls(
            repository=repository,
            cipher=cipher,
            cache=cache,
            env_owner=settings.github_owner,
            env_repo=settings.github_repo,
            env_token=settings.github_token,
            default_page_size=settings.default_page_size,
        )

    def override(self, config: RepoConfig) -> None:
        secret = config.credential.get_secret_value()
        if secret and not self.cipher.is_encrypted(secret):
            config = RepoConfig(
                owner=config.owner,
                repo=config.repo,
                credential=self.cipher.encrypt(secret),
                page_size=config.page_size,
            )
        self._remember(config)

    def reset(self) -> None:
        self._override = None
        self.cache.invalidate(CacheKey.config())

    def _environment_config(self) -> Optional[RepoConfig]:
        if not (self._env_owner and self._env_repo and self._env_token):
            return None
        if self._env_config is None:
            self._env_config = RepoConfig(
                owner=self._env_owner,
                repo=self._env_repo,
                credential=self.cipher.encrypt(self._env_token),
                page_size=self.default_page_size,
            )
        return self._env_config

    def _remember(self, config: RepoConfig) -> None:
        self._override = config
        public = config.public()
        self.cache.set(CacheKey.config(config.owner, config.repo), public)
        self.cache.set(CacheKey.config(), public)

    async def resolve(self, owner: Optional[str] = None, repo: Optional[str] = None) -> RepoConfig:
        source = "override"
        config = self._override if self._override and self._override.matches(owner, repo) else None

        if config is None:
            source = "environment"
            env_config = self._environment_config()
            if env_config is not None and env_config.matches(owner, repo):
                config = env_config

        if config is None:
            source = "database"
            if owner and repo:
                config = await self.repository.get_config(owner, repo)
            else:
                config = await self.repository.latest_config()

        if config is None:
            target = f" for {owner}/{repo}" if owner and repo else ""
            raise ConfigError(f"No GitHub configuration found{target}. Please check your settings.")
        if not config.credential.get_secret_value():
            raise ConfigError(f"Incomplete GitHub configuration for {config.owner}/{config.repo}: token is missing.")

        logger.debug(f"Resolved {source} config: {config.public()}")
        self._remember(config)
        return config

    async def public_config(self, owner: Optional[str] = None, repo: Optional[str] = None) -> PublicRepoConfig:
        cached = self.cache.get(CacheKey.config(owner, repo))
        if cached is not MISS:
            return cached
        return (await self.resolve(owner, repo)).public()

    async def save(self, owner: str, repo: str, token: str, page_size: Optional[int] = None) -> PublicRepoConfig:
        if not (owner and repo and token):
            raise ConfigError("owner, repo and token are all required to save a configuration.")

        config = await self.repository.save_config(
            owner, repo, self.cipher.encrypt(token), page_size or self.default_page_size
        )
        self._remember(config)
        logger.info(f"Saved configuration for {owner}/{repo}.")
        return config.public()

    async def is_configured(self, owner: str, repo: str) -> bool:
        if self._override is not None and self._override.matches(owner, repo):
            return True
        env_config = self._environment_config()
        if env_config is not None and env_config.matches(owner, repo):
            return True
        return await self.repository.get_config(owner, repo) is not None

    def credential_for(self, config: RepoConfig) -> str:
        """Decrypts the token for immediate use against the GitHub API. Never cache the result."""
        token = self.cipher.decrypt(config.credential.get_secret_value())
        if not token:
            raise ConfigError(f"GitHub token for {config.owner}/{config.repo} is empty.")
        return token
