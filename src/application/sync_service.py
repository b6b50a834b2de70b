import logging
from typing import Any, Dict, List, Optional

import aiohttp

from src.domain.exceptions import IngestionException, SyncException
from src.domain.models import (
    IssueEntity,
    IssueListOptions,
    LabelEntity,
    MilestoneEntity,
    RepositoryEntity,
    RepositoryListOptions,
    UserEntity,
)
from src.domain.storage import IssueStorage
from src.infrastructure.acl import GitHubTranslator
from src.infrastructure.github_client import GitHubRestClient, MAX_PER_PAGE

logger = logging.getLogger(__name__)

FIRST_PAGE = 1

# Errors that abort a sync run. ValueError covers pydantic validation of raw records.
_SYNC_ERRORS = (SyncException, ValueError)


class IssueSyncService:
    """
    Service responsible for fetching GitHub issues and repository metadata and
    storing them through an IssueStorage.

    Pages are fetched and persisted strictly one after another; each page is
    written in its own transaction, so a failure leaves earlier pages intact
    and never a partial page. Nothing is retried here: the first error aborts
    the run and is raised as IngestionException with the stage and page.
    """

    def __init__(
            self,
            github_client: GitHubRestClient,
            storage: IssueStorage,
            per_page: int = MAX_PER_PAGE,
    ):
        self.github_client = github_client
        self.storage = storage
        self.per_page = per_page

    async def sync_repository(self, owner: str, name: str) -> RepositoryEntity:
        """Fetches repository metadata from GitHub and upserts it."""
        async with aiohttp.ClientSession() as session:
            return await self._sync_repository(session, owner, name)

    async def _sync_repository(self, session: aiohttp.ClientSession, owner: str, name: str) -> RepositoryEntity:
        try:
            raw_repo = await self.github_client.fetch_repository(session, owner, name)
            repository = GitHubTranslator.to_repository(raw_repo)
            await self.storage.upsert_repository(repository)
        except _SYNC_ERRORS as e:
            raise IngestionException("sync repository metadata", f"{owner}/{name}: {e}") from e

        logger.info(f"Synced repository metadata for {repository.full_name}.")
        return repository

    async def fetch_and_store_all_issues(self, owner: str, name: str, state: str = "open") -> int:
        """
        Syncs repository metadata, then pages through every issue matching
        ``state`` until GitHub returns an empty page or no next page.

        Returns:
            The number of issues stored.
        """
        logger.info(f"Starting full issue sync for {owner}/{name} (state={state}).")
        total_stored = 0

        async with aiohttp.ClientSession() as session:
            await self._sync_repository(session, owner, name)

            page: Optional[int] = FIRST_PAGE
            while page is not None:
                try:
                    raw_issues, next_page = await self.github_client.list_issues_by_repo(
                        session, owner, name, state=state, page=page, per_page=self.per_page
                    )
                except _SYNC_ERRORS as e:
                    raise IngestionException("fetch issues", str(e), page=page) from e

                if not raw_issues:
                    break

                try:
                    await self._persist_issues(raw_issues)
                except _SYNC_ERRORS as e:
                    raise IngestionException("persist issues", str(e), page=page) from e

                total_stored += len(raw_issues)
                logger.info(f"[{owner}/{name}] Page {page}: stored {len(raw_issues)}. Total: {total_stored}.")
                page = next_page

        logger.info(f"Issue sync for {owner}/{name} completed. Total issues stored: {total_stored}.")
        return total_stored

    async def fetch_and_store_issues(
            self,
            owner: str,
            name: str,
            state: str = "open",
            page: int = FIRST_PAGE,
            per_page: Optional[int] = None,
    ) -> int:
        """Syncs repository metadata and a single page of issues."""
        async with aiohttp.ClientSession() as session:
            await self._sync_repository(session, owner, name)
            try:
                raw_issues, _ = await self.github_client.list_issues_by_repo(
                    session, owner, name, state=state, page=page, per_page=per_page or self.per_page
                )
            except _SYNC_ERRORS as e:
                raise IngestionException("fetch issues", str(e), page=page) from e

        try:
            await self._persist_issues(raw_issues)
        except _SYNC_ERRORS as e:
            raise IngestionException("persist issues", str(e), page=page) from e
        return len(raw_issues)

    async def sync_issue(self, owner: str, name: str, number: int) -> IssueEntity:
        """Fetches one issue and stores it. Creating and updating are the same path."""
        async with aiohttp.ClientSession() as session:
            try:
                raw_issue = await self.github_client.get_issue(session, owner, name, number)
            except _SYNC_ERRORS as e:
                raise IngestionException("fetch issue", f"#{number}: {e}") from e

        try:
            issues = await self._persist_issues([raw_issue])
        except _SYNC_ERRORS as e:
            raise IngestionException("persist issue", f"#{number}: {e}") from e

        logger.info(f"Synced issue #{number} of {owner}/{name}.")
        return issues[0]

    async def update_issue_from_github(self, owner: str, name: str, number: int) -> IssueEntity:
        return await self.sync_issue(owner, name, number)

    async def _persist_issues(self, raw_issues: List[Dict[str, Any]]) -> List[IssueEntity]:
        """
        Normalizes a page of raw issues, upserts the users, labels and
        milestones they reference, then upserts the issues in one batch.
        """
        users: Dict[int, UserEntity] = {}
        labels: Dict[int, LabelEntity] = {}
        milestones: Dict[int, MilestoneEntity] = {}

        for raw_issue in raw_issues:
            for raw_user in [raw_issue.get('user')] + list(raw_issue.get('assignees') or []):
                if raw_user:
                    user = GitHubTranslator.to_user(raw_user)
                    users[user.id] = user
            for raw_label in raw_issue.get('labels') or []:
                label = GitHubTranslator.to_label(raw_label)
                labels[label.id] = label
            if raw_issue.get('milestone'):
                milestone = GitHubTranslator.to_milestone(raw_issue['milestone'])
                milestones[milestone.id] = milestone

        issues = [GitHubTranslator.to_issue(raw_issue) for raw_issue in raw_issues]

        for user in users.values():
            await self.storage.upsert_user(user)
        for label in labels.values():
            await self.storage.upsert_label(label)
        for milestone in milestones.values():
            await self.storage.upsert_milestone(milestone)

        await self.storage.batch_upsert_issues(issues)
        return issues

    # Reads are served from storage only.

    async def get_issue_by_id(self, issue_id: int) -> IssueEntity:
        return await self.storage.get_issue_by_id(issue_id)

    async def get_issue_by_number(self, number: int) -> IssueEntity:
        return await self.storage.get_issue_by_number(number)

    async def list_issues(self, options: Optional[IssueListOptions] = None) -> List[IssueEntity]:
        return await self.storage.list_issues(options)

    async def get_repository_by_id(self, repository_id: int) -> RepositoryEntity:
        return await self.storage.get_repository_by_id(repository_id)

    async def get_repository_by_full_name(self, full_name: str) -> RepositoryEntity:
        return await self.storage.get_repository_by_full_name(full_name)

    async def list_repositories(self, options: Optional[RepositoryListOptions] = None) -> List[RepositoryEntity]:
        return await self.storage.list_repositories(options)
