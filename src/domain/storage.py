"""Storage port: the contract every backing store implements.

The ingestion service only talks to this interface, so a second engine can be
added without touching it.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from src.domain.models import (
    IssueEntity,
    IssueListOptions,
    IssueStateFilter,
    LabelEntity,
    ListOptions,
    MilestoneEntity,
    RepositoryEntity,
    RepositoryListOptions,
    UserEntity,
)


class IssueStorage(ABC):
    """
    Abstract interface for issue-tracker data storage.

    ``create_*`` raises AlreadyExistsException on a primary key collision,
    ``get_*`` and ``delete_*`` raise NotFoundException when the row is absent,
    ``upsert_*`` never fails on existence.
    """

    # Issues

    @abstractmethod
    async def create_issue(self, issue: IssueEntity) -> None:
        pass

    @abstractmethod
    async def batch_upsert_issues(self, issues: List[IssueEntity]) -> None:
        """
        Upserts every issue together with its label and assignee links in one
        transaction. Either all of them are stored or none are.
        """
        pass

    @abstractmethod
    async def upsert_issue(self, issue: IssueEntity) -> None:
        pass

    @abstractmethod
    async def update_issue(self, issue: IssueEntity) -> None:
        """Writes only the fields explicitly set on ``issue``; the row must exist."""
        pass

    @abstractmethod
    async def get_issue_by_id(self, issue_id: int) -> IssueEntity:
        pass

    @abstractmethod
    async def get_issue_by_number(self, number: int) -> IssueEntity:
        pass

    @abstractmethod
    async def list_issues(self, options: Optional[IssueListOptions] = None) -> List[IssueEntity]:
        pass

    @abstractmethod
    async def count_issues(self, state: IssueStateFilter = "all") -> int:
        pass

    @abstractmethod
    async def delete_issue(self, issue_id: int) -> None:
        pass

    # Users

    @abstractmethod
    async def create_user(self, user: UserEntity) -> None:
        pass

    @abstractmethod
    async def get_user_by_id(self, user_id: int) -> UserEntity:
        pass

    @abstractmethod
    async def upsert_user(self, user: UserEntity) -> None:
        pass

    @abstractmethod
    async def list_users(self, options: Optional[ListOptions] = None) -> List[UserEntity]:
        pass

    @abstractmethod
    async def delete_user(self, user_id: int) -> None:
        pass

    # Labels

    @abstractmethod
    async def create_label(self, label: LabelEntity) -> None:
        pass

    @abstractmethod
    async def get_label_by_id(self, label_id: int) -> LabelEntity:
        pass

    @abstractmethod
    async def upsert_label(self, label: LabelEntity) -> None:
        pass

    @abstractmethod
    async def list_labels(self, options: Optional[ListOptions] = None) -> List[LabelEntity]:
        pass

    @abstractmethod
    async def delete_label(self, label_id: int) -> None:
        pass

    # Milestones

    @abstractmethod
    async def create_milestone(self, milestone: MilestoneEntity) -> None:
        pass

    @abstractmethod
    async def get_milestone_by_id(self, milestone_id: int) -> MilestoneEntity:
        pass

    @abstractmethod
    async def upsert_milestone(self, milestone: MilestoneEntity) -> None:
        pass

    @abstractmethod
    async def list_milestones(self, options: Optional[ListOptions] = None) -> List[MilestoneEntity]:
        pass

    @abstractmethod
    async def delete_milestone(self, milestone_id: int) -> None:
        pass

    # Repositories

    @abstractmethod
    async def create_repository(self, repository: RepositoryEntity) -> None:
        pass

    @abstractmethod
    async def get_repository_by_id(self, repository_id: int) -> RepositoryEntity:
        pass

    @abstractmethod
    async def get_repository_by_full_name(self, full_name: str) -> RepositoryEntity:
        pass

    @abstractmethod
    async def upsert_repository(self, repository: RepositoryEntity) -> None:
        pass

    @abstractmethod
    async def list_repositories(
        self, options: Optional[RepositoryListOptions] = None
    ) -> List[RepositoryEntity]:
        pass

    @abstractmethod
    async def delete_repository(self, repository_id: int) -> None:
        pass

    # Lifecycle

    @abstractmethod
    async def create_schema(self) -> None:
        """Provisions tables, constraints and indexes if they do not exist."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Releases underlying connections. Safe to call more than once."""
        pass
