from datetime import datetime
from typing import Any, Dict, Optional

from src.domain.exceptions import ValidationException
from src.domain.models import (
    DEFAULT_BRANCH,
    IssueEntity,
    LabelEntity,
    MilestoneEntity,
    RepositoryEntity,
    UserEntity,
)


def _parse_timestamp(raw_date: Optional[str]) -> Optional[datetime]:
    if not raw_date:
        return None
    return datetime.fromisoformat(raw_date.replace("Z", "+00:00"))


def _required_timestamp(raw: Dict[str, Any], key: str, kind: str) -> datetime:
    value = _parse_timestamp(raw.get(key))
    if value is None:
        raise ValidationException(f"{key} is required to build {kind}.")
    return value


def _required_id(raw: Dict[str, Any], kind: str) -> int:
    raw_id = raw.get('id')
    if not raw_id:
        raise ValidationException(f"id is required to build {kind}.")
    return int(raw_id)


class GitHubTranslator:
    """
    Anti-corruption layer that flattens raw GitHub REST JSON records into
    normalized entities linked by id.

    GitHub sends nullable strings (``body``, ``description``, ``language``) as
    JSON null; they become empty strings here. Nullable timestamps stay None so
    the storage layer clears them.
    """

    @staticmethod
    def to_user(raw_user: Dict[str, Any]) -> UserEntity:
        return UserEntity(
            id=_required_id(raw_user, "UserEntity"),
            login=raw_user.get('login') or '',
            avatar_url=raw_user.get('avatar_url') or '',
            html_url=raw_user.get('html_url') or '',
        )

    @staticmethod
    def to_label(raw_label: Dict[str, Any]) -> LabelEntity:
        return LabelEntity(
            id=_required_id(raw_label, "LabelEntity"),
            name=raw_label.get('name') or '',
            color=raw_label.get('color') or '',
            description=raw_label.get('description') or '',
        )

    @staticmethod
    def to_milestone(raw_milestone: Dict[str, Any]) -> MilestoneEntity:
        return MilestoneEntity(
            id=_required_id(raw_milestone, "MilestoneEntity"),
            number=raw_milestone.get('number', 0),
            title=raw_milestone.get('title') or '',
            description=raw_milestone.get('description') or '',
            state=raw_milestone.get('state') or 'open',
            due_on=_parse_timestamp(raw_milestone.get('due_on')),
            created_at=_required_timestamp(raw_milestone, 'created_at', "MilestoneEntity"),
            updated_at=_required_timestamp(raw_milestone, 'updated_at', "MilestoneEntity"),
        )

    @staticmethod
    def to_issue(raw_issue: Dict[str, Any]) -> IssueEntity:
        """
        Transforms a raw GitHub issue into an IssueEntity.

        Nested sub-records are reduced to their ids; use the other ``to_*``
        methods to build the referenced entities themselves.

        Args:
            raw_issue (Dict[str, Any]): The raw JSON issue from the GitHub REST API.

        Returns:
            IssueEntity: The normalized issue.
        """
        creator = raw_issue.get('user') or {}
        milestone = raw_issue.get('milestone') or {}

        return IssueEntity(
            id=_required_id(raw_issue, "IssueEntity"),
            number=raw_issue.get('number', 0),
            title=raw_issue.get('title') or '',
            body=raw_issue.get('body') or '',
            state=raw_issue.get('state') or 'open',
            comments=raw_issue.get('comments', 0),
            locked=raw_issue.get('locked', False),
            html_url=raw_issue.get('html_url') or '',
            created_at=_required_timestamp(raw_issue, 'created_at', "IssueEntity"),
            updated_at=_required_timestamp(raw_issue, 'updated_at', "IssueEntity"),
            closed_at=_parse_timestamp(raw_issue.get('closed_at')),
            user_id=creator.get('id'),
            milestone_id=milestone.get('id'),
            label_ids=[label['id'] for label in raw_issue.get('labels') or [] if label.get('id')],
            assignee_ids=[user['id'] for user in raw_issue.get('assignees') or [] if user.get('id')],
        )

    @staticmethod
    def to_repository(raw_repo: Dict[str, Any]) -> RepositoryEntity:
        """
        Transforms a raw GitHub repository into a RepositoryEntity.
        ``full_name`` falls back to ``owner/name`` and ``default_branch`` to ``main``.
        """
        owner_data = raw_repo.get('owner') or {}
        name = raw_repo.get('name') or ''
        owner_login = owner_data.get('login') or ''

        full_name = raw_repo.get('full_name') or ''
        if not full_name and owner_login and name:
            full_name = f"{owner_login}/{name}"

        return RepositoryEntity(
            id=_required_id(raw_repo, "RepositoryEntity"),
            name=name,
            full_name=full_name,
            owner_login=owner_login,
            description=raw_repo.get('description') or '',
            private=raw_repo.get('private', False),
            archived=raw_repo.get('archived', False),
            disabled=raw_repo.get('disabled', False),
            html_url=raw_repo.get('html_url') or '',
            default_branch=raw_repo.get('default_branch') or DEFAULT_BRANCH,
            language=raw_repo.get('language') or '',
            stargazers_count=raw_repo.get('stargazers_count', 0),
            forks_count=raw_repo.get('forks_count', 0),
            open_issues_count=raw_repo.get('open_issues_count', 0),
            created_at=_required_timestamp(raw_repo, 'created_at', "RepositoryEntity"),
            updated_at=_required_timestamp(raw_repo, 'updated_at', "RepositoryEntity"),
            pushed_at=_parse_timestamp(raw_repo.get('pushed_at')),
        )
