from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, ConfigDict

IssueState = Literal["open", "closed"]
IssueStateFilter = Literal["open", "closed", "all"]

DEFAULT_BRANCH = "main"


class UserEntity(BaseModel):
    """A GitHub account referenced as issue creator or assignee."""
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="GitHub user ID")
    login: str = Field(..., description="GitHub username (descriptive, not a key)")
    avatar_url: str = ""
    html_url: str = Field("", description="Profile URL")


class LabelEntity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="GitHub label ID")
    name: str
    color: str = Field("", description="Hex color without the leading #")
    description: str = ""


class MilestoneEntity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="GitHub milestone ID")
    number: int
    title: str
    description: str = ""
    state: str = "open"
    due_on: Optional[datetime] = Field(None, description="Cleared on re-sync when GitHub drops it")
    created_at: datetime
    updated_at: datetime


class IssueEntity(BaseModel):
    """
    Normalized GitHub issue.

    Associations are written by id (``user_id``, ``milestone_id``, ``label_ids``,
    ``assignee_ids``). The ``user``, ``milestone``, ``labels`` and ``assignees``
    fields are resolved by the storage layer on read and ignored on write.

    Optional fields are tri-state through ``model_fields_set``: a field never
    passed to the constructor is left untouched by ``update_issue``, a field
    passed as ``None`` is cleared, anything else is set.
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="GitHub issue ID, immutable primary key")
    number: int = Field(..., description="Issue number, unique per repository")
    title: str
    body: str = ""
    state: IssueState = "open"
    comments: int = Field(0, ge=0)
    locked: bool = False
    html_url: str = ""
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None
    user_id: Optional[int] = Field(None, description="Creator user ID")
    milestone_id: Optional[int] = None
    label_ids: List[int] = Field(default_factory=list)
    assignee_ids: List[int] = Field(default_factory=list)

    user: Optional[UserEntity] = None
    milestone: Optional[MilestoneEntity] = None
    labels: List[LabelEntity] = Field(default_factory=list)
    assignees: List[UserEntity] = Field(default_factory=list)


class RepositoryEntity(BaseModel):
    """
    Immutable domain model representing a GitHub Repository.
    Standalone: issues do not reference it.
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="GitHub repository ID")
    name: str = Field(..., description="Short name of the repository")
    full_name: str = Field(..., description="owner/name, unique")
    owner_login: str = Field(..., description="Login name of the repository owner")
    description: str = ""
    private: bool = False
    archived: bool = False
    disabled: bool = False
    html_url: str = ""
    default_branch: str = DEFAULT_BRANCH
    language: str = ""
    stargazers_count: int = Field(0, ge=0)
    forks_count: int = Field(0, ge=0)
    open_issues_count: int = Field(0, ge=0)
    created_at: datetime
    updated_at: datetime
    pushed_at: Optional[datetime] = None


class ListOptions(BaseModel):
    """Offset pagination. ``limit=0`` means no limit."""
    offset: int = Field(0, ge=0)
    limit: int = Field(0, ge=0)


class IssueListOptions(ListOptions):
    state: IssueStateFilter = "all"
    labels: Optional[List[str]] = Field(None, description="Match issues carrying any of these label names")


class RepositoryListOptions(ListOptions):
    owner_login: Optional[str] = None
    include_archived: bool = False
