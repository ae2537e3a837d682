from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Union, Literal, ClassVar, Annotated
from datetime import datetime, timezone
from enum import Enum

from ulid import ULID

from culler.api.schemas.media import MediaKind, ManagerKind


class FieldType(str, Enum):
    """Value type of a condition field"""
    boolean = "boolean"
    number = "number"
    text = "text"


class ConditionField(str, Enum):
    """Media attributes a condition may test"""
    watched = "watched"
    monitored = "monitored"
    has_request = "has_request"
    on_watchlist = "on_watchlist"
    view_count = "view_count"
    days_since_watched = "days_since_watched"
    days_since_added = "days_since_added"
    days_since_release = "days_since_release"
    days_since_activity = "days_since_activity"
    year = "year"
    rating = "rating"
    file_size_gb = "file_size_gb"
    title = "title"
    genre = "genre"
    content_rating = "content_rating"


class ConditionOperator(str, Enum):
    """Rule condition operators"""
    equals = "equals"
    not_equals = "not_equals"
    greater_than = "greater_than"
    less_than = "less_than"
    greater_than_or_equals = "greater_than_or_equals"
    less_than_or_equals = "less_than_or_equals"
    contains = "contains"
    not_contains = "not_contains"


class Join(str, Enum):
    """How a condition combines with the next one"""
    AND = "AND"
    OR = "OR"


FIELD_TYPES = {
    ConditionField.watched: FieldType.boolean,
    ConditionField.monitored: FieldType.boolean,
    ConditionField.has_request: FieldType.boolean,
    ConditionField.on_watchlist: FieldType.boolean,
    ConditionField.view_count: FieldType.number,
    ConditionField.days_since_watched: FieldType.number,
    ConditionField.days_since_added: FieldType.number,
    ConditionField.days_since_release: FieldType.number,
    ConditionField.days_since_activity: FieldType.number,
    ConditionField.year: FieldType.number,
    ConditionField.rating: FieldType.number,
    ConditionField.file_size_gb: FieldType.number,
    ConditionField.title: FieldType.text,
    ConditionField.genre: FieldType.text,
    ConditionField.content_rating: FieldType.text,
}

OPERATORS_BY_TYPE = {
    FieldType.boolean: {ConditionOperator.equals},
    FieldType.number: {
        ConditionOperator.equals,
        ConditionOperator.not_equals,
        ConditionOperator.greater_than,
        ConditionOperator.less_than,
        ConditionOperator.greater_than_or_equals,
        ConditionOperator.less_than_or_equals,
    },
    FieldType.text: {
        ConditionOperator.equals,
        ConditionOperator.not_equals,
        ConditionOperator.contains,
        ConditionOperator.not_contains,
    },
}


class Condition(BaseModel):
    """A typed predicate on one media attribute"""
    field: ConditionField = Field(..., description="Field to check")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    value: Union[bool, float, str] = Field(..., description="Value to compare against")
    join: Join = Field(Join.AND, description="How this combines with the next condition")

    @model_validator(mode="after")
    def check_operator_and_value(self):
        field_type = FIELD_TYPES[self.field]
        if self.operator not in OPERATORS_BY_TYPE[field_type]:
            raise ValueError(
                f"Operator '{self.operator.value}' is not valid for {field_type.value} field '{self.field.value}'"
            )
        if field_type == FieldType.boolean and not isinstance(self.value, bool):
            raise ValueError(f"Field '{self.field.value}' needs a boolean value")
        if field_type == FieldType.number and (
            isinstance(self.value, bool) or not isinstance(self.value, (int, float))
        ):
            try:
                self.value = float(self.value)
            except (TypeError, ValueError):
                raise ValueError(f"Field '{self.field.value}' needs a numeric value")
        if field_type == FieldType.text and not isinstance(self.value, str):
            raise ValueError(f"Field '{self.field.value}' needs a text value")
        return self


class ActionPhase(str, Enum):
    """When an action runs relative to the deletion buffer"""
    queue = "queue"
    immediate = "immediate"
    deferred = "deferred"


class ActionType(str, Enum):
    add_to_collection = "add_to_collection"
    delete_from_library = "delete_from_library"
    delete_from_manager_tv = "delete_from_manager_tv"
    delete_from_manager_movie = "delete_from_manager_movie"
    unmonitor_tv = "unmonitor_tv"
    unmonitor_movie = "unmonitor_movie"
    clear_request = "clear_request"
    add_tag = "add_tag"
    delete_files = "delete_files"


class AddToCollectionAction(BaseModel):
    """Stage the item in the deletion queue and the leaving-soon collection"""
    phase: ClassVar[ActionPhase] = ActionPhase.queue
    type: Literal["add_to_collection"] = "add_to_collection"
    collection_name: Optional[str] = Field(None, description="Overrides the configured collection")


class DeleteFromLibraryAction(BaseModel):
    phase: ClassVar[ActionPhase] = ActionPhase.deferred
    type: Literal["delete_from_library"] = "delete_from_library"


class DeleteFromManagerAction(BaseModel):
    """Remove the title from a download manager"""
    phase: ClassVar[ActionPhase] = ActionPhase.deferred
    type: Literal["delete_from_manager_tv", "delete_from_manager_movie"]
    add_exclusion: bool = Field(True, description="Block automatic re-import")

    @property
    def manager(self) -> ManagerKind:
        return ManagerKind.tv if self.type.endswith("_tv") else ManagerKind.movie


class UnmonitorAction(BaseModel):
    phase: ClassVar[ActionPhase] = ActionPhase.immediate
    type: Literal["unmonitor_tv", "unmonitor_movie"]

    @property
    def manager(self) -> ManagerKind:
        return ManagerKind.tv if self.type.endswith("_tv") else ManagerKind.movie


class ClearRequestAction(BaseModel):
    phase: ClassVar[ActionPhase] = ActionPhase.immediate
    type: Literal["clear_request"] = "clear_request"


class AddTagAction(BaseModel):
    phase: ClassVar[ActionPhase] = ActionPhase.immediate
    type: Literal["add_tag"] = "add_tag"
    tag: str = Field(..., min_length=1)


class DeleteFilesAction(BaseModel):
    """Delete media files; also makes manager deletes remove files"""
    phase: ClassVar[ActionPhase] = ActionPhase.deferred
    type: Literal["delete_files"] = "delete_files"


Action = Annotated[
    Union[
        AddToCollectionAction,
        DeleteFromLibraryAction,
        DeleteFromManagerAction,
        UnmonitorAction,
        ClearRequestAction,
        AddTagAction,
        DeleteFilesAction,
    ],
    Field(discriminator="type"),
]


class RunSummary(BaseModel):
    """Outcome of the latest run of a rule"""
    ran_at: datetime
    match_count: int = 0
    dry_run: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Rule(BaseModel):
    """A condition expression plus the actions taken on matches"""
    id: str = Field(default_factory=lambda: str(ULID()))
    name: str = Field(..., min_length=1, description="Rule name")
    target_kind: MediaKind = Field(..., description="Kind of media the rule matches")
    library_ids: List[str] = Field(default_factory=list, description="Library scope, empty means all")
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    buffer_days: Optional[int] = Field(None, ge=0, le=365, description="Overrides the default buffer")
    priority: int = Field(0, description="Higher runs first")
    active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    last_run: Optional[RunSummary] = None

    @field_validator("actions")
    @classmethod
    def check_single_collection_action(cls, v):
        if sum(1 for a in v if a.type == ActionType.add_to_collection.value) > 1:
            raise ValueError("A rule may contain at most one add_to_collection action")
        return v

    @property
    def deletes_files(self) -> bool:
        return any(a.type == ActionType.delete_files.value for a in self.actions)

    def actions_in(self, phase: ActionPhase) -> list:
        return [a for a in self.actions if a.phase == phase]
