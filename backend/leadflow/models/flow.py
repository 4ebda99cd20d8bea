# /leadflow/models/flow.py

"""
Flow graph models: flows, nodes and edges as stored by the flow builder.

Node and trigger configurations are tagged unions keyed by ``node_type`` /
``trigger_type``. The tag is copied from the owning document into its config
before validation, so a stored config never has to repeat it.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from apscheduler.triggers.cron import CronTrigger
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


class TriggerType(str, Enum):
    NEW_LEAD = "new_lead"
    KEYWORD = "keyword"
    SCHEDULE = "schedule"
    STAGE_CHANGE = "stage_change"


class NodeType(str, Enum):
    START = "start"
    MESSAGE = "message"
    QUESTION = "question"
    CONDITION = "condition"
    ACTION = "action"
    DELAY = "delay"
    PAUSE = "pause"
    TRANSFER = "transfer"
    END = "end"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class ActionType(str, Enum):
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    MOVE_STAGE = "move_stage"
    WEBHOOK = "webhook"


class DelayUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


DELAY_UNIT_SECONDS = {
    DelayUnit.SECONDS: 1,
    DelayUnit.MINUTES: 60,
    DelayUnit.HOURS: 3600,
    DelayUnit.DAYS: 86400,
}


def _coerce_id(value: Any) -> Any:
    # ObjectId and uuid primary keys are both handled as plain strings
    return str(value) if value is not None else value


# ==================== Node configurations ====================

class _NodeConfigBase(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class StartConfig(_NodeConfigBase):
    node_type: Literal["start"] = "start"


class EndConfig(_NodeConfigBase):
    node_type: Literal["end"] = "end"


class MessageConfig(_NodeConfigBase):
    node_type: Literal["message"] = "message"
    message: str = ""
    buttons: List[str] = Field(default_factory=list)
    media_url: Optional[str] = None
    media_type: Optional[Literal["image", "video", "audio", "document"]] = None
    variable: Optional[str] = Field(default=None, validation_alias=AliasChoices("variable", "variable_name"))

    @field_validator("buttons", mode="before")
    @classmethod
    def normalize_buttons(cls, v):
        """The builder stores buttons either as labels or as {text|label|title} objects."""
        if v is None:
            return []
        labels = []
        for button in v:
            if isinstance(button, dict):
                button = button.get("text") or button.get("label") or button.get("title") or ""
            button = str(button).strip()
            if button:
                labels.append(button)
        return labels


class QuestionConfig(_NodeConfigBase):
    node_type: Literal["question"] = "question"
    question: str = Field(default="", validation_alias=AliasChoices("question", "message"))
    options: List[str] = Field(default_factory=list)
    variable: Optional[str] = Field(default=None, validation_alias=AliasChoices("variable", "variable_name"))

    @field_validator("options", mode="before")
    @classmethod
    def drop_blank_options(cls, v):
        if v is None:
            return []
        return [str(option).strip() for option in v if str(option).strip()]


class Predicate(BaseModel):
    field: str
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None


class RandomBranch(BaseModel):
    handle: str
    weight: float = Field(default=1.0, ge=0)


class ConditionConfig(_NodeConfigBase):
    node_type: Literal["condition"] = "condition"
    conditions: List[Predicate] = Field(default_factory=list)
    is_randomizer: bool = False
    branches: List[RandomBranch] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def fold_single_predicate(cls, data):
        """Older flows store one predicate inline as field/operator/value."""
        if isinstance(data, dict) and data.get("field") and not data.get("conditions"):
            data = dict(data)
            data["conditions"] = [{
                "field": data.pop("field"),
                "operator": data.pop("operator", ConditionOperator.EQUALS.value),
                "value": data.pop("value", None),
            }]
        return data

    @model_validator(mode="after")
    def check_branches(self):
        if self.is_randomizer and self.branches and sum(b.weight for b in self.branches) <= 0:
            raise ValueError("Randomizer branches need a positive total weight")
        return self


class ActionConfig(_NodeConfigBase):
    node_type: Literal["action"] = "action"
    action_type: ActionType
    action_value: Optional[str] = None
    url: Optional[str] = None

    @model_validator(mode="after")
    def check_target(self):
        if self.action_type == ActionType.WEBHOOK:
            if not self.url:
                raise ValueError("Webhook actions require a url")
        elif not self.action_value:
            raise ValueError(f"{self.action_type.value} actions require an action_value")
        return self


class DelayConfig(_NodeConfigBase):
    node_type: Literal["delay"] = "delay"
    delay_seconds: Optional[float] = Field(default=None, ge=0)
    delay_value: Optional[float] = Field(default=None, ge=0)
    delay_unit: DelayUnit = DelayUnit.SECONDS

    @property
    def seconds(self) -> float:
        if self.delay_seconds is not None:
            return self.delay_seconds
        if self.delay_value is not None:
            return self.delay_value * DELAY_UNIT_SECONDS[self.delay_unit]
        return 0.0


class PauseConfig(_NodeConfigBase):
    node_type: Literal["pause"] = "pause"
    variable: Optional[str] = Field(default=None, validation_alias=AliasChoices("variable", "variable_name"))


class TransferConfig(_NodeConfigBase):
    node_type: Literal["transfer"] = "transfer"
    message: Optional[str] = None


NodeConfig = Annotated[
    Union[
        StartConfig,
        MessageConfig,
        QuestionConfig,
        ConditionConfig,
        ActionConfig,
        DelayConfig,
        PauseConfig,
        TransferConfig,
        EndConfig,
    ],
    Field(discriminator="node_type"),
]


# ==================== Trigger configurations ====================

class _TriggerConfigBase(BaseModel):
    model_config = ConfigDict(extra="ignore")


class NewLeadTriggerConfig(_TriggerConfigBase):
    trigger_type: Literal["new_lead"] = "new_lead"
    funnel_id: Optional[str] = None


class KeywordTriggerConfig(_TriggerConfigBase):
    trigger_type: Literal["keyword"] = "keyword"
    keywords: List[str] = Field(default_factory=list)

    @field_validator("keywords", mode="before")
    @classmethod
    def normalize_keywords(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [str(k).strip().lower() for k in v if str(k).strip()]


class StageChangeTriggerConfig(_TriggerConfigBase):
    trigger_type: Literal["stage_change"] = "stage_change"
    funnel_id: Optional[str] = None
    stage_id: Optional[str] = None


class ScheduleAudience(BaseModel):
    tag: Optional[str] = None
    funnel_id: Optional[str] = None
    stage_id: Optional[str] = None


class ScheduleTriggerConfig(_TriggerConfigBase):
    trigger_type: Literal["schedule"] = "schedule"
    cron: str
    timezone: Optional[str] = None
    audience: ScheduleAudience = Field(default_factory=ScheduleAudience)

    @model_validator(mode="after")
    def check_cron(self):
        try:
            CronTrigger.from_crontab(self.cron, timezone=self.timezone or "UTC")
        except Exception as e:
            raise ValueError(f"Invalid schedule '{self.cron}' ({self.timezone or 'UTC'}): {e}")
        return self


TriggerConfig = Annotated[
    Union[
        NewLeadTriggerConfig,
        KeywordTriggerConfig,
        StageChangeTriggerConfig,
        ScheduleTriggerConfig,
    ],
    Field(discriminator="trigger_type"),
]


# ==================== Documents ====================

class Flow(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", use_enum_values=True)

    id: str = Field(alias="_id")
    company_id: str
    name: str = ""
    is_active: bool = False
    trigger_type: TriggerType
    trigger_config: TriggerConfig

    @field_validator("id", "company_id", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return _coerce_id(v)

    @model_validator(mode="before")
    @classmethod
    def tag_trigger_config(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        config = dict(data.get("trigger_config") or {})
        # Flows saved before trigger_config existed only carry a keyword list
        if not data.get("trigger_type") and data.get("trigger_keywords"):
            data["trigger_type"] = TriggerType.KEYWORD.value
        if data.get("trigger_keywords") and "keywords" not in config:
            config["keywords"] = data["trigger_keywords"]
        trigger_type = data.get("trigger_type")
        config["trigger_type"] = trigger_type.value if isinstance(trigger_type, TriggerType) else trigger_type
        data["trigger_config"] = config
        return data


class FlowNode(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", use_enum_values=True)

    id: str = Field(alias="_id")
    flow_id: str
    company_id: Optional[str] = None
    node_type: NodeType
    config: NodeConfig

    @field_validator("id", "flow_id", "company_id", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return _coerce_id(v)

    @model_validator(mode="before")
    @classmethod
    def tag_config(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        config = dict(data.get("config") or {})
        node_type = data.get("node_type")
        config["node_type"] = node_type.value if isinstance(node_type, NodeType) else node_type
        data["config"] = config
        return data


class FlowEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="_id")
    flow_id: str
    company_id: Optional[str] = None
    source_node_id: str
    target_node_id: str
    source_handle: Optional[str] = None

    @field_validator("id", "flow_id", "company_id", "source_node_id", "target_node_id", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return _coerce_id(v)

    @field_validator("source_handle", mode="before")
    @classmethod
    def blank_handle_is_default(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class FlowSummary(BaseModel):
    """Operator-facing flow row with execution counts per status."""
    id: str
    name: str
    is_active: bool
    trigger_type: str
    executions: Dict[str, int] = Field(default_factory=dict)
