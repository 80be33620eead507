from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

StepType = Literal[
    "form",
    "confirmation",
    "yes/no",
    "repeater",
    "repeater_summary",
    "repeater_summary_with_questions",
    "dead_end",
]
QuestionType = Literal[
    "string",
    "integer",
    "decimal",
    "boolean",
    "reference",
    "choice",
    "multiple_choice",
    "date",
    "datetime",
    "container",
    "multi_row_variable_set",
]


class _Trimmed(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)


class ResearchRequest(_Trimmed):
    process_type: str = Field(alias="processType", min_length=3, max_length=100)
    industry: str = Field(min_length=3, max_length=100)
    additional_requirements: str = Field(default="", alias="additionalRequirements", max_length=1000)

    def job_fields(self) -> dict[str, Any]:
        return {
            "processType": self.process_type,
            "industry": self.industry,
            "additionalRequirements": self.additional_requirements,
        }


class ProcessInfo(_Trimmed):
    name: str = Field(min_length=3, max_length=100)
    description: str = Field(default="", max_length=1000)
    table: str = Field(default="incident", min_length=1)


class Question(_Trimmed):
    name: str = Field(min_length=3, max_length=100)
    label: str = Field(min_length=3, max_length=100)
    type: QuestionType = "string"
    order: int = 100
    mandatory: bool = False
    help_text: str = Field(default="", max_length=500)
    reference: str = Field(default="", max_length=100)
    reference_qual: str = Field(default="", max_length=500)
    sub_type: str = Field(default="", max_length=100)
    value_field: str = Field(default="", max_length=100)
    default_value: str = Field(default="", max_length=200)


class Step(_Trimmed):
    name: str = Field(min_length=3, max_length=100)
    short_label: str = Field(default="", max_length=50)
    step_type: StepType = "form"
    display_label: str = Field(default="", max_length=100)
    short_description: str = Field(default="", max_length=200)
    footer_message: str = Field(default="", max_length=500)
    glyph: str = Field(default="", max_length=50)
    show_on_sidebar: bool = True
    show_on_confirmation: bool = True
    order: int = 100
    one_time_step: bool = False
    questions: list[Question] = Field(default_factory=list)


class Milestone(_Trimmed):
    name: str = Field(min_length=3, max_length=100)
    short_description: str = Field(default="", max_length=200)
    glyph: str = Field(default="", max_length=50)
    order: int = 100
    steps: list[Step] = Field(default_factory=list)


class Rule(_Trimmed):
    name: str = Field(min_length=3, max_length=100)
    type: Literal["process", "milestone", "step"]
    script: str = Field(default="", max_length=5000)
    message_simple: str = Field(default="", max_length=500)


class ImplementRequest(_Trimmed):
    process: ProcessInfo
    milestones: list[Milestone]
    rules: list[Rule] = Field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "processName": self.process.name,
            "processSummary": {
                "milestoneCount": len(self.milestones),
                "totalStepCount": sum(len(m.steps) for m in self.milestones),
                "totalQuestionCount": sum(len(s.questions) for m in self.milestones for s in m.steps),
            },
        }

    def job_fields(self) -> dict[str, Any]:
        return {"processDefinition": self.model_dump()}


class CallbackRequest(BaseModel):
    success: bool
    result: dict[str, Any] | None = None
    error: str | dict[str, Any] | None = None

    @model_validator(mode="after")
    def _outcome_matches_flag(self) -> "CallbackRequest":
        if self.success and self.result is None:
            raise ValueError("result is required when success is true")
        if not self.success and (self.error is None or self.error == ""):
            raise ValueError("error is required when success is false")
        return self


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage]
    model: str | None = None
    options: dict[str, Any] | None = None

    def message_dicts(self) -> list[dict[str, Any]]:
        return [m.model_dump() for m in self.messages]


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
