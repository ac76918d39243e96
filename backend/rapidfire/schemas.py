from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .models import CamelModel, OptionLabel, Question


class ClientMessage(BaseModel):
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)


class JoinRapidFireIn(CamelModel):
    user_id: str = Field(min_length=1)
    first_name: str = ""
    last_name: str = ""


class SubmitAnswerIn(CamelModel):
    question_id: str
    answer: OptionLabel
    timestamp: Optional[float] = None

    @field_validator("answer", mode="before")
    @classmethod
    def normalise_answer(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class AdminUpsertQuestionsIn(BaseModel):
    round_number: Optional[int] = None
    questions: List[Question]


class RoundApprovalIn(CamelModel):
    user_id: str
    approved: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class RoundApprovalsIn(BaseModel):
    round_number: Optional[int] = None
    approvals: List[RoundApprovalIn]


class EventsOut(BaseModel):
    events: List[Dict[str, Any]]
    latest_seq: Optional[int]
