from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

OptionLabel = Literal["A", "B", "C", "D"]


class CamelModel(BaseModel):
    """Models that travel over the real-time channel use camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict:
        return self.model_dump(by_alias=True)


class Phase(str, Enum):
    IDLE = "waiting"
    IN_PROGRESS = "active"
    COMPLETED = "finished"


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    question_text: str
    option_a: str
    option_b: str
    option_c: str
    option_d: str
    correct_answer: OptionLabel
    points: int = Field(gt=0)

    def public(self) -> dict:
        """Payload safe to broadcast while the question is live."""
        return self.model_dump(exclude={"correct_answer"})


class ApprovedParticipant(BaseModel):
    id: str
    name: str


class Participant(CamelModel):
    user_id: str
    first_name: str
    last_name: str
    score: int = 0
    is_online: bool = True
    participant_number: int

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Submission(BaseModel):
    participant_id: str
    question_id: str
    answer: str
    client_timestamp: Optional[float] = None
    receipt_order: int


class ResultEntry(CamelModel):
    user_id: str
    participant_name: str
    answer: str
    timestamp: Optional[float] = None
    receipt_order: int


class QuestionResult(CamelModel):
    question_id: str
    winner_id: Optional[str] = None
    winner_name: Optional[str] = None
    correct_answer: OptionLabel
    participants: List[ResultEntry] = Field(default_factory=list)


class RoundStatus(CamelModel):
    phase: Phase
    participant_count: int
    question_number: int
    total_questions: int


# States: waiting -> active -> finished -> waiting
class RoundState(BaseModel):
    """Everything the state machine owns for one round instance."""

    phase: Phase = Phase.IDLE
    participants: Dict[str, Participant] = Field(default_factory=dict)
    approved: List[ApprovedParticipant] = Field(default_factory=list)
    questions: List[Question] = Field(default_factory=list)
    question_index: int = -1
    current_question: Optional[Question] = None
    locked: bool = False
    lock_watermark: int = 0
    resolved: bool = False
    winner_id: Optional[str] = None
    ledger: Dict[str, Submission] = Field(default_factory=dict)
    time_remaining: int = 0
    next_join_order: int = 1
