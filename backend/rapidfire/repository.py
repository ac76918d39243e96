from __future__ import annotations

import logging
from typing import Any, List, Sequence

from pydantic import ValidationError

from . import storage
from .db import db as default_db
from .errors import SourceUnavailable
from .models import ApprovedParticipant, Participant, Question, QuestionResult
from .utils import now_ts

logger = logging.getLogger(__name__)


def _approval_field(round_number: int) -> str:
    return f"round{round_number}_approved"


class RoundRepository:
    """Data access the rapid fire controller reads from and writes to."""

    def __init__(self, database: Any = None):
        self.db = database if database is not None else default_db

    async def load_questions(self, round_number: int) -> List[Question]:
        """Return the round's questions in their configured order."""

        try:
            docs = await self.db.questions.find({"round_number": round_number}).sort("position", 1).to_list()
        except Exception as exc:
            raise SourceUnavailable(f"Could not load questions for round {round_number}") from exc

        questions: List[Question] = []
        for doc in docs:
            try:
                questions.append(Question.model_validate(doc))
            except ValidationError:
                logger.warning("Skipping malformed question %s in round %s", doc.get("id"), round_number)
        return questions

    async def load_approved_participants(self, round_number: int) -> List[ApprovedParticipant]:
        """Return the users an admin approved for the round."""

        try:
            docs = await self.db.users.find({_approval_field(round_number): True}).to_list()
        except Exception as exc:
            raise SourceUnavailable(f"Could not load the roster for round {round_number}") from exc

        return [
            ApprovedParticipant(
                id=doc["id"],
                name=f"{doc.get('first_name', '')} {doc.get('last_name', '')}".strip(),
            )
            for doc in docs
        ]

    async def persist_question_result(self, round_number: int, result: QuestionResult) -> None:
        document = {"round_number": round_number, "recorded_at": now_ts(), **result.wire()}
        await self.db.rapid_fire_results.insert_one(document)
        if storage.is_configured():
            await storage.archive_document(round_number, "questions", result.question_id, document)

    async def persist_final_standings(self, round_number: int, standings: Sequence[Participant]) -> None:
        recorded_at = now_ts()
        document = {
            "round_number": round_number,
            "recorded_at": recorded_at,
            "standings": [p.wire() for p in standings],
        }
        await self.db.rapid_fire_standings.insert_one(document)
        if storage.is_configured():
            await storage.archive_document(round_number, "standings", str(int(recorded_at * 1000)), document)

    # Ingress used by the admin surface to feed the collaborators above.

    async def replace_questions(self, round_number: int, questions: Sequence[Question]) -> None:
        await self.db.questions.delete_many({"round_number": round_number})
        await self.db.questions.insert_many(
            [
                {**q.model_dump(), "round_number": round_number, "position": position}
                for position, q in enumerate(questions)
            ]
        )

    async def set_round_approval(
        self,
        round_number: int,
        user_id: str,
        approved: bool,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> None:
        fields: dict[str, Any] = {_approval_field(round_number): approved}
        if first_name is not None:
            fields["first_name"] = first_name
        if last_name is not None:
            fields["last_name"] = last_name
        await self.db.users.update_one({"id": user_id}, {"$set": fields}, upsert=True)


repository = RoundRepository()
