from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set

from .connections import ConnectionRegistry
from .db import Settings, settings as default_settings
from .errors import NoApprovedParticipants, NoQuestionsConfigured, RoundNotIdle, SourceUnavailable
from .events import EventStore, event_store
from .models import (
    Participant,
    Phase,
    QuestionResult,
    ResultEntry,
    RoundState,
    RoundStatus,
    Submission,
)
from .repository import RoundRepository, repository as default_repository
from .utils import sort_roster, sort_standings

logger = logging.getLogger(__name__)

NOT_APPROVED_MESSAGE = "You are not approved for the rapid fire round"


class RapidFireController:
    """Single owner of the rapid fire round state.

    Every mutation (operator commands, client events, timer callbacks) runs
    under ``self._lock``, so exactly one submission can win a question.
    Methods prefixed with ``_`` expect the lock to be held already.

    Timer callbacks capture the generation token and question index they were
    scheduled for and do nothing once either has moved on.
    """

    def __init__(
        self,
        repository: Optional[RoundRepository] = None,
        registry: Optional[ConnectionRegistry] = None,
        events: Optional[EventStore] = None,
        config: Optional[Settings] = None,
    ):
        self.repository = repository or default_repository
        self.config = config or default_settings
        if registry is None:
            registry = ConnectionRegistry(send_timeout=self.config.SEND_TIMEOUT_SECONDS)
        self.registry = registry
        self.events = events or event_store
        self.state = RoundState()
        self._lock = asyncio.Lock()
        self._generation = 0
        self._receipt_seq = 0
        self._countdown: Optional[asyncio.Task] = None
        self._timers: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()

    @property
    def stream(self) -> str:
        return f"round{self.config.RAPID_FIRE_ROUND}"

    @property
    def generation(self) -> int:
        return self._generation

    # ------------------------------------------------------------------ #
    # Operator commands
    # ------------------------------------------------------------------ #

    def get_status(self) -> RoundStatus:
        s = self.state
        return RoundStatus(
            phase=s.phase,
            participant_count=len(s.participants),
            question_number=self._question_number(),
            total_questions=len(s.questions),
        )

    async def start_round(self) -> RoundStatus:
        async with self._lock:
            s = self.state
            if s.phase != Phase.IDLE:
                raise RoundNotIdle()

            questions = await self._load(self.repository.load_questions, "questions") or []
            if not questions:
                raise NoQuestionsConfigured()
            approved = await self._load(self.repository.load_approved_participants, "roster") or []
            if not approved:
                raise NoApprovedParticipants()

            self._generation += 1
            s.questions = questions
            s.approved = approved
            s.phase = Phase.IN_PROGRESS
            s.question_index = -1
            self._prune_unapproved()
            for participant in s.participants.values():
                participant.score = 0

            logger.info(
                "Starting rapid fire round (generation %s) with %s questions and %s approved participants",
                self._generation,
                len(questions),
                len(approved),
            )
            try:
                await self.events.reset(self.stream)
            except Exception:
                logger.exception("Failed to reset the rapid fire event log")
            await self._publish_participants()
            await self._advance()
            return self.get_status()

    async def stop_round(self) -> bool:
        """Operator stop toggle: abandon the running round and return to idle."""
        async with self._lock:
            if self.state.phase == Phase.IDLE:
                return False
            logger.info("Rapid fire round stopped by operator")
            await self._publish("gameReset", {"reason": "stopped"})
            await self._reset()
            return True

    async def shutdown(self) -> None:
        """Cancel pending timers, wait for in-flight persistence and flush outbound frames."""
        async with self._lock:
            self._generation += 1
            self._cancel_timers()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.registry.drain(timeout=self.config.SEND_TIMEOUT_SECONDS)
        await self.registry.close()

    # ------------------------------------------------------------------ #
    # Client events
    # ------------------------------------------------------------------ #

    async def join(self, connection_id: str, user_id: str, first_name: str, last_name: str) -> bool:
        async with self._lock:
            s = self.state
            if s.phase == Phase.IDLE:
                roster = await self._load(self.repository.load_approved_participants, "roster")
                if roster is not None:
                    s.approved = roster

            approved = next((a for a in s.approved if a.id == user_id), None)
            if approved is None:
                logger.info("Rejected rapid fire join from %s: not approved", user_id)
                self.registry.send(connection_id, "error", {"message": NOT_APPROVED_MESSAGE})
                return False

            participant = s.participants.get(user_id)
            if participant is None:
                if not (first_name or last_name):
                    first_name, _, last_name = approved.name.partition(" ")
                participant = Participant(
                    user_id=user_id,
                    first_name=first_name,
                    last_name=last_name,
                    participant_number=s.next_join_order,
                )
                s.next_join_order += 1
                s.participants[user_id] = participant
                logger.info("Participant %s joined as #%s", user_id, participant.participant_number)
            participant.is_online = True
            previous = self.registry.participant_for(connection_id)
            self.registry.attach(connection_id, user_id)
            if previous is not None and previous != user_id:
                self._mark_offline_if_gone(previous)

            self.registry.send(connection_id, "gameState", self._snapshot())
            if s.current_question is not None and not s.locked:
                self.registry.send(connection_id, "newQuestion", self._question_payload())
                self.registry.send(connection_id, "timeUpdate", s.time_remaining)
            await self._publish_participants(exclude=connection_id)
            return True

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            user_id = self.registry.remove(connection_id)
            if user_id is not None and self._mark_offline_if_gone(user_id):
                await self._publish_participants()

    async def submit_answer(
        self,
        participant_id: str,
        question_id: str,
        answer: str,
        client_timestamp: Optional[float] = None,
    ) -> bool:
        # Receipt order is taken on arrival, before queueing for the lock.
        self._receipt_seq += 1
        receipt = self._receipt_seq
        async with self._lock:
            return await self._record_submission(participant_id, question_id, answer, client_timestamp, receipt)

    # ------------------------------------------------------------------ #
    # State transitions (lock held)
    # ------------------------------------------------------------------ #

    async def _record_submission(
        self,
        participant_id: str,
        question_id: str,
        answer: str,
        client_timestamp: Optional[float],
        receipt: int,
    ) -> bool:
        s = self.state
        question = s.current_question
        if s.phase != Phase.IN_PROGRESS or question is None or question.id != question_id:
            return self._drop(participant_id, question_id, "not the live question")
        if s.resolved or (s.locked and receipt > s.lock_watermark):
            return self._drop(participant_id, question_id, "question locked")
        if participant_id not in s.participants:
            return self._drop(participant_id, question_id, "unknown participant")
        if participant_id in s.ledger:
            return self._drop(participant_id, question_id, "already answered")

        s.ledger[participant_id] = Submission(
            participant_id=participant_id,
            question_id=question_id,
            answer=answer,
            client_timestamp=client_timestamp,
            receipt_order=receipt,
        )

        if answer != question.correct_answer or s.winner_id is not None:
            return True

        winner = s.participants[participant_id]
        s.winner_id = participant_id
        s.locked = True
        s.lock_watermark = self._receipt_seq
        self._cancel_countdown()
        winner.score += question.points
        logger.info(
            "Question %s won by %s (receipt %s, +%s points)",
            question.id,
            participant_id,
            receipt,
            question.points,
        )

        self._schedule(self.config.LOCK_GRACE_SECONDS, self._resolve)
        await self._publish(
            "questionLocked",
            {
                "winnerId": winner.user_id,
                "winnerName": winner.display_name,
                "correctAnswer": question.correct_answer,
            },
        )
        await self._publish_participants()
        return True

    async def _advance(self) -> None:
        s = self.state
        s.question_index += 1
        if s.question_index >= len(s.questions):
            await self._complete()
            return

        question = s.questions[s.question_index]
        s.current_question = question
        s.locked = False
        s.lock_watermark = 0
        s.resolved = False
        s.winner_id = None
        s.ledger = {}
        s.time_remaining = self.config.QUESTION_SECONDS
        self._receipt_seq = 0

        logger.info("Question %s/%s live: %s", s.question_index + 1, len(s.questions), question.id)
        await self._publish("newQuestion", self._question_payload())
        await self._publish("timeUpdate", s.time_remaining, record=False)
        self._start_countdown()

    async def _resolve(self) -> None:
        s = self.state
        question = s.current_question
        if question is None or s.resolved:
            return
        s.locked = True
        s.resolved = True
        self._cancel_countdown()

        winner = s.participants.get(s.winner_id) if s.winner_id else None
        result = QuestionResult(
            question_id=question.id,
            winner_id=s.winner_id,
            winner_name=winner.display_name if winner else None,
            correct_answer=question.correct_answer,
            participants=[
                ResultEntry(
                    user_id=sub.participant_id,
                    participant_name=self._name_of(sub.participant_id),
                    answer=sub.answer,
                    timestamp=sub.client_timestamp,
                    receipt_order=sub.receipt_order,
                )
                for sub in sorted(s.ledger.values(), key=lambda sub: sub.receipt_order)
            ],
        )
        logger.info("Question %s resolved (winner: %s)", question.id, s.winner_id or "none")

        self._persist(self.repository.persist_question_result, result, "question result")
        await self._publish("questionResult", result.wire())
        await self._publish_participants()
        self._schedule(self.config.RESULT_DISPLAY_SECONDS, self._advance)

    async def _complete(self) -> None:
        s = self.state
        s.phase = Phase.COMPLETED
        s.current_question = None
        s.locked = False
        s.ledger = {}
        s.time_remaining = 0
        self._cancel_timers()

        standings = sort_standings(s.participants.values())
        logger.info("Rapid fire round finished; leader: %s", standings[0].user_id if standings else "none")
        await self._publish("gameFinished", [p.wire() for p in standings])
        self._persist(self.repository.persist_final_standings, standings, "final standings")
        self._schedule(self.config.COOLDOWN_SECONDS, self._cooldown_reset)

    async def _cooldown_reset(self) -> None:
        logger.info("Rapid fire cooldown elapsed; back to waiting")
        await self._reset()

    async def _reset(self) -> None:
        self._generation += 1
        self._cancel_timers()
        self.state = RoundState()
        self._receipt_seq = 0
        self.registry.clear_identities()
        await self._publish_participants()

    # ------------------------------------------------------------------ #
    # Timers
    # ------------------------------------------------------------------ #

    def _start_countdown(self) -> None:
        generation, index = self._generation, self.state.question_index

        async def countdown():
            while True:
                await asyncio.sleep(self.config.TICK_SECONDS)
                async with self._lock:
                    s = self.state
                    if generation != self._generation or index != s.question_index or s.locked:
                        return
                    s.time_remaining = max(0, s.time_remaining - 1)
                    await self._publish("timeUpdate", s.time_remaining, record=False)
                    if s.time_remaining == 0:
                        self._countdown = None
                        logger.info("Question %s timed out", s.current_question.id)
                        await self._resolve()
                        return

        self._countdown = self._spawn_timer(countdown())

    def _schedule(self, delay: float, callback: Callable[[], Awaitable[None]]) -> asyncio.Task:
        generation, index = self._generation, self.state.question_index

        async def fire():
            await asyncio.sleep(delay)
            async with self._lock:
                if generation != self._generation or index != self.state.question_index:
                    return
                await callback()

        return self._spawn_timer(fire())

    def _spawn_timer(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.create_task(self._contain(coro))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return task

    async def _contain(self, coro: Awaitable[None]) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Rapid fire timer callback failed")

    def _cancel_countdown(self) -> None:
        task, self._countdown = self._countdown, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for task in list(self._timers):
            if task is not current:
                task.cancel()
        self._countdown = None

    def _persist(self, write: Callable[[int, Any], Awaitable[None]], payload: Any, what: str) -> None:
        round_number = self.config.RAPID_FIRE_ROUND

        async def run():
            try:
                await write(round_number, payload)
            except Exception:
                logger.exception("Failed to persist rapid fire %s", what)

        task = asyncio.create_task(run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    async def _load(self, loader: Callable[[int], Awaitable[List[Any]]], what: str) -> Optional[List[Any]]:
        try:
            return await loader(self.config.RAPID_FIRE_ROUND)
        except SourceUnavailable:
            logger.warning("Rapid fire %s unavailable", what, exc_info=True)
            return None

    def _prune_unapproved(self) -> None:
        s = self.state
        approved_ids = {a.id for a in s.approved}
        for user_id in [uid for uid in s.participants if uid not in approved_ids]:
            del s.participants[user_id]
            for connection_id in self.registry.detach(user_id):
                self.registry.send(connection_id, "error", {"message": NOT_APPROVED_MESSAGE})
            logger.info("Removed %s from the rapid fire round: approval revoked", user_id)

    def _mark_offline_if_gone(self, user_id: str) -> bool:
        """Flag a participant offline once no connection speaks for them."""
        participant = self.state.participants.get(user_id)
        if participant is None or self.registry.is_connected(user_id):
            return False
        participant.is_online = False
        logger.info("Participant %s went offline", user_id)
        return True

    def _drop(self, participant_id: str, question_id: str, reason: str) -> bool:
        logger.debug("Dropped submission from %s for %s: %s", participant_id, question_id, reason)
        return False

    def _question_number(self) -> int:
        s = self.state
        if s.question_index < 0:
            return 0
        return min(s.question_index + 1, len(s.questions))

    def _name_of(self, participant_id: str) -> str:
        participant = self.state.participants.get(participant_id)
        return participant.display_name if participant else participant_id

    def _question_payload(self) -> dict:
        s = self.state
        return {
            **s.current_question.public(),
            "questionNumber": self._question_number(),
            "totalQuestions": len(s.questions),
        }

    def _snapshot(self) -> dict:
        s = self.state
        return {
            "status": s.phase.value,
            "participants": [p.wire() for p in sort_roster(s.participants.values())],
            "questionNumber": self._question_number(),
            "totalQuestions": len(s.questions),
            "approvedParticipants": [a.model_dump() for a in s.approved],
            "timeRemaining": s.time_remaining,
        }

    async def _publish(self, event: str, data: Any, exclude: Optional[str] = None, record: bool = True) -> None:
        self.registry.broadcast(event, data, exclude=exclude)
        if not record:
            return
        try:
            await self.events.append(self.stream, event, data)
        except Exception:
            logger.exception("Failed to record rapid fire %s event", event)

    async def _publish_participants(self, exclude: Optional[str] = None) -> None:
        participants = [p.wire() for p in sort_roster(self.state.participants.values())]
        await self._publish("participantsUpdate", participants, exclude=exclude)


controller = RapidFireController()
