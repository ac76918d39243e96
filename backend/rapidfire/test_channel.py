from __future__ import annotations

import json
from unittest import IsolatedAsyncioTestCase

from .channel import handle_message
from .connections import ConnectionRegistry
from .db import InMemoryDatabase, Settings
from .events import EventStore
from .game import RapidFireController
from .repository import RoundRepository
from .test_game import _FakeConnection, _question


def _frame(event: str, data=None) -> str:
    return json.dumps({"event": event, "data": data or {}})


class ChannelMessageTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        database = InMemoryDatabase()
        self.repository = RoundRepository(database)
        await self.repository.replace_questions(3, [_question("q1", correct="C")])
        await self.repository.set_round_approval(3, "alice", True, first_name="Alice", last_name="Smith")
        self.controller = RapidFireController(
            repository=self.repository,
            registry=ConnectionRegistry(),
            events=EventStore(database),
            config=Settings(QUESTION_SECONDS=100, LOCK_GRACE_SECONDS=5),
        )
        self.connection = _FakeConnection()
        self.connection_id = self.controller.registry.add(self.connection)

    async def asyncTearDown(self) -> None:
        await self.controller.shutdown()

    async def test_malformed_frames_get_an_error(self):
        await handle_message(self.controller, self.connection_id, "not json")
        await handle_message(self.controller, self.connection_id, _frame("joinRapidFire", {"firstName": "A"}))
        await self.controller.registry.drain()

        errors = self.connection.events("error")
        self.assertEqual(len(errors), 2)
        self.assertTrue(all(e["message"].startswith("Malformed message") for e in errors))

    async def test_unknown_events_are_ignored(self):
        await handle_message(self.controller, self.connection_id, _frame("dance", {"style": "tango"}))
        await self.controller.registry.drain()

        self.assertEqual(self.connection.messages, [])

    async def test_join_uses_stored_name_when_none_given(self):
        await handle_message(self.controller, self.connection_id, _frame("joinRapidFire", {"userId": "alice"}))
        await self.controller.registry.drain()

        participant = self.controller.state.participants["alice"]
        self.assertEqual(participant.display_name, "Alice Smith")
        self.assertEqual(self.connection.events("gameState")[0]["participants"][0]["userId"], "alice")

    async def test_submission_requires_a_joined_connection(self):
        await self.controller.start_round()

        await handle_message(
            self.controller, self.connection_id, _frame("submitAnswer", {"questionId": "q1", "answer": "C"})
        )

        self.assertEqual(self.controller.state.ledger, {})

    async def test_submission_is_normalised_and_routed(self):
        await handle_message(self.controller, self.connection_id, _frame("joinRapidFire", {"userId": "alice"}))
        await self.controller.start_round()

        await handle_message(
            self.controller,
            self.connection_id,
            _frame("submitAnswer", {"questionId": "q1", "answer": " c ", "timestamp": 1234.5}),
        )
        await self.controller.registry.drain()

        self.assertEqual(self.controller.state.winner_id, "alice")
        self.assertEqual(self.controller.state.ledger["alice"].client_timestamp, 1234.5)
        self.assertEqual(self.connection.events("questionLocked")[0]["correctAnswer"], "C")

    async def test_invalid_option_is_rejected(self):
        await handle_message(self.controller, self.connection_id, _frame("joinRapidFire", {"userId": "alice"}))
        await self.controller.start_round()

        await handle_message(
            self.controller, self.connection_id, _frame("submitAnswer", {"questionId": "q1", "answer": "E"})
        )
        await self.controller.registry.drain()

        self.assertEqual(self.controller.state.ledger, {})
        self.assertEqual(len(self.connection.events("error")), 1)
