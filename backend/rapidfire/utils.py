import time
from typing import Iterable, List

from .models import Participant


def now_ts() -> float:
    return time.time()


def sort_standings(participants: Iterable[Participant]) -> List[Participant]:
    return sorted(participants, key=lambda p: (-p.score, p.participant_number))


def sort_roster(participants: Iterable[Participant]) -> List[Participant]:
    return sorted(participants, key=lambda p: p.participant_number)
