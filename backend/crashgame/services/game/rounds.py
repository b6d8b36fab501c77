"""Round data and the three-phase round state machine.

BETTING_OPEN -> ACTIVE -> CRASHED -> BETTING_OPEN -> ...

Each cycle gets a fresh ``Round`` object that owns its bets and cashouts, so
per-round tables are discarded wholesale when the next betting window opens.
The machine is not thread-safe; RoundManager serializes every call.
"""
import itertools
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, NamedTuple

from . import events
from .errors import StateError
from .fairness import CrashPointGenerator


class Phase(str, Enum):
    BETTING_OPEN = 'BETTING_OPEN'
    ACTIVE = 'ACTIVE'
    CRASHED = 'CRASHED'


class Bet(NamedTuple):
    player_id: str
    usd_amount: float
    crypto_type: str
    crypto_amount: float
    price_at_time: float

    def to_dict(self):
        return {
            'usdAmount': self.usd_amount,
            'cryptoAmount': self.crypto_amount,
            'cryptoType': self.crypto_type,
            'priceAtTime': self.price_at_time,
        }


class Cashout(NamedTuple):
    player_id: str
    crypto_type: str
    multiplier: float
    payout: float
    usd_payout: float
    price_at_cashout: float

    def to_dict(self):
        return {
            'multiplier': self.multiplier,
            'payout': self.payout,
            'usdPayout': self.usd_payout,
            'cryptoType': self.crypto_type,
        }


def compute_multiplier(elapsed_seconds: float, growth_rate: float) -> float:
    """Linear growth from 1.0x, recomputed from elapsed time on every call."""
    return 1 + max(0.0, elapsed_seconds) * growth_rate


class Round:
    def __init__(self, round_id: str, opened_at: datetime):
        self.round_id = round_id
        self.phase = Phase.BETTING_OPEN
        self.opened_at = opened_at
        self.start_time: Optional[float] = None  # monotonic clock reading at ACTIVE
        self.started_at: Optional[datetime] = None
        self.crashed_at: Optional[datetime] = None
        self.crash_point: Optional[float] = None
        self.seed: Optional[bytes] = None
        self.seed_hash: Optional[bytes] = None
        self.multiplier = 1.0  # last broadcast value
        self.bets: Dict[str, Bet] = {}
        self.cashouts: Dict[str, Cashout] = {}
        # Player ids with a bet or cashout whose wallet write is still in flight
        self.pending: Set[str] = set()

    def to_state(self) -> dict:
        crashed = self.phase is Phase.CRASHED
        return {
            'phase': self.phase.value,
            'roundId': self.round_id,
            'multiplier': self.multiplier,
            'crashPoint': self.crash_point if crashed else None,
            'playerCount': len(self.bets),
            'cashedOutCount': len(self.cashouts),
        }

    def summary(self) -> dict:
        """Participant outcomes for the round archive."""
        participants = []
        for player_id, bet in self.bets.items():
            cashout = self.cashouts.get(player_id)
            participants.append({
                'player_id': player_id,
                'usd_amount': bet.usd_amount,
                'crypto_type': bet.crypto_type,
                'crypto_amount': bet.crypto_amount,
                'price_at_time': bet.price_at_time,
                'cashed_out': cashout is not None,
                'multiplier': cashout.multiplier if cashout else None,
                'payout': cashout.payout if cashout else 0.0,
                'usd_payout': cashout.usd_payout if cashout else 0.0,
            })
        return {
            'round_id': self.round_id,
            'crash_point': self.crash_point,
            'seed': self.seed.hex() if self.seed else None,
            'seed_hash': self.seed_hash.hex() if self.seed_hash else None,
            'opened_at': self.opened_at,
            'started_at': self.started_at,
            'crashed_at': self.crashed_at,
            'participants': participants,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoundStateMachine:
    def __init__(
        self,
        generator: CrashPointGenerator,
        growth_rate: float = 0.1,
        betting_duration: float = 10.0,
        display_duration: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.generator = generator
        self.growth_rate = growth_rate
        self.betting_duration = betting_duration
        self.display_duration = display_duration
        self.clock = clock
        self.now = now
        self._sequence = itertools.count(1)
        self.round = self._new_round()

    def _new_round(self) -> Round:
        opened_at = self.now()
        round_id = f"round_{int(opened_at.timestamp() * 1000)}_{next(self._sequence)}"
        return Round(round_id, opened_at)

    def _require(self, phase: Phase) -> Round:
        if self.round.phase is not phase:
            raise StateError(
                f"Cannot leave {self.round.phase.value}: round {self.round.round_id} is not {phase.value}"
            )
        return self.round

    def betting_opened(self) -> List[events.GameEvent]:
        """Announce the betting window of the current round."""
        return [events.betting_open(self.round, self.betting_duration)]

    def activate(self) -> List[events.GameEvent]:
        r = self._require(Phase.BETTING_OPEN)
        roll = self.generator.generate()
        r.crash_point = roll.crash_point
        r.seed = roll.seed
        r.seed_hash = roll.seed_hash
        r.cashouts = {}
        r.multiplier = 1.0
        r.start_time = self.clock()
        r.started_at = self.now()
        r.phase = Phase.ACTIVE
        return [events.round_start(r)]

    def live_multiplier(self) -> float:
        r = self.round
        if r.phase is Phase.BETTING_OPEN:
            return 1.0
        if r.phase is Phase.CRASHED:
            return r.crash_point
        return compute_multiplier(self.clock() - r.start_time, self.growth_rate)

    def crash_due(self) -> bool:
        return self.round.phase is Phase.ACTIVE and self.live_multiplier() >= self.round.crash_point

    def tick(self) -> List[events.GameEvent]:
        r = self.round
        if r.phase is not Phase.ACTIVE:
            return []
        multiplier = self.live_multiplier()
        if multiplier >= r.crash_point:
            return self.crash()
        r.multiplier = multiplier
        return [events.multiplier_update(r)]

    def crash(self) -> List[events.GameEvent]:
        r = self._require(Phase.ACTIVE)
        r.phase = Phase.CRASHED
        r.multiplier = r.crash_point
        r.crashed_at = self.now()
        return [events.round_crash(r), events.crash_display(r, self.display_duration)]

    def reset(self):
        """Close out a crashed round and open the next betting window.

        Returns the finished round and the events announcing the new one.
        """
        finished = self._require(Phase.CRASHED)
        self.round = self._new_round()
        return finished, self.betting_opened()
