"""Events produced by round transitions and the emitters that deliver them.

Engine code only builds ``GameEvent`` values. Delivery happens afterwards,
outside the round lock, through an emitter.
"""
from typing import Any, Dict, NamedTuple, Optional

MULTIPLIER_UPDATE = 'multiplierUpdate'


class GameEvent(NamedTuple):
    name: str
    payload: Dict[str, Any]
    to: Optional[str] = None  # socket id for requester-only events; None broadcasts


def round_start(round_) -> GameEvent:
    return GameEvent('roundStart', {
        'roundId': round_.round_id,
        'multiplier': 1.0,
        'seedHash': round_.seed_hash.hex(),
    })


def multiplier_update(round_) -> GameEvent:
    return GameEvent(MULTIPLIER_UPDATE, {
        'roundId': round_.round_id,
        'multiplier': round_.multiplier,
    })


def round_crash(round_) -> GameEvent:
    return GameEvent('roundCrash', {
        'roundId': round_.round_id,
        'crashPoint': round_.crash_point,
        'seed': round_.seed.hex(),
    })


def crash_display(round_, duration_sec: float) -> GameEvent:
    return GameEvent('crashDisplay', {
        'roundId': round_.round_id,
        'crashPoint': round_.crash_point,
        'durationMs': int(duration_sec * 1000),
    })


def betting_open(round_, duration_sec: float) -> GameEvent:
    return GameEvent('bettingOpen', {
        'roundId': round_.round_id,
        'message': 'Place your bets now!',
        'durationMs': int(duration_sec * 1000),
    })


def player_bet(round_, bet) -> GameEvent:
    return GameEvent('playerBet', {
        'playerId': bet.player_id,
        'usdAmount': bet.usd_amount,
        'cryptoType': bet.crypto_type,
        'roundId': round_.round_id,
    })


def player_cashout(cashout) -> GameEvent:
    payload = {'playerId': cashout.player_id}
    payload.update(cashout.to_dict())
    return GameEvent('playerCashout', payload)


def cashout_success(cashout, sid: str) -> GameEvent:
    return GameEvent('cashoutSuccess', cashout.to_dict(), to=sid)


def price_update(prices: Dict[str, float]) -> GameEvent:
    return GameEvent('priceUpdate', {'prices': dict(prices)})


class SocketIOEmitter:
    """Deliver events on a Flask-SocketIO namespace."""

    def __init__(self, socketio, namespace: str = '/ws'):
        self.socketio = socketio
        self.namespace = namespace

    def emit(self, event: GameEvent) -> None:
        if event.to:
            self.socketio.emit(event.name, event.payload, to=event.to, namespace=self.namespace)
        else:
            self.socketio.emit(event.name, event.payload, namespace=self.namespace)
