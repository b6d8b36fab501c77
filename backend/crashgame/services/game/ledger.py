"""Bet placement against the per-player wallet.

Placing a bet is split in three steps so that the round lock is never held
across a wallet write:

1. ``reserve`` (under the round lock): phase, limits, duplicate checks; the
   player id goes into ``round.pending``.
2. ``settle`` (no round lock): atomic conditional debit in the wallet store.
3. ``commit`` or ``release`` (under the round lock): the bet is recorded
   only after the debit persisted, and only while its round is still taking
   bets. A debit that lands after betting closed is refunded.
"""
import math
import re
from typing import Callable, Iterable, List

from . import events
from .errors import ConflictError, InsufficientFundsError, StateError, ValidationError
from .rounds import Bet, Phase, Round

CRYPTO_DECIMALS = 8
USD_DECIMALS = 2

_PLAYER_ID_RE = re.compile(r'^[A-Za-z0-9_.@-]{1,64}$')


def validate_player_id(player_id) -> str:
    if not isinstance(player_id, str) or not _PLAYER_ID_RE.match(player_id):
        raise ValidationError('playerId must be 1-64 letters, digits or . _ - @')
    return player_id


def to_crypto(amount: float) -> float:
    return round(amount, CRYPTO_DECIMALS)


def to_usd(amount: float) -> float:
    return round(amount, USD_DECIMALS)


class BetLedger:
    def __init__(
        self,
        wallets,
        supported_cryptos: Iterable[str] = ('BTC', 'ETH'),
        min_bet: float = 1.0,
        max_bet: float = 1000.0,
    ):
        self.wallets = wallets
        self.supported_cryptos = tuple(supported_cryptos)
        self.min_bet = min_bet
        self.max_bet = max_bet

    def validate(self, player_id, usd_amount, crypto_type):
        validate_player_id(player_id)
        if isinstance(usd_amount, bool):
            raise ValidationError('usdAmount must be a number')
        try:
            usd_amount = float(usd_amount)
        except (TypeError, ValueError):
            raise ValidationError('usdAmount must be a number')
        if not math.isfinite(usd_amount) or not self.min_bet <= usd_amount <= self.max_bet:
            raise ValidationError(f"Bet must be between ${self.min_bet:g} and ${self.max_bet:g}")
        if crypto_type not in self.supported_cryptos:
            raise ValidationError(f"Invalid crypto type: {crypto_type!r}")
        return usd_amount

    def reserve(
        self,
        round_: Round,
        player_id,
        usd_amount,
        crypto_type,
        price_of: Callable[[str], float],
    ) -> Bet:
        if round_.phase is not Phase.BETTING_OPEN:
            raise StateError('Betting is closed')
        usd_amount = self.validate(player_id, usd_amount, crypto_type)
        if player_id in round_.bets or player_id in round_.pending:
            raise ConflictError('Already placed bet this round')
        price = price_of(crypto_type)
        bet = Bet(
            player_id=player_id,
            usd_amount=usd_amount,
            crypto_type=crypto_type,
            crypto_amount=to_crypto(usd_amount / price),
            price_at_time=price,
        )
        round_.pending.add(player_id)
        return bet

    def settle(self, bet: Bet) -> None:
        """Debit the wallet. Raises InsufficientFundsError or PersistenceError."""
        self.wallets.get_or_create(bet.player_id)
        if not self.wallets.debit(bet.player_id, bet.crypto_type, bet.crypto_amount):
            raise InsufficientFundsError(
                f"Insufficient {bet.crypto_type} balance for {bet.crypto_amount:.8f}"
            )

    def commit(self, round_: Round, bet: Bet) -> List[events.GameEvent]:
        round_.pending.discard(bet.player_id)
        round_.bets[bet.player_id] = bet
        return [events.player_bet(round_, bet)]

    def release(self, round_: Round, player_id: str) -> None:
        round_.pending.discard(player_id)

    def refund(self, bet: Bet) -> None:
        """Credit back a debit whose bet could not be recorded."""
        self.wallets.credit(bet.player_id, bet.crypto_type, bet.crypto_amount)
