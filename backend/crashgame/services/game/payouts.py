"""Cashouts: lock in the live multiplier and credit the wallet.

Same reserve/settle/commit split as the bet ledger. ``reserve`` runs under the
round lock, so the multiplier it reads and the ACTIVE check are linearized
against the crash transition. A credit that lands after its round was reset
is reversed rather than recorded against the next round.
"""
from typing import Callable, List, Optional

from . import events
from .errors import ConflictError, PersistenceError, StateError
from .ledger import to_crypto, to_usd, validate_player_id
from .rounds import Cashout, Phase, Round


class PayoutProcessor:
    def __init__(self, wallets):
        self.wallets = wallets

    def reserve(
        self,
        round_: Round,
        player_id,
        multiplier_of: Callable[[], float],
        price_of: Callable[[str], float],
    ) -> Cashout:
        validate_player_id(player_id)
        bet = round_.bets.get(player_id)
        if bet is None:
            raise StateError('No bet placed')
        if round_.phase is not Phase.ACTIVE:
            raise StateError('Round not active')
        if player_id in round_.cashouts or player_id in round_.pending:
            raise ConflictError('Already cashed out')

        multiplier = multiplier_of()
        price = price_of(bet.crypto_type)
        payout = to_crypto(bet.crypto_amount * multiplier)
        cashout = Cashout(
            player_id=player_id,
            crypto_type=bet.crypto_type,
            multiplier=multiplier,
            payout=payout,
            usd_payout=to_usd(payout * price),
            price_at_cashout=price,
        )
        round_.pending.add(player_id)
        return cashout

    def settle(self, cashout: Cashout) -> None:
        self.wallets.credit(cashout.player_id, cashout.crypto_type, cashout.payout)

    def commit(self, round_: Round, cashout: Cashout, sid: Optional[str] = None) -> List[events.GameEvent]:
        round_.pending.discard(cashout.player_id)
        round_.cashouts[cashout.player_id] = cashout
        emitted = [events.player_cashout(cashout)]
        if sid:
            emitted.append(events.cashout_success(cashout, sid))
        return emitted

    def release(self, round_: Round, player_id: str) -> None:
        round_.pending.discard(player_id)

    def reverse(self, cashout: Cashout) -> None:
        """Take back a credit whose cashout could not be recorded."""
        if not self.wallets.debit(cashout.player_id, cashout.crypto_type, cashout.payout):
            raise PersistenceError(
                f"Could not reverse {cashout.crypto_type} payout of {cashout.payout:.8f} for {cashout.player_id}"
            )
