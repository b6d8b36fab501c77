"""Durable wallet balances.

Debits and credits are single UPDATE statements evaluated by the database
(``amount = amount - :x WHERE amount >= :x``), so two requests touching the
same row never read-then-write. Rows for different players never contend.
"""
from typing import Dict

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from crashgame import db
from crashgame.models import WalletBalance
from crashgame.services.game.errors import PersistenceError


class WalletStore:
    def __init__(self, app, default_balances: Dict[str, float]):
        self.app = app
        self.default_balances = dict(default_balances)

    def _balances(self, player_id: str) -> Dict[str, float]:
        rows = WalletBalance.query.filter_by(player_id=player_id).all()
        return {row.crypto_type: row.amount for row in rows}

    def get_or_create(self, player_id: str) -> Dict[str, float]:
        with self.app.app_context():
            try:
                balances = self._balances(player_id)
                missing = [c for c in self.default_balances if c not in balances]
                if not missing:
                    return balances
                for crypto_type in missing:
                    db.session.add(WalletBalance(
                        player_id=player_id,
                        crypto_type=crypto_type,
                        amount=self.default_balances[crypto_type],
                    ))
                try:
                    db.session.commit()
                except IntegrityError:
                    # Another request created the wallet first
                    db.session.rollback()
                return self._balances(player_id)
            except SQLAlchemyError as exc:
                db.session.rollback()
                raise PersistenceError(f"Could not load wallet for {player_id}") from exc

    def debit(self, player_id: str, crypto_type: str, amount: float) -> bool:
        """Atomically subtract ``amount``; False when the balance is too low."""
        stmt = (
            update(WalletBalance)
            .where(
                WalletBalance.player_id == player_id,
                WalletBalance.crypto_type == crypto_type,
                WalletBalance.amount >= amount,
            )
            .values(amount=WalletBalance.amount - amount)
        )
        with self.app.app_context():
            try:
                result = db.session.execute(stmt)
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                raise PersistenceError(f"Could not debit {crypto_type} wallet of {player_id}") from exc
        return result.rowcount == 1

    def credit(self, player_id: str, crypto_type: str, amount: float) -> None:
        stmt = (
            update(WalletBalance)
            .where(
                WalletBalance.player_id == player_id,
                WalletBalance.crypto_type == crypto_type,
            )
            .values(amount=WalletBalance.amount + amount)
        )
        with self.app.app_context():
            try:
                result = db.session.execute(stmt)
                if result.rowcount != 1:
                    db.session.rollback()
                    raise PersistenceError(f"No {crypto_type} wallet for {player_id}")
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                raise PersistenceError(f"Could not credit {crypto_type} wallet of {player_id}") from exc
