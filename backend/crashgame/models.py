from crashgame import db, bcrypt
from flask_login import UserMixin
import json


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
        }


class WalletBalance(db.Model):
    """One row per (player, asset); only ever changed by atomic UPDATEs."""
    __tablename__ = 'wallet_balance'
    __table_args__ = (
        db.UniqueConstraint('player_id', 'crypto_type', name='uq_wallet_balance_player_crypto'),
    )
    id = db.Column(db.Integer, primary_key=True)
    player_id = db.Column(db.String(64), nullable=False, index=True)
    crypto_type = db.Column(db.String(16), nullable=False)
    amount = db.Column(db.Float, nullable=False, default=0.0)

    def to_dict(self):
        return {
            'player_id': self.player_id,
            'crypto_type': self.crypto_type,
            'amount': self.amount,
        }


class RoundRecord(db.Model):
    """Append-only summary of a finished round."""
    __tablename__ = 'round_record'
    id = db.Column(db.Integer, primary_key=True)
    round_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    crash_point = db.Column(db.Float, nullable=False)
    seed = db.Column(db.String(128), nullable=False)
    seed_hash = db.Column(db.String(128), nullable=False)
    opened_at = db.Column(db.DateTime, nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    crashed_at = db.Column(db.DateTime, nullable=True)
    ended_at = db.Column(db.DateTime, nullable=True)
    participants = db.Column(db.Text, nullable=True)  # JSON-encoded list of outcomes

    def to_dict(self):
        try:
            participants = json.loads(self.participants) if self.participants else []
        except ValueError:
            participants = []
        return {
            'round_id': self.round_id,
            'crash_point': self.crash_point,
            'seed': self.seed,
            'seed_hash': self.seed_hash,
            'opened_at': self.opened_at.isoformat() if self.opened_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'crashed_at': self.crashed_at.isoformat() if self.crashed_at else None,
            'ended_at': self.ended_at.isoformat() if self.ended_at else None,
            'participants': participants,
        }
