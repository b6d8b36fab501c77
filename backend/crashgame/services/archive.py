import json
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from crashgame import db
from crashgame.models import RoundRecord
from crashgame.services.game.errors import PersistenceError


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite DateTime columns drop tzinfo; store everything as naive UTC
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class RoundArchive:
    """Append-only store of finished rounds, used for history and seed verification."""

    def __init__(self, app):
        self.app = app

    def append(self, summary: dict) -> None:
        record = RoundRecord(
            round_id=summary['round_id'],
            crash_point=summary['crash_point'],
            seed=summary['seed'],
            seed_hash=summary['seed_hash'],
            opened_at=_naive_utc(summary.get('opened_at')),
            started_at=_naive_utc(summary.get('started_at')),
            crashed_at=_naive_utc(summary.get('crashed_at')),
            ended_at=_naive_utc(datetime.now(timezone.utc)),
            participants=json.dumps(summary.get('participants') or []),
        )
        with self.app.app_context():
            try:
                db.session.add(record)
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                raise PersistenceError(f"Could not archive round {summary['round_id']}") from exc

    def recent(self, limit: int = 20) -> list:
        with self.app.app_context():
            records = RoundRecord.query.order_by(RoundRecord.id.desc()).limit(limit).all()
            return [r.to_dict() for r in records]

    def get(self, round_id: str) -> Optional[dict]:
        with self.app.app_context():
            record = RoundRecord.query.filter_by(round_id=round_id).first()
            return record.to_dict() if record else None
