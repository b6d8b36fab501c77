import os
import sys
import threading
import pytest

# Ensure the backend root (containing the `crashgame` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from config import Config
from crashgame import create_app, db, socketio
from crashgame.services.game.errors import PersistenceError
from crashgame.services.game.fairness import CrashPointGenerator, CrashRoll, hash_seed
from crashgame.services.game.manager import build_round_manager


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    AUTO_START_ROUNDS = False
    BETTING_DURATION_SEC = 10
    CRASH_DISPLAY_SEC = 5
    GROWTH_RATE = 0.1
    DEFAULT_BALANCES = {'BTC': 0.01, 'ETH': 1.0}
    FALLBACK_PRICES = {'BTC': 65000.0, 'ETH': 3500.0}
    SUPPORTED_CRYPTOS = ('BTC', 'ETH')


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FixedRollGenerator(CrashPointGenerator):
    """Always rolls the same crash point, for timing-sensitive tests."""

    def __init__(self, crash_point):
        super().__init__()
        self.crash_point = crash_point

    def generate(self):
        seed = b'\x07' * 32
        return CrashRoll(crash_point=self.crash_point, seed=seed, seed_hash=hash_seed(seed))


class RecordingEmitter:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def emit(self, event):
        with self._lock:
            self.events.append(event)

    def names(self):
        return [e.name for e in self.events]

    def named(self, name):
        return [e for e in self.events if e.name == name]

    def clear(self):
        self.events = []


class InMemoryWalletStore:
    def __init__(self, default_balances=None):
        self.default_balances = dict(default_balances or {'BTC': 0.01, 'ETH': 1.0})
        self.balances = {}
        self.fail_debit = False
        self.fail_credit = False
        self.debit_gate = None  # threading.Event the debit waits on, if set
        self.credit_gate = None  # threading.Event the credit waits on, if set
        self._lock = threading.Lock()

    def get_or_create(self, player_id):
        with self._lock:
            wallet = self.balances.setdefault(player_id, dict(self.default_balances))
            return dict(wallet)

    def debit(self, player_id, crypto_type, amount):
        if self.debit_gate is not None:
            self.debit_gate.wait(2)
        if self.fail_debit:
            raise PersistenceError('disk full')
        with self._lock:
            wallet = self.balances[player_id]
            if wallet.get(crypto_type, 0.0) < amount:
                return False
            wallet[crypto_type] -= amount
            return True

    def credit(self, player_id, crypto_type, amount):
        if self.credit_gate is not None:
            self.credit_gate.wait(2)
        if self.fail_credit:
            raise PersistenceError('disk full')
        with self._lock:
            self.balances[player_id][crypto_type] += amount


class InMemoryArchive:
    def __init__(self):
        self.records = []

    def append(self, summary):
        self.records.append(summary)

    def recent(self, limit=20):
        return list(reversed(self.records))[:limit]

    def get(self, round_id):
        for record in self.records:
            if record['round_id'] == round_id:
                return record
        return None


class StaticPrices:
    def __init__(self, prices=None):
        self.prices = dict(prices or {'BTC': 65000.0, 'ETH': 3500.0})
        self.refreshed = 0

    def snapshot(self):
        return dict(self.prices)

    def current_price(self, crypto_type):
        return self.prices[crypto_type]

    def refresh(self):
        self.refreshed += 1
        return self.snapshot()


ENGINE_CONFIG = {
    'BETTING_DURATION_SEC': 10,
    'CRASH_DISPLAY_SEC': 5,
    'GROWTH_RATE': 0.1,
    'TICK_INTERVAL_MS': 100,
    'MIN_BET_USD': 1,
    'MAX_BET_USD': 1000,
    'SUPPORTED_CRYPTOS': ('BTC', 'ETH'),
    'DRAIN_TIMEOUT_SEC': 0.5,
}


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def wallets():
    return InMemoryWalletStore()


@pytest.fixture()
def archive():
    return InMemoryArchive()


@pytest.fixture()
def emitter():
    return RecordingEmitter()


@pytest.fixture()
def engine(clock, wallets, archive, emitter):
    """A RoundManager on in-memory collaborators, driven by hand. Crash point fixed at 50x."""
    manager = build_round_manager(
        ENGINE_CONFIG,
        wallets=wallets,
        archive=archive,
        prices=StaticPrices(),
        emitter=emitter,
        clock=clock,
    )
    manager.machine.generator = FixedRollGenerator(50.0)
    yield manager
    manager.stop()


@pytest.fixture()
def flask_app(clock):
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import crashgame.models  # noqa: F401
        db.create_all()
        application.extensions['round_manager'].machine.clock = clock
        yield application
        application.extensions['round_manager'].stop()
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def manager(flask_app):
    return flask_app.extensions['round_manager']


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass
