import os


def _parse_amounts(raw):
    """Parse 'BTC:0.01,ETH:1.0' into {'BTC': 0.01, 'ETH': 1.0}."""
    amounts = {}
    for part in (raw or '').split(','):
        if ':' not in part:
            continue
        key, value = part.split(':', 1)
        amounts[key.strip().upper()] = float(value)
    return amounts


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///crashgame.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Round cycle timers (seconds)
    BETTING_DURATION_SEC = float(os.environ.get('BETTING_DURATION_SEC', '10'))
    CRASH_DISPLAY_SEC = float(os.environ.get('CRASH_DISPLAY_SEC', '5'))
    # Multiplier broadcast cadence and growth per second of the active phase
    TICK_INTERVAL_MS = int(os.environ.get('TICK_INTERVAL_MS', '100'))
    GROWTH_RATE = float(os.environ.get('GROWTH_RATE', '0.1'))
    # Longest a tick waits on the round lock before skipping a frame
    TICK_LOCK_TIMEOUT_MS = int(os.environ.get('TICK_LOCK_TIMEOUT_MS', '20'))
    # Bounded wait for in-flight bets/cashouts before a finished round is archived
    DRAIN_TIMEOUT_SEC = float(os.environ.get('DRAIN_TIMEOUT_SEC', '2'))
    # Bet limits and assets
    MIN_BET_USD = float(os.environ.get('MIN_BET_USD', '1'))
    MAX_BET_USD = float(os.environ.get('MAX_BET_USD', '1000'))
    SUPPORTED_CRYPTOS = tuple(
        c.strip().upper() for c in os.environ.get('SUPPORTED_CRYPTOS', 'BTC,ETH').split(',') if c.strip()
    )
    # Crash point curve
    MIN_CRASH_POINT = float(os.environ.get('MIN_CRASH_POINT', '1.01'))
    MAX_CRASH_POINT = float(os.environ.get('MAX_CRASH_POINT', '100'))
    HOUSE_FACTOR = float(os.environ.get('HOUSE_FACTOR', '0.99'))
    # Starting wallet for players seen for the first time
    DEFAULT_BALANCES = _parse_amounts(os.environ.get('DEFAULT_BALANCES', 'BTC:0.01,ETH:1.0'))
    # Price feed
    FALLBACK_PRICES = _parse_amounts(os.environ.get('FALLBACK_PRICES', 'BTC:65000,ETH:3500'))
    PRICE_FEED_URL = os.environ.get('PRICE_FEED_URL', 'https://api.coingecko.com/api/v3/simple/price')
    PRICE_FEED_TIMEOUT_SEC = float(os.environ.get('PRICE_FEED_TIMEOUT_SEC', '5'))
    PRICE_REFRESH_SEC = float(os.environ.get('PRICE_REFRESH_SEC', '10'))
    # Start the round cycle when the app is created
    AUTO_START_ROUNDS = os.environ.get('AUTO_START_ROUNDS', '1') not in ('0', 'false', 'False', '')
    # Optional: heartbeat interval for cycle worker logs (sec). 0 disables.
    TIMER_HEARTBEAT_SEC = int(os.environ.get('TIMER_HEARTBEAT_SEC', '0'))
