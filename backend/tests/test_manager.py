import threading
import time

import pytest

from conftest import (
    ENGINE_CONFIG,
    FixedRollGenerator,
    InMemoryArchive,
    InMemoryWalletStore,
    RecordingEmitter,
    StaticPrices,
)
from crashgame.services.game.broadcaster import CancelToken, MultiplierBroadcaster
from crashgame.services.game.errors import (
    ConflictError,
    InsufficientFundsError,
    PersistenceError,
    StateError,
    ValidationError,
)
from crashgame.services.game.manager import build_round_manager
from crashgame.services.game.rounds import Phase


def test_bet_converts_usd_and_debits_wallet(engine, wallets, emitter):
    receipt = engine.place_bet('alice', 10, 'BTC')
    assert receipt['roundId'] == engine.machine.round.round_id
    assert receipt['cryptoAmount'] == 0.00015385
    assert receipt['priceAtTime'] == 65000.0
    assert wallets.balances['alice']['BTC'] == pytest.approx(0.01 - 0.00015385)

    bet_events = emitter.named('playerBet')
    assert bet_events[0].payload == {
        'playerId': 'alice',
        'usdAmount': 10.0,
        'cryptoType': 'BTC',
        'roundId': receipt['roundId'],
    }


def test_cashout_locks_in_live_multiplier(engine, clock, wallets, emitter):
    engine.place_bet('alice', 10, 'BTC')
    engine.activate()
    clock.advance(14.5)

    result = engine.cashout('alice', sid='sid-alice')
    assert result['multiplier'] == pytest.approx(2.45)
    assert result['payout'] == 0.00037693
    assert result['usdPayout'] == 24.5
    assert result['cryptoType'] == 'BTC'
    assert wallets.balances['alice']['BTC'] == pytest.approx(0.01 - 0.00015385 + 0.00037693)

    # Broadcast to everyone, confirmation to the requester only
    broadcast = emitter.named('playerCashout')[0]
    assert broadcast.to is None
    assert broadcast.payload['playerId'] == 'alice'
    confirmation = emitter.named('cashoutSuccess')[0]
    assert confirmation.to == 'sid-alice'
    assert confirmation.payload == result


@pytest.mark.parametrize('amount, crypto', [(0.5, 'BTC'), (1000.01, 'BTC'), ('ten', 'ETH'), (10, 'DOGE'), (float('nan'), 'ETH')])
def test_bet_validation(engine, amount, crypto):
    with pytest.raises(ValidationError):
        engine.place_bet('alice', amount, crypto)
    assert engine.get_game_state()['playerCount'] == 0


def test_malformed_player_id_rejected(engine):
    with pytest.raises(ValidationError):
        engine.place_bet('bad id!', 10, 'BTC')
    with pytest.raises(ValidationError):
        engine.get_or_create_wallet('')


def test_duplicate_bet_conflicts(engine, wallets):
    engine.place_bet('alice', 10, 'BTC')
    with pytest.raises(ConflictError):
        engine.place_bet('alice', 20, 'ETH')
    # Only the first bet was debited
    assert wallets.balances['alice']['ETH'] == 1.0


def test_bet_rejected_once_round_is_active(engine):
    engine.activate()
    with pytest.raises(StateError):
        engine.place_bet('alice', 10, 'BTC')


def test_insufficient_funds_leaves_wallet_untouched(engine, wallets):
    # $1000 of BTC at 65k is 0.01538 BTC, more than the 0.01 starting balance
    with pytest.raises(InsufficientFundsError):
        engine.place_bet('alice', 1000, 'BTC')
    assert wallets.balances['alice']['BTC'] == 0.01
    assert engine.get_game_state()['playerCount'] == 0
    # The failed attempt does not block a valid one
    engine.place_bet('alice', 100, 'BTC')
    assert engine.get_game_state()['playerCount'] == 1


def test_failed_debit_records_no_bet(engine, wallets, emitter):
    wallets.fail_debit = True
    with pytest.raises(PersistenceError):
        engine.place_bet('alice', 10, 'BTC')
    assert engine.machine.round.bets == {}
    assert engine.machine.round.pending == set()
    assert emitter.named('playerBet') == []


def test_cashout_guards(engine):
    with pytest.raises(StateError, match='No bet'):
        engine.cashout('alice')
    engine.place_bet('alice', 10, 'BTC')
    with pytest.raises(StateError, match='not active'):
        engine.cashout('alice')
    engine.activate()
    engine.cashout('alice')
    with pytest.raises(ConflictError):
        engine.cashout('alice')


def test_failed_credit_records_no_cashout(engine, wallets):
    engine.place_bet('alice', 10, 'BTC')
    engine.activate()
    wallets.fail_credit = True
    with pytest.raises(PersistenceError):
        engine.cashout('alice')
    assert engine.machine.round.cashouts == {}
    # Once storage recovers the player can still cash out
    wallets.fail_credit = False
    engine.cashout('alice')
    assert engine.get_game_state()['cashedOutCount'] == 1


def test_cashout_after_crash_instant_fails_and_crashes_round(engine, clock, emitter):
    engine.machine.generator = FixedRollGenerator(2.0)
    engine.place_bet('alice', 10, 'BTC')
    engine.activate()
    # No tick has run yet, but the crash instant has passed
    clock.advance(11)
    with pytest.raises(StateError):
        engine.cashout('alice')
    assert engine.machine.round.phase is Phase.CRASHED
    assert emitter.named('roundCrash')[0].payload['crashPoint'] == 2.0
    assert engine.get_game_state()['cashedOutCount'] == 0


def test_cashout_rejected_after_tick_crash(engine, clock):
    engine.machine.generator = FixedRollGenerator(1.5)
    engine.place_bet('alice', 10, 'BTC')
    engine.activate()
    clock.advance(6)
    engine.tick()
    assert engine.machine.round.phase is Phase.CRASHED
    with pytest.raises(StateError):
        engine.cashout('alice')


def test_concurrent_cashouts_pay_exactly_once(engine, wallets):
    engine.place_bet('alice', 10, 'BTC')
    engine.activate()
    # Hold the first credit open so both requests are in flight together
    wallets.credit_gate = threading.Event()
    barrier = threading.Barrier(2)
    outcomes = []

    def attempt():
        barrier.wait()
        try:
            engine.cashout('alice')
            outcomes.append('ok')
        except ConflictError:
            outcomes.append('conflict')
            wallets.credit_gate.set()

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert sorted(outcomes) == ['conflict', 'ok']
    assert len(engine.machine.round.cashouts) == 1


def test_concurrent_bets_from_many_players(engine, wallets):
    players = [f"p{i}" for i in range(20)]
    errors = []

    def bet(pid):
        try:
            engine.place_bet(pid, 5, 'ETH')
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=bet, args=(pid,)) for pid in players]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert errors == []
    assert engine.get_game_state()['playerCount'] == 20
    assert all(wallets.balances[p]['ETH'] >= 0 for p in players)


def test_cashouts_subset_of_bets(engine):
    engine.place_bet('alice', 10, 'BTC')
    engine.place_bet('bob', 10, 'ETH')
    engine.activate()
    engine.cashout('bob')
    round_ = engine.machine.round
    assert set(round_.cashouts) <= set(round_.bets)


def test_game_state_is_idempotent(engine, clock):
    engine.place_bet('alice', 10, 'BTC')
    engine.activate()
    clock.advance(3)
    engine.tick()
    first = engine.get_game_state()
    clock.advance(0.05)
    assert engine.get_game_state() == first
    assert first == {
        'phase': 'ACTIVE',
        'roundId': engine.machine.round.round_id,
        'multiplier': pytest.approx(1.3),
        'crashPoint': None,
        'playerCount': 1,
        'cashedOutCount': 0,
    }


def test_finish_round_archives_and_resets(engine, clock, archive, emitter):
    engine.place_bet('alice', 10, 'BTC')
    engine.place_bet('bob', 10, 'ETH')
    engine.activate()
    clock.advance(5)
    engine.cashout('alice')
    old_id = engine.machine.round.round_id
    engine.crash()
    engine.finish_round()

    assert engine.machine.round.phase is Phase.BETTING_OPEN
    assert engine.machine.round.round_id != old_id
    assert engine.get_game_state()['playerCount'] == 0
    assert emitter.names()[-1] == 'bettingOpen'

    record = archive.get(old_id)
    outcomes = {p['player_id']: p for p in record['participants']}
    assert outcomes['alice']['cashed_out'] is True
    assert outcomes['alice']['multiplier'] == pytest.approx(1.5)
    assert outcomes['bob']['cashed_out'] is False
    # The revealed seed verifies against the archive
    verdict = engine.verify_round(old_id)
    assert verdict['roundId'] == old_id
    assert engine.verify_round('round_missing') is None


def test_failed_archive_does_not_stop_cycle(engine, archive):
    def broken(summary):
        raise PersistenceError('archive down')

    archive.append = broken
    engine.activate()
    engine.crash()
    engine.finish_round()
    assert engine.machine.round.phase is Phase.BETTING_OPEN


def test_wallet_view_includes_usd_value(engine):
    view = engine.get_or_create_wallet('alice')
    assert view['balances']['BTC'] == {'amount': 0.01, 'usdValue': 650.0}
    assert view['balances']['ETH'] == {'amount': 1.0, 'usdValue': 3500.0}


def test_broadcaster_skips_tick_when_lock_busy():
    lock = threading.Lock()
    calls = []
    broadcaster = MultiplierBroadcaster(lock, lambda: calls.append(1) or [], lambda e: None, lock_timeout=0.01)
    lock.acquire()
    try:
        started = time.monotonic()
        assert broadcaster.tick_once(CancelToken()) == []
        assert time.monotonic() - started < 1
    finally:
        lock.release()
    assert calls == []
    assert broadcaster.skipped == 1


def test_broadcaster_stops_when_token_cancelled():
    token = CancelToken()
    ticks = []

    def tick():
        ticks.append(1)
        if len(ticks) == 3:
            token.cancel()
        return []

    MultiplierBroadcaster(threading.Lock(), tick, lambda e: None, interval=0.001).run(token)
    assert len(ticks) == 3


def test_background_cycle_runs_and_stops():
    emitter = RecordingEmitter()
    archive = InMemoryArchive()
    config = dict(ENGINE_CONFIG, BETTING_DURATION_SEC=0.02, CRASH_DISPLAY_SEC=0.02, TICK_INTERVAL_MS=5, GROWTH_RATE=10)
    manager = build_round_manager(
        config,
        wallets=InMemoryWalletStore(),
        archive=archive,
        prices=StaticPrices(),
        emitter=emitter,
    )
    manager.machine.generator = FixedRollGenerator(1.2)
    manager.start()
    try:
        deadline = time.time() + 5
        while time.time() < deadline and len(archive.records) < 2:
            time.sleep(0.01)
    finally:
        manager.stop()

    assert len(archive.records) >= 2
    names = emitter.names()
    assert names[0] in ('bettingOpen', 'priceUpdate')
    for name in ('bettingOpen', 'roundStart', 'roundCrash', 'crashDisplay', 'priceUpdate'):
        assert name in names
    # Every crash is preceded by a start of the same round
    starts = [e.payload['roundId'] for e in emitter.named('roundStart')]
    for crash in emitter.named('roundCrash'):
        assert crash.payload['roundId'] in starts
    assert not manager.running


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, 'timed out'
        time.sleep(0.005)


def _in_background(outcome, fn, *args):
    def run():
        try:
            fn(*args)
            outcome.append('ok')
        except StateError as exc:
            outcome.append(exc.message)

    thread = threading.Thread(target=run)
    thread.start()
    return thread


def test_finish_round_waits_for_in_flight_cashout(engine, wallets, archive):
    engine.place_bet('alice', 10, 'BTC')
    engine.activate()
    wallets.credit_gate = threading.Event()
    outcome = []
    thread = _in_background(outcome, engine.cashout, 'alice')
    _wait_for(lambda: 'alice' in engine.machine.round.pending)

    old_id = engine.machine.round.round_id
    engine.crash()
    threading.Timer(0.1, wallets.credit_gate.set).start()
    engine.finish_round()
    thread.join(5)

    assert outcome == ['ok']
    participants = archive.get(old_id)['participants']
    assert participants[0]['cashed_out'] is True


def test_cashout_landing_after_round_reset_is_reversed(engine, wallets, archive, emitter):
    engine.place_bet('alice', 10, 'BTC')
    engine.activate()
    wallets.credit_gate = threading.Event()
    outcome = []
    thread = _in_background(outcome, engine.cashout, 'alice')
    _wait_for(lambda: 'alice' in engine.machine.round.pending)

    old_id = engine.machine.round.round_id
    engine.crash()
    # The drain gives up while the credit is still held
    engine.finish_round()
    wallets.credit_gate.set()
    thread.join(5)

    assert outcome == ['Round ended before the cashout was recorded']
    assert wallets.balances['alice']['BTC'] == pytest.approx(0.01 - 0.00015385)
    assert archive.get(old_id)['participants'][0]['cashed_out'] is False
    assert emitter.named('playerCashout') == []
    assert engine.machine.round.cashouts == {}


def test_activation_waits_for_in_flight_bet(engine, wallets, emitter):
    wallets.debit_gate = threading.Event()
    outcome = []
    thread = _in_background(outcome, engine.place_bet, 'bob', 10, 'ETH')
    _wait_for(lambda: 'bob' in engine.machine.round.pending)

    threading.Timer(0.1, wallets.debit_gate.set).start()
    engine.activate()
    thread.join(5)

    assert outcome == ['ok']
    assert list(engine.machine.round.bets) == ['bob']
    order = [n for n in emitter.names() if n in ('playerBet', 'roundStart')]
    assert order == ['playerBet', 'roundStart']


def test_bet_landing_after_activation_is_refunded(engine, wallets, emitter):
    wallets.debit_gate = threading.Event()
    outcome = []
    thread = _in_background(outcome, engine.place_bet, 'bob', 10, 'ETH')
    _wait_for(lambda: 'bob' in engine.machine.round.pending)

    engine.activate()
    wallets.debit_gate.set()
    thread.join(5)

    assert outcome == ['Betting closed before the bet was recorded']
    assert engine.machine.round.phase is Phase.ACTIVE
    assert engine.machine.round.bets == {}
    assert wallets.balances['bob']['ETH'] == pytest.approx(1.0)
    assert emitter.named('playerBet') == []


def test_tick_published_after_crash_is_dropped(engine, clock, emitter):
    engine.machine.generator = FixedRollGenerator(2.0)
    engine.place_bet('alice', 10, 'BTC')
    token = engine.activate()
    clock.advance(1)
    computed = engine.broadcaster.tick_once(token)
    assert [e.name for e in computed] == ['multiplierUpdate']

    # A cashout past the crash instant crashes the round before the tick goes out
    clock.advance(20)
    with pytest.raises(StateError):
        engine.cashout('alice')
    engine.broadcaster.publish(computed, token)

    assert 'roundCrash' in emitter.names()
    assert emitter.named('multiplierUpdate') == []


class StuckWorker:
    def __init__(self):
        self.joins = []

    def join(self, timeout=None):
        self.joins.append(timeout)

    def is_alive(self):
        return True


def test_start_refused_while_previous_workers_alive():
    spawned = []

    def spawn(target, *args):
        worker = StuckWorker()
        spawned.append(worker)
        return worker

    manager = build_round_manager(
        ENGINE_CONFIG,
        wallets=InMemoryWalletStore(),
        archive=InMemoryArchive(),
        prices=StaticPrices(),
        emitter=RecordingEmitter(),
        spawn=spawn,
    )
    assert manager.start() is True
    manager.stop(timeout=0.01)
    assert all(w.joins == [0.01] for w in spawned)

    assert manager.start() is False
    assert len(spawned) == 2
    assert not manager.running


def test_restart_after_stop_leaves_no_stray_workers():
    threads = []

    def spawn(target, *args):
        thread = threading.Thread(target=target, args=args, daemon=True)
        threads.append(thread)
        thread.start()
        return thread

    archive = InMemoryArchive()
    config = dict(ENGINE_CONFIG, BETTING_DURATION_SEC=0.02, CRASH_DISPLAY_SEC=0.02, TICK_INTERVAL_MS=5, GROWTH_RATE=10)
    manager = build_round_manager(
        config,
        wallets=InMemoryWalletStore(),
        archive=archive,
        prices=StaticPrices(),
        emitter=RecordingEmitter(),
        spawn=spawn,
    )
    manager.machine.generator = FixedRollGenerator(1.2)

    assert manager.start()
    time.sleep(0.05)
    manager.stop()
    assert not any(t.is_alive() for t in threads)

    assert manager.start()
    try:
        _wait_for(lambda: len(archive.records) >= 2, timeout=5)
    finally:
        manager.stop()
    assert len(threads) == 4
    assert not any(t.is_alive() for t in threads)
