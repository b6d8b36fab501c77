"""RoundManager: the single owner of round state.

All reads and writes of the current round go through ``self._lock``. Wallet
writes happen outside it, between a reservation and a commit, so players do
not serialize behind each other's database round trips.

The cycle runner is one background task:

    betting window -> activate -> tick until crash -> display delay -> reset

Every wait is on the run's stop event or the phase's ``CancelToken``, so
``stop()`` cancels pending timers instead of letting them fire into a
torn-down state, then joins the workers.

Phase boundaries drain ``round.pending`` for at most ``drain_timeout``. A
wallet write that finishes after its round moved on is compensated and the
request fails with StateError.
"""
import logging
import threading
import time
from typing import Callable, List, Optional

from .broadcaster import CancelToken, MultiplierBroadcaster
from .errors import PersistenceError, StateError, ValidationError
from .events import GameEvent, price_update
from .fairness import CrashPointGenerator, verify_crash_point
from .ledger import BetLedger, to_usd, validate_player_id
from .payouts import PayoutProcessor
from .rounds import Phase, RoundStateMachine


class RoundManager:
    def __init__(
        self,
        machine: RoundStateMachine,
        ledger: BetLedger,
        payouts: PayoutProcessor,
        prices,
        wallets,
        archive,
        emitter,
        tick_interval: float = 0.1,
        tick_lock_timeout: float = 0.02,
        drain_timeout: float = 2.0,
        price_refresh: float = 10.0,
        heartbeat: float = 0,
        spawn: Optional[Callable] = None,
        logger=None,
    ):
        self.machine = machine
        self.ledger = ledger
        self.payouts = payouts
        self.prices = prices
        self.wallets = wallets
        self.archive = archive
        self.emitter = emitter
        self.drain_timeout = drain_timeout
        self.price_refresh = price_refresh
        self.heartbeat = heartbeat
        self.logger = logger or logging.getLogger(__name__)
        self._spawn = spawn or _spawn_thread
        self._lock = threading.Lock()
        self._emit_lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._stopping = threading.Event()
        self._token: Optional[CancelToken] = None
        self._running = False
        self._workers: list = []
        self.broadcaster = MultiplierBroadcaster(
            self._lock,
            self._tick_locked,
            self._dispatch,
            interval=tick_interval,
            lock_timeout=tick_lock_timeout,
            logger=self.logger,
            emit_lock=self._emit_lock,
        )

    # ---- request/response operations ----

    def get_prices(self) -> dict:
        return self.prices.snapshot()

    def get_or_create_wallet(self, player_id) -> dict:
        validate_player_id(player_id)
        balances = self.wallets.get_or_create(player_id)
        prices = self.prices.snapshot()
        return {
            'playerId': player_id,
            'balances': {
                crypto: {'amount': amount, 'usdValue': to_usd(amount * prices.get(crypto, 0.0))}
                for crypto, amount in balances.items()
            },
        }

    def place_bet(self, player_id, usd_amount, crypto_type) -> dict:
        with self._lock:
            round_ = self.machine.round
            bet = self.ledger.reserve(round_, player_id, usd_amount, crypto_type, self.prices.current_price)
        try:
            self.ledger.settle(bet)
        except Exception:
            with self._lock:
                self.ledger.release(round_, bet.player_id)
                self._idle.notify_all()
            raise
        with self._lock:
            still_open = round_ is self.machine.round and round_.phase is Phase.BETTING_OPEN
            if still_open:
                emitted = self.ledger.commit(round_, bet)
                # playerBet goes out before the events of the next transition
                self._emit_lock.acquire()
            else:
                self.ledger.release(round_, bet.player_id)
            self._idle.notify_all()
        if not still_open:
            self._refund_late_bet(round_, bet)
        try:
            self._dispatch(emitted)
        finally:
            self._emit_lock.release()
        self.logger.info(
            f"[bet] round={round_.round_id} player={bet.player_id} usd={bet.usd_amount} "
            f"{bet.crypto_type}={bet.crypto_amount:.8f} price={bet.price_at_time}"
        )
        receipt = {'roundId': round_.round_id}
        receipt.update(bet.to_dict())
        return receipt

    def cashout(self, player_id, sid: Optional[str] = None) -> dict:
        crash_events: List[GameEvent] = []
        try:
            with self._lock:
                round_ = self.machine.round
                # A request that arrives after the crash instant crashes the round itself
                if self.machine.crash_due():
                    crash_events = self._crash_locked()
                cashout = self.payouts.reserve(
                    round_, player_id, self.machine.live_multiplier, self.prices.current_price
                )
        finally:
            self._dispatch(crash_events)
        try:
            self.payouts.settle(cashout)
        except Exception:
            with self._lock:
                self.payouts.release(round_, cashout.player_id)
                self._idle.notify_all()
            raise
        with self._lock:
            current = round_ is self.machine.round
            if current:
                emitted = self.payouts.commit(round_, cashout, sid)
                self._emit_lock.acquire()
            else:
                self.payouts.release(round_, cashout.player_id)
            self._idle.notify_all()
        if not current:
            self._reverse_late_cashout(round_, cashout)
        try:
            self._dispatch(emitted)
        finally:
            self._emit_lock.release()
        self.logger.info(
            f"[cashout] round={round_.round_id} player={cashout.player_id} x{cashout.multiplier:.4f} "
            f"{cashout.crypto_type}={cashout.payout:.8f} usd={cashout.usd_payout}"
        )
        return cashout.to_dict()

    def get_game_state(self) -> dict:
        with self._lock:
            return self.machine.round.to_state()

    def recent_rounds(self, limit: int = 20) -> list:
        return self.archive.recent(limit)

    def verify_round(self, round_id: str) -> Optional[dict]:
        record = self.archive.get(round_id)
        if record is None:
            return None
        try:
            seed = bytes.fromhex(record['seed'])
            seed_hash = bytes.fromhex(record['seed_hash'])
        except (TypeError, ValueError):
            raise ValidationError(f"Round {round_id} has no verifiable seed")
        generator = self.machine.generator
        return {
            'roundId': round_id,
            'crashPoint': record['crash_point'],
            'seed': record['seed'],
            'seedHash': record['seed_hash'],
            'valid': verify_crash_point(
                seed, seed_hash, record['crash_point'],
                generator.min_point, generator.max_point, generator.house_factor,
            ),
        }

    # ---- phase transitions ----

    def announce_betting(self) -> None:
        self._dispatch(self.machine.betting_opened())

    def activate(self) -> CancelToken:
        with self._lock:
            self._drain_locked(self.machine.round)
            emitted = self.machine.activate()
            self._token = CancelToken()
            token = self._token
            round_ = self.machine.round
        self.logger.info(
            f"[round-start] round={round_.round_id} bets={len(round_.bets)} seed_hash={round_.seed_hash.hex()}"
        )
        self._dispatch(emitted)
        return token

    def tick(self) -> None:
        """Run one broadcaster tick for the current ACTIVE phase."""
        token = self._token or CancelToken()
        self.broadcaster.publish(self.broadcaster.tick_once(token), token)

    def crash(self) -> None:
        with self._lock:
            emitted = self._crash_locked() if self.machine.round.phase is Phase.ACTIVE else []
        self._dispatch(emitted)

    def finish_round(self) -> None:
        """Archive the crashed round and open the next betting window."""
        with self._lock:
            self._drain_locked(self.machine.round)
            finished, emitted = self.machine.reset()
        try:
            self.archive.append(finished.summary())
        except Exception as exc:
            self.logger.warning(f"[archive-fail] round={finished.round_id} error={exc}")
        self.logger.info(
            f"[round-end] round={finished.round_id} crash={finished.crash_point:.2f} "
            f"players={len(finished.bets)} cashed_out={len(finished.cashouts)} next={self.machine.round.round_id}"
        )
        self._dispatch(emitted)

    def _tick_locked(self) -> List[GameEvent]:
        emitted = self.machine.tick()
        if self.machine.round.phase is Phase.CRASHED:
            self._after_crash_locked()
        return emitted

    def _crash_locked(self) -> List[GameEvent]:
        emitted = self.machine.crash()
        self._after_crash_locked()
        return emitted

    def _after_crash_locked(self) -> None:
        if self._token:
            self._token.cancel()
        r = self.machine.round
        self.logger.info(f"[round-crash] round={r.round_id} crash={r.crash_point:.2f} seed={r.seed.hex()}")

    def _drain_locked(self, round_) -> None:
        deadline = time.monotonic() + self.drain_timeout
        while round_.pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.logger.warning(
                    f"[drain-timeout] round={round_.round_id} pending={sorted(round_.pending)}"
                )
                return
            self._idle.wait(remaining)

    def _refund_late_bet(self, round_, bet) -> None:
        self.logger.warning(
            f"[bet-late] round={round_.round_id} player={bet.player_id} "
            f"refund {bet.crypto_type}={bet.crypto_amount:.8f}"
        )
        try:
            self.ledger.refund(bet)
        except PersistenceError:
            self.logger.error(f"[refund-fail] round={round_.round_id} player={bet.player_id}")
            raise
        raise StateError('Betting closed before the bet was recorded')

    def _reverse_late_cashout(self, round_, cashout) -> None:
        self.logger.warning(
            f"[cashout-late] round={round_.round_id} player={cashout.player_id} "
            f"reverse {cashout.crypto_type}={cashout.payout:.8f}"
        )
        try:
            self.payouts.reverse(cashout)
        except PersistenceError:
            self.logger.error(f"[reverse-fail] round={round_.round_id} player={cashout.player_id}")
            raise
        raise StateError('Round ended before the cashout was recorded')

    def _dispatch(self, emitted: List[GameEvent]) -> None:
        with self._emit_lock:
            for event in emitted:
                try:
                    self.emitter.emit(event)
                except Exception as exc:
                    self.logger.warning(f"[emit-fail] event={event.name} error={exc}")

    # ---- background cycle ----

    def start(self) -> bool:
        """Spawn the price loop and the round cycle. False if already running."""
        if self._running:
            return False
        alive = [w for w in self._workers if _is_alive(w)]
        if alive:
            self.logger.warning(f"[cycle-busy] {len(alive)} worker(s) of the previous run still alive")
            return False
        # Each run owns its stop event; a worker never outlives the run that spawned it
        stopping = threading.Event()
        self._stopping = stopping
        self._running = True
        self.logger.info('[cycle-start] round engine starting')
        self._workers = [
            self._spawn(self._run_prices, stopping),
            self._spawn(self._run_cycle, stopping),
        ]
        return True

    @property
    def running(self) -> bool:
        return self._running

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopping.set()
        with self._lock:
            if self._token:
                self._token.cancel()
        self._running = False
        wait = self.drain_timeout + 1.0 if timeout is None else timeout
        for worker in self._workers:
            join = getattr(worker, 'join', None)
            if join is not None and worker is not threading.current_thread():
                join(wait)
        alive = [w for w in self._workers if _is_alive(w)]
        if alive:
            self.logger.warning(f"[cycle-stop-timeout] {len(alive)} worker(s) still running after {wait:.1f}s")
        self.logger.info('[cycle-stop] round engine stopped')

    def _sleep(self, delay: float, stopping: threading.Event) -> bool:
        """Wait ``delay`` seconds; True if shutdown was requested meanwhile."""
        if self.heartbeat and self.heartbeat > 0:
            slept = 0.0
            while slept < delay:
                step = min(self.heartbeat, delay - slept)
                if stopping.wait(step):
                    return True
                slept += step
                self.logger.info(
                    f"[cycle-heartbeat] round={self.machine.round.round_id} remaining={max(0.0, delay - slept):.1f}s"
                )
            return stopping.is_set()
        return stopping.wait(delay)

    def _active_token(self, stopping: threading.Event) -> CancelToken:
        with self._lock:
            if self._token is None or self._token.cancelled:
                self._token = CancelToken()
                if stopping.is_set():
                    self._token.cancel()
            return self._token

    def _run_cycle(self, stopping: threading.Event) -> None:
        try:
            with self._lock:
                phase = self.machine.round.phase
            if phase is Phase.BETTING_OPEN:
                self.announce_betting()
            while not stopping.is_set():
                with self._lock:
                    phase = self.machine.round.phase
                if phase is Phase.BETTING_OPEN:
                    if self._sleep(self.machine.betting_duration, stopping):
                        return
                    self.activate()
                elif phase is Phase.ACTIVE:
                    self.broadcaster.run(self._active_token(stopping))
                else:
                    if self._sleep(self.machine.display_duration, stopping):
                        return
                    self.finish_round()
        except Exception:
            self.logger.exception('[cycle-error] round cycle aborted')
            if stopping is self._stopping:
                self._running = False

    def _run_prices(self, stopping: threading.Event) -> None:
        while not stopping.is_set():
            self._dispatch([price_update(self.prices.refresh())])
            if stopping.wait(self.price_refresh):
                return


def _is_alive(worker) -> bool:
    is_alive = getattr(worker, 'is_alive', None)
    return bool(is_alive()) if is_alive is not None else False


def _spawn_thread(target, *args):
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


def build_round_manager(config, wallets, archive, prices, emitter, clock=None, spawn=None, logger=None) -> RoundManager:
    """Wire the engine from a Flask config mapping."""
    generator = CrashPointGenerator(
        min_point=float(config.get('MIN_CRASH_POINT', 1.01)),
        max_point=float(config.get('MAX_CRASH_POINT', 100.0)),
        house_factor=float(config.get('HOUSE_FACTOR', 0.99)),
    )
    machine_kwargs = {}
    if clock is not None:
        machine_kwargs['clock'] = clock
    machine = RoundStateMachine(
        generator,
        growth_rate=float(config.get('GROWTH_RATE', 0.1)),
        betting_duration=float(config.get('BETTING_DURATION_SEC', 10)),
        display_duration=float(config.get('CRASH_DISPLAY_SEC', 5)),
        **machine_kwargs,
    )
    ledger = BetLedger(
        wallets,
        supported_cryptos=config.get('SUPPORTED_CRYPTOS', ('BTC', 'ETH')),
        min_bet=float(config.get('MIN_BET_USD', 1)),
        max_bet=float(config.get('MAX_BET_USD', 1000)),
    )
    return RoundManager(
        machine,
        ledger,
        PayoutProcessor(wallets),
        prices,
        wallets,
        archive,
        emitter,
        tick_interval=int(config.get('TICK_INTERVAL_MS', 100)) / 1000.0,
        tick_lock_timeout=int(config.get('TICK_LOCK_TIMEOUT_MS', 20)) / 1000.0,
        drain_timeout=float(config.get('DRAIN_TIMEOUT_SEC', 2)),
        price_refresh=float(config.get('PRICE_REFRESH_SEC', 10)),
        heartbeat=float(config.get('TIMER_HEARTBEAT_SEC', 0)),
        spawn=spawn,
        logger=logger,
    )
