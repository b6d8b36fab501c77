"""Provably fair crash points (commit/reveal).

A round's seed is committed before the flight by publishing SHA-256(seed) and
revealed at crash. Anyone holding the seed can recompute the crash point:

    random_value = first four bytes of SHA-256(seed) / 0xFFFFFFFF
    crash_point  = min(max(1.01, 0.99 / (1 - random_value)), 100.0)
"""
import hashlib
import hmac
import secrets
from typing import Callable, NamedTuple

SEED_BYTES = 32  # 256 bits of entropy
MAX_UINT32 = 0xFFFFFFFF

DEFAULT_MIN_CRASH_POINT = 1.01
DEFAULT_MAX_CRASH_POINT = 100.0
DEFAULT_HOUSE_FACTOR = 0.99


class CrashRoll(NamedTuple):
    crash_point: float
    seed: bytes
    seed_hash: bytes


def hash_seed(seed: bytes) -> bytes:
    return hashlib.sha256(seed).digest()


def random_value(seed: bytes) -> float:
    return int.from_bytes(hash_seed(seed)[:4], 'big') / MAX_UINT32


def crash_point_from_seed(
    seed: bytes,
    min_point: float = DEFAULT_MIN_CRASH_POINT,
    max_point: float = DEFAULT_MAX_CRASH_POINT,
    house_factor: float = DEFAULT_HOUSE_FACTOR,
) -> float:
    r = random_value(seed)
    # 0xFFFFFFFF / 0xFFFFFFFF == 1.0 would divide by zero; the curve tends to infinity there
    if r >= 1.0:
        return max_point
    point = max(min_point, (1 / (1 - r)) * house_factor)
    return min(point, max_point)


def verify_crash_point(
    seed: bytes,
    seed_hash: bytes,
    crash_point: float,
    min_point: float = DEFAULT_MIN_CRASH_POINT,
    max_point: float = DEFAULT_MAX_CRASH_POINT,
    house_factor: float = DEFAULT_HOUSE_FACTOR,
) -> bool:
    """True when the revealed seed matches its commitment and reproduces the crash point."""
    if not hmac.compare_digest(hash_seed(seed), seed_hash):
        return False
    return crash_point_from_seed(seed, min_point, max_point, house_factor) == crash_point


class CrashPointGenerator:
    def __init__(
        self,
        min_point: float = DEFAULT_MIN_CRASH_POINT,
        max_point: float = DEFAULT_MAX_CRASH_POINT,
        house_factor: float = DEFAULT_HOUSE_FACTOR,
        entropy: Callable[[int], bytes] = secrets.token_bytes,
    ):
        if min_point > max_point:
            raise ValueError(f"min_point {min_point} exceeds max_point {max_point}")
        self.min_point = min_point
        self.max_point = max_point
        self.house_factor = house_factor
        self._entropy = entropy

    def generate(self) -> CrashRoll:
        seed = self._entropy(SEED_BYTES)
        return CrashRoll(
            crash_point=crash_point_from_seed(seed, self.min_point, self.max_point, self.house_factor),
            seed=seed,
            seed_hash=hash_seed(seed),
        )

    def verify(self, seed: bytes, seed_hash: bytes, crash_point: float) -> bool:
        return verify_crash_point(
            seed, seed_hash, crash_point, self.min_point, self.max_point, self.house_factor
        )
