"""
Time-ordered message identifiers.

ULIDs are 26 characters of Crockford base32: a 48-bit millisecond timestamp
followed by 80 random bits. Lexicographic order of ids matches creation order,
which is what keeps cached message lists sorted.
"""

import os
import threading
import time
from typing import Callable, Optional

CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
TIME_LENGTH = 10
RANDOM_LENGTH = 16
RANDOM_BITS = 80
MAX_TIMESTAMP = (1 << 48) - 1


def _encode(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        chars.append(CROCKFORD_ALPHABET[value & 31])
        value >>= 5
    return "".join(reversed(chars))


class ULIDGenerator:
    """
    Generator of monotonic ULIDs.

    Within one millisecond the random part is incremented instead of redrawn,
    so ids generated by the same instance are strictly increasing.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        random_bytes: Callable[[int], bytes] = os.urandom
    ):
        self._clock = clock
        self._random_bytes = random_bytes
        self._lock = threading.Lock()
        self._last_timestamp = -1
        self._last_random = 0

    def generate(self, timestamp: Optional[int] = None) -> str:
        """
        Generate a new id.

        Args:
            timestamp: Milliseconds since the epoch, now when None

        Returns:
            26-character ULID string
        """
        if timestamp is None:
            timestamp = int(self._clock() * 1000)
        if not 0 <= timestamp <= MAX_TIMESTAMP:
            raise ValueError(f"ULID timestamp out of range: {timestamp}")

        with self._lock:
            if timestamp <= self._last_timestamp:
                timestamp = self._last_timestamp
                randomness = self._last_random + 1
                if randomness >= (1 << RANDOM_BITS):
                    # Random part exhausted within this millisecond
                    timestamp += 1
                    randomness = int.from_bytes(self._random_bytes(10), "big")
            else:
                randomness = int.from_bytes(self._random_bytes(10), "big")

            self._last_timestamp = timestamp
            self._last_random = randomness

        return _encode(timestamp, TIME_LENGTH) + _encode(randomness, RANDOM_LENGTH)

    @staticmethod
    def timestamp_of(ulid: str) -> int:
        """Millisecond timestamp encoded in ``ulid``."""
        if len(ulid) != TIME_LENGTH + RANDOM_LENGTH:
            raise ValueError(f"Invalid ULID length: {ulid!r}")
        value = 0
        for char in ulid[:TIME_LENGTH].upper():
            index = CROCKFORD_ALPHABET.find(char)
            if index < 0:
                raise ValueError(f"Invalid ULID character {char!r} in {ulid!r}")
            value = value * 32 + index
        return value

    @staticmethod
    def is_valid(value: str) -> bool:
        if not isinstance(value, str) or len(value) != TIME_LENGTH + RANDOM_LENGTH:
            return False
        return all(char in CROCKFORD_ALPHABET for char in value.upper())


_generator = ULIDGenerator()


def generate_ulid() -> str:
    """Generate an id from the module-level generator."""
    return _generator.generate()
