"""
Exponential backoff between item retry attempts.

    delay = min(base * multiplier^(attempt-1), max_delay) * uniform(0.8, 1.2)

Defaults: 3s base, x2, 30s cap → ~3s, 6s, 12s, 24s, 30s ...
Only called between attempts, never before the first.
"""

import logging
import random

from .cancellation import CancellationToken
from .config import RuntimeConfig

logger = logging.getLogger(__name__)

BASE_DELAY = 3.0
MULTIPLIER = 2.0
MAX_DELAY = 30.0
JITTER_LOW = 0.8
JITTER_HIGH = 1.2


def compute_delay(
    attempt: int,
    base: float = BASE_DELAY,
    multiplier: float = MULTIPLIER,
    max_delay: float = MAX_DELAY,
    rng: random.Random = None,
) -> float:
    """Jittered delay in seconds before retry number `attempt` (1-based)."""
    rng = rng or random
    attempt = max(attempt, 1)
    delay = min(base * (multiplier ** (attempt - 1)), max_delay)
    return delay * rng.uniform(JITTER_LOW, JITTER_HIGH)


async def backoff(token: CancellationToken, attempt: int, config: RuntimeConfig) -> float:
    delay = compute_delay(
        attempt,
        base=config.retry_base_delay,
        multiplier=config.retry_multiplier,
        max_delay=config.retry_max_delay,
    )
    logger.info(f"Retry {attempt}: waiting {delay:.1f}s before next attempt")
    await token.sleep(delay)
    return delay
