"""Retry policy for outbound vendor HTTP calls.

Kept separate from the HTTP loop so the delay schedule can be tested
without making requests.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from requests.adapters import Retry
from urllib3.exceptions import InvalidHeader

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attempt numbers are zero-based: attempt 0 is the first retry after the
    initial request failed. The initial request plus max_retries retries
    gives at most max_retries + 1 calls.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries

    @staticmethod
    def is_retryable_status(status_code: int) -> bool:
        return status_code == 429 or 500 <= status_code < 600

    def compute_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait before the next attempt.

        A vendor-supplied Retry-After wins over the exponential schedule.
        """
        if retry_after is not None and retry_after >= 0:
            return min(retry_after, self.max_delay)
        return min(self.base_delay * (2 ** attempt), self.max_delay)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds.

    Parsing is urllib3's; dates in the past give 0.
    """
    if not value:
        return None
    try:
        return float(Retry().parse_retry_after(value))
    except InvalidHeader:
        logger.warning(f"Ignoring unparseable Retry-After header: {value!r}")
        return None
