"""
YouTube API quota tracking.

The Data API v3 grants a daily budget of 10,000 units by default and the
search endpoint alone costs 100 units per page, so a single ingestion run
over a few large channels can exhaust it. This module counts units per
operation, warns near the limit, and refuses calls past the abort threshold.

When a database connection is given, usage is persisted in the
quota_usage table so several runs on the same day share one budget.
"""

import threading
from datetime import datetime, date
from typing import Optional

from config import get_config
from database import get_quota_usage, save_quota_usage
from logger import get_logger

log = get_logger("quota")


class QuotaExhaustedError(Exception):
    """Raised when API quota is exhausted or insufficient for operation."""
    pass


class QuotaTracker:
    """
    Track YouTube API quota usage across runs.

    - Thread-safe counters
    - Auto-checkpoint every N quota units for crash safety
    - Explicit flush() at the end of a run
    """

    # API operation costs (units)
    # See: https://developers.google.com/youtube/v3/determine_quota_cost
    COSTS = {
        'search.list': 100,
        'videos.list': 1,
        'commentThreads.list': 1,
    }

    def __init__(
        self,
        conn=None,
        daily_limit: int = None,
        warn_threshold: float = None,
        abort_threshold: float = None,
        checkpoint_threshold: int = None,
    ):
        """
        Args:
            conn: Database connection used to persist usage (optional)
            daily_limit: Daily quota limit (default: from config or 10000)
            warn_threshold: Fraction of quota at which to warn (default: from config or 0.8)
            abort_threshold: Fraction of quota at which to abort (default: from config or 0.95)
            checkpoint_threshold: Save state every N units spent (default: from config or 500)
        """
        cfg = get_config()
        self.conn = conn
        self.daily_limit = daily_limit if daily_limit is not None else cfg.quota_limit
        self.warn_threshold = warn_threshold if warn_threshold is not None else cfg.quota_warn_threshold
        self.abort_threshold = abort_threshold if abort_threshold is not None else cfg.quota_abort_threshold
        self._checkpoint_threshold = (
            checkpoint_threshold if checkpoint_threshold is not None else cfg.quota_checkpoint_threshold
        )

        self.today = date.today().isoformat()
        self.used = 0
        self.operations = {}
        self.session_used = 0
        self.session_start = datetime.now()

        self._lock = threading.Lock()
        self._dirty = False
        self._since_checkpoint = 0

        self._load_state()

        log.info(f"Quota tracker initialized: limit={self.daily_limit}, used_today={self.used}")
        log.debug(f"Thresholds: warn={self.warn_threshold}, abort={self.abort_threshold}, "
                  f"checkpoint={self._checkpoint_threshold}")

    def _load_state(self):
        if self.conn is None:
            return
        state = get_quota_usage(self.conn, self.today)
        if state:
            self.used = state['used'] or 0
            self.operations = state['operations']
            log.info(f"Resumed from previous runs: {self.used} units already used today")
        else:
            log.debug(f"No quota state for {self.today}, starting fresh")

    def _save_state(self):
        if self.conn is None:
            return
        with self._lock:
            used = self.used
            operations = self.operations.copy()
        save_quota_usage(self.conn, self.today, used, operations)
        log.debug(f"Saved quota state to database: {used} used")

    def reset(self):
        """Reset quota counter to 0. Use if quota tracking was corrupted."""
        with self._lock:
            self.used = 0
            self.session_used = 0
            self.operations = {}
            self._dirty = True
            self._since_checkpoint = 0
        self.flush()
        log.info(f"Quota reset to 0 for {self.today}")

    def cost_of(self, operation: str, count: int = 1) -> int:
        return self.COSTS.get(operation, 1) * count

    def use(self, operation: str, count: int = 1) -> int:
        """
        Record quota usage for an operation.

        Args:
            operation: API operation name (e.g., 'videos.list')
            count: Number of API calls made

        Returns:
            Cost in quota units
        """
        cost = self.cost_of(operation, count)

        with self._lock:
            self.used += cost
            self.session_used += cost
            self.operations[operation] = self.operations.get(operation, 0) + cost
            self._since_checkpoint += cost
            self._dirty = True
            current_used = self.used
            should_checkpoint = self._since_checkpoint >= self._checkpoint_threshold

        log.debug(f"Quota: +{cost} for {operation} x{count} (total: {current_used}/{self.daily_limit})")

        if should_checkpoint:
            self.flush()

        self._check_thresholds()
        return cost

    def flush(self):
        """Save quota state now if anything changed since the last save."""
        with self._lock:
            if not self._dirty:
                return
            self._dirty = False
            self._since_checkpoint = 0
        self._save_state()

    def _check_thresholds(self):
        usage_fraction = self.used_fraction()

        if usage_fraction >= self.abort_threshold:
            log.error(f"QUOTA CRITICAL: {self.used}/{self.daily_limit} ({usage_fraction:.1%})")
        elif usage_fraction >= self.warn_threshold:
            log.warning(f"QUOTA WARNING: {self.used}/{self.daily_limit} ({usage_fraction:.1%})")

    def remaining(self) -> int:
        """Get remaining quota units."""
        with self._lock:
            return max(0, self.daily_limit - self.used)

    def used_fraction(self) -> float:
        with self._lock:
            return self.used / self.daily_limit if self.daily_limit else 1.0

    def can_afford(self, operation: str, count: int = 1) -> bool:
        """Check if an operation stays under the abort threshold."""
        cost = self.cost_of(operation, count)
        with self._lock:
            projected = self.used + cost
        return projected <= (self.daily_limit * self.abort_threshold)

    def check_or_abort(self, operation: str, count: int = 1):
        """
        Raise if the operation would cross the abort threshold.

        Raises:
            QuotaExhaustedError: If insufficient quota
        """
        if not self.can_afford(operation, count):
            raise QuotaExhaustedError(
                f"Insufficient quota for {operation}: need {self.cost_of(operation, count)}, "
                f"have {self.remaining()} (abort threshold {self.abort_threshold:.0%})"
            )

    def get_summary(self) -> dict:
        """Get summary of quota usage for logging/reporting."""
        return {
            'date': self.today,
            'used': self.used,
            'remaining': self.remaining(),
            'limit': self.daily_limit,
            'used_fraction': self.used_fraction(),
            'session_used': self.session_used,
            'session_duration': str(datetime.now() - self.session_start),
            'by_operation': self.operations.copy()
        }

    def log_summary(self):
        summary = self.get_summary()
        log.info(f"Quota summary: {summary['used']}/{summary['limit']} "
                 f"({summary['used_fraction']:.1%}), session: {summary['session_used']}")
        for op, cost in sorted(summary['by_operation'].items(), key=lambda x: -x[1]):
            log.debug(f"  {op}: {cost} units")
