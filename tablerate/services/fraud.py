"""Heuristic fraud checks run by the validation gate."""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..schemas.rating import RatingSubmission

logger = logging.getLogger(__name__)

AUTOMATED_CLIENT = "suspicious_user_agent"
RAPID_SUBMISSION = "rapid_submission"
UNUSUAL_PATTERN = "unusual_pattern"

DEFAULT_AUTOMATION_PATTERNS = (
    "bot",
    "crawler",
    "spider",
    "scraper",
    "automated",
    "headless",
    "phantom",
    "selenium",
    "webdriver",
)


@dataclass
class FraudPolicy:
    automation_patterns: tuple[str, ...] = DEFAULT_AUTOMATION_PATTERNS
    min_cadence_seconds: float = 2.0
    uniform_min_criteria: int = 3
    uniform_extremes: tuple[float, ...] = (1.0, 5.0)
    # sub-score combinations no genuine diner reports
    incoherent_combinations: list[dict[str, float]] = field(
        default_factory=lambda: [{"quality": 5, "price_rating": 1, "service": 1}]
    )

    @classmethod
    def from_settings(cls, settings) -> "FraudPolicy":
        return cls(
            automation_patterns=tuple(settings.FRAUD_AUTOMATION_PATTERNS),
            min_cadence_seconds=settings.FRAUD_MIN_CADENCE_SECONDS,
            uniform_min_criteria=settings.FRAUD_UNIFORM_MIN_CRITERIA,
        )


@dataclass
class FraudFinding:
    detection_type: str
    reason: str


class FraudDetector:
    def __init__(
        self,
        policy: Optional[FraudPolicy] = None,
        clock: Callable[[], float] = time.time,
        cleanup_interval: float = 3600.0,
    ):
        self.policy = policy or FraudPolicy()
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._last_cleanup = clock()
        self._patterns = [re.compile(re.escape(p), re.IGNORECASE) for p in self.policy.automation_patterns]
        self._last_seen: dict[str, float] = {}

    def inspect(self, submission: RatingSubmission, check_cadence: bool = True) -> Optional[FraudFinding]:
        """Return the first heuristic the submission trips, or ``None``.

        A clean submission with ``check_cadence`` set also stamps the
        identity's last-seen time used by the cadence check.
        """
        client = submission.client
        if client.webdriver:
            return FraudFinding(AUTOMATED_CLIENT, "Automated access detected. Use a regular browser.")
        for pattern in self._patterns:
            if pattern.search(client.user_agent or ""):
                logger.warning("Automation marker %r in user agent %r", pattern.pattern, client.user_agent)
                return FraudFinding(AUTOMATED_CLIENT, "Automated access detected. Use a regular browser.")

        now = self._clock()
        if now - self._last_cleanup >= self.cleanup_interval:
            self.cleanup(now)
        if check_cadence:
            last = self._last_seen.get(submission.user_id)
            if last is not None and now - last < self.policy.min_cadence_seconds:
                return FraudFinding(RAPID_SUBMISSION, "Submission too fast. Please wait.")

        if self.unusual_pattern(submission):
            return FraudFinding(UNUSUAL_PATTERN, "Unusual rating pattern detected.")

        if check_cadence:
            self._last_seen[submission.user_id] = now
        return None

    def unusual_pattern(self, submission: RatingSubmission) -> bool:
        scores = list(submission.sub_scores().values())
        if len(scores) >= self.policy.uniform_min_criteria and len(set(scores)) == 1:
            if scores[0] in self.policy.uniform_extremes:
                return True

        for combination in self.policy.incoherent_combinations:
            if all(getattr(submission, name) == value for name, value in combination.items()):
                return True
        return False

    def cleanup(self, now: Optional[float] = None) -> int:
        """Forget cadence stamps too old to trip the cadence check."""
        now = self._clock() if now is None else now
        horizon = now - self.policy.min_cadence_seconds
        stale = [user_id for user_id, seen in self._last_seen.items() if seen <= horizon]
        for user_id in stale:
            del self._last_seen[user_id]
        self._last_cleanup = now
        return len(stale)

    @property
    def size(self) -> int:
        return len(self._last_seen)

    def forget(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._last_seen.clear()
        else:
            self._last_seen.pop(user_id, None)
