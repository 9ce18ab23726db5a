"""
Validation gate every rating passes before it is written.

Stages run in order and the gate stops at the first one that fails:

1. schema      parse into ``RatingSubmission``, ranges, overall/sub-score consistency
2. rate_limit  per-identity and global sliding windows
3. duplicate   cooldown per (identity, restaurant); older ratings become updates
4. fraud       automation markers, cadence, implausible score patterns
5. business    timestamp bounds and comment spam screens (all violations reported)
"""

import asyncio
import logging
import math
import re
from datetime import datetime, timedelta
from statistics import fmean
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .fraud import FraudDetector
from .rate_limiter import RateLimitDecision, RateLimiter
from .retry import with_retry
from ..errors import TransientInfrastructureError
from ..schemas.rating import RatingSubmission
from ..schemas.validation import ValidationResult
from ..storage.base import RatingStore
from ..utils.clock import utcnow
from ..utils.logging import SecurityEventLog, sanitize_submission

logger = logging.getLogger(__name__)

SPAM_PATTERNS = (
    re.compile(r"(.)\1{5,}"),
    re.compile(r"^[A-Z\s]+$"),
    re.compile(r"(?:http|www)\S+", re.IGNORECASE),
)

GENERIC_FAILURE = "An internal error occurred while validating the rating"


class ValidationGate:
    def __init__(
        self,
        store: RatingStore,
        rate_limiter: RateLimiter,
        fraud: FraudDetector,
        events: SecurityEventLog,
        consistency_tolerance: float = 2.0,
        cooldown: timedelta = timedelta(hours=24),
        max_clock_skew: timedelta = timedelta(seconds=60),
        max_age: timedelta = timedelta(days=30),
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        now: Callable[[], datetime] = utcnow,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.fraud = fraud
        self.events = events
        self.consistency_tolerance = consistency_tolerance
        self.cooldown = cooldown
        self.max_clock_skew = max_clock_skew
        self.max_age = max_age
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._now = now
        self._sleep = sleep

    async def validate(
        self,
        payload: Union[RatingSubmission, dict[str, Any]],
        *,
        replay: bool = False,
        dry_run: bool = False,
    ) -> ValidationResult:
        """Run the gate.

        ``replay`` is used for queued offline writes: rate limiting and the
        cadence heuristic are skipped and a rating already carrying the same
        ``client_ref`` counts as applied. ``dry_run`` evaluates without
        consuming rate-limit budget.
        """
        raw = payload.model_dump(mode="json") if isinstance(payload, RatingSubmission) else dict(payload or {})
        decision: Optional[RateLimitDecision] = None
        try:
            submission, reasons = self.check_schema(payload)
            if reasons:
                return await self._reject("schema", reasons, raw)

            if not replay:
                decision = self.rate_limiter.check(submission.user_id, record=not dry_run)
                if not decision.allowed:
                    return await self._reject("rate_limit", [decision.reason], raw, submission)

            result = await self._check_duplicates(submission, replay)
            if not result.accepted:
                return await self._reject("duplicate", result.reasons, raw, submission)

            finding = self.fraud.inspect(submission, check_cadence=not (replay or dry_run))
            if finding is not None:
                return await self._reject(
                    "fraud", [finding.reason], raw, submission, detection_type=finding.detection_type
                )

            reasons = self._check_business_rules(submission)
            if reasons:
                return await self._reject("business", reasons, raw, submission)

        except TransientInfrastructureError:
            if decision is not None:
                self.rate_limiter.refund(submission.user_id, decision)
            raise
        except Exception as exc:
            logger.exception("Unexpected error during rating validation")
            await self.events.record(
                "validation_error",
                user_id=raw.get("user_id"),
                restaurant_id=raw.get("restaurant_id"),
                reasons=[GENERIC_FAILURE],
                details={"error": str(exc), "rating": sanitize_submission(raw)},
            )
            return ValidationResult(accepted=False, reasons=[GENERIC_FAILURE], stage="internal")

        if not dry_run:
            self.events.note_accepted(submission.user_id, submission.restaurant_id)
        return result.model_copy(update={"submission": submission})

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def check_schema(self, payload) -> tuple[Optional[RatingSubmission], list[str]]:
        if isinstance(payload, RatingSubmission):
            submission = payload
        else:
            try:
                submission = RatingSubmission.model_validate(payload)
            except PydanticValidationError as exc:
                return None, [_describe(error) for error in exc.errors()]

        sub_scores = list(submission.sub_scores().values())
        if sub_scores and abs(submission.rating - fmean(sub_scores)) > self.consistency_tolerance:
            return submission, ["Overall rating must be consistent with the detailed scores"]
        return submission, []

    async def _check_duplicates(self, submission: RatingSubmission, replay: bool) -> ValidationResult:
        existing = await with_retry(
            lambda: self.store.query_ratings(
                submission.restaurant_id, user_id=submission.user_id, visible_only=False
            ),
            attempts=self.retry_attempts,
            delay=self.retry_delay,
            sleep=self._sleep,
        )
        if not existing:
            return ValidationResult(accepted=True)

        if replay and submission.client_ref:
            for rating in existing:
                if rating.client_ref == submission.client_ref:
                    return ValidationResult(accepted=True, is_update=True, existing_rating_id=rating.id)

        latest = existing[0]
        elapsed = self._now() - latest.created_at
        if elapsed < self.cooldown:
            hours = math.ceil((self.cooldown - elapsed).total_seconds() / 3600)
            return ValidationResult(
                accepted=False,
                reasons=[f"You already rated this restaurant. Wait {hours} hours to submit a new rating."],
                existing_rating_id=latest.id,
            )
        return ValidationResult(accepted=True, is_update=True, existing_rating_id=latest.id)

    def _check_business_rules(self, submission: RatingSubmission) -> list[str]:
        reasons = []
        now = self._now()
        submitted_at = submission.submitted_at or now
        if submitted_at > now + self.max_clock_skew:
            reasons.append("Rating date cannot be in the future")
        if submitted_at < now - self.max_age:
            reasons.append(f"Rating date is too old (more than {self.max_age.days} days)")

        if submission.comment:
            for pattern in SPAM_PATTERNS:
                if pattern.search(submission.comment):
                    reasons.append("Comment contains suspicious patterns")
                    break
        return reasons

    async def _reject(
        self,
        stage: str,
        reasons: list[str],
        raw: dict[str, Any],
        submission: Optional[RatingSubmission] = None,
        detection_type: Optional[str] = None,
    ) -> ValidationResult:
        await self.events.record(
            detection_type or f"{stage}_rejected",
            user_id=submission.user_id if submission else raw.get("user_id"),
            restaurant_id=submission.restaurant_id if submission else raw.get("restaurant_id"),
            reasons=reasons,
            details={"stage": stage, "rating": sanitize_submission(raw)},
        )
        return ValidationResult(
            accepted=False,
            reasons=reasons,
            stage=stage,
            detection_type=detection_type,
            submission=submission,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def rate_limit_status(self, user_id: str) -> dict[str, Any]:
        return self.rate_limiter.status(user_id)

    def clear_rate_limits(self, user_id: Optional[str] = None) -> None:
        self.rate_limiter.reset(user_id)
        self.fraud.forget(user_id)

    def security_events(self, limit: int = 50) -> list[dict]:
        return self.events.recent(limit)

    def validation_stats(self) -> dict[str, Any]:
        return self.events.stats()


def _describe(error: dict) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "rating"
    return f"{location}: {error.get('msg', 'invalid value')}"
