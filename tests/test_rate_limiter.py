from tablerate.schemas.rating import RatingSubmission
from tablerate.services.fraud import (
    AUTOMATED_CLIENT,
    RAPID_SUBMISSION,
    UNUSUAL_PATTERN,
    FraudDetector,
    FraudPolicy,
)
from tablerate.services.rate_limiter import RateLimiter

from conftest import FakeClock, rating_payload


def make_limiter(clock: FakeClock, **overrides) -> RateLimiter:
    options = {"min_interval_seconds": 2.0, "global_max_per_window": 120}
    options.update(overrides)
    return RateLimiter(clock=clock.time, **options)


def test_fourth_attempt_in_window_blocks_identity():
    clock = FakeClock()
    limiter = make_limiter(clock)

    for _ in range(3):
        assert limiter.check("user-a").allowed
        clock.advance(5)

    decision = limiter.check("user-a")
    assert not decision.allowed
    assert decision.scope == "identity"
    assert decision.retry_after == 300

    # still blocked after the window itself has rolled over
    clock.advance(120)
    assert not limiter.check("user-a").allowed
    clock.advance(181)
    assert limiter.check("user-a").allowed


def test_window_slides():
    clock = FakeClock()
    limiter = make_limiter(clock)

    for _ in range(3):
        assert limiter.check("user-a").allowed
        clock.advance(10)

    clock.advance(40)  # the first hit is now older than 60s
    assert limiter.check("user-a").allowed


def test_minimum_interval_applies_below_threshold():
    clock = FakeClock()
    limiter = make_limiter(clock)

    assert limiter.check("user-a").allowed
    clock.advance(1)
    decision = limiter.check("user-a")

    assert not decision.allowed
    assert decision.scope == "interval"
    clock.advance(1.5)
    assert limiter.check("user-a").allowed


def test_identities_are_independent():
    clock = FakeClock()
    limiter = make_limiter(clock)

    assert limiter.check("user-a").allowed
    assert limiter.check("user-b").allowed


def test_global_window_blocks_everyone():
    clock = FakeClock()
    limiter = make_limiter(clock, global_max_per_window=2, global_block_seconds=60)

    assert limiter.check("user-a").allowed
    assert limiter.check("user-b").allowed
    decision = limiter.check("user-c")

    assert not decision.allowed
    assert decision.scope == "global"
    assert not limiter.check("user-d").allowed
    clock.advance(61)
    assert limiter.check("user-d").allowed


def test_dry_run_leaves_no_trace():
    clock = FakeClock()
    limiter = make_limiter(clock)

    for _ in range(5):
        assert limiter.check("user-a", record=False).allowed
    assert limiter.status("user-a")["user"]["count"] == 0


def test_refund_restores_budget():
    clock = FakeClock()
    limiter = make_limiter(clock)

    decision = limiter.check("user-a")
    limiter.refund("user-a", decision)

    assert limiter.status("user-a")["user"]["count"] == 0
    assert limiter.check("user-a").allowed


def test_reset_clears_blocks():
    clock = FakeClock()
    limiter = make_limiter(clock, min_interval_seconds=0)
    for _ in range(4):
        limiter.check("user-a")
    assert limiter.status("user-a")["user"]["blocked"]

    limiter.reset("user-a")
    assert limiter.check("user-a").allowed


# ---------------------------------------------------------------------------
# Fraud heuristics
# ---------------------------------------------------------------------------


def submission(**overrides) -> RatingSubmission:
    return RatingSubmission.model_validate(rating_payload(**overrides))


def test_all_five_criteria_at_five_is_unusual():
    detector = FraudDetector()
    finding = detector.inspect(
        submission(rating=5, quality=5, taste=5, price_rating=5, ambiance=5, service=5)
    )

    assert finding is not None
    assert finding.detection_type == UNUSUAL_PATTERN


def test_three_criteria_all_at_one_is_unusual():
    finding = FraudDetector().inspect(submission(rating=1, quality=1, taste=1, service=1))
    assert finding.detection_type == UNUSUAL_PATTERN


def test_two_uniform_criteria_are_fine():
    finding = FraudDetector().inspect(submission(rating=5, quality=5, taste=5, service=None))
    assert finding is None


def test_excellent_quality_with_worst_price_and_service():
    finding = FraudDetector().inspect(submission(rating=3, quality=5, taste=3, price_rating=1, service=1))
    assert finding.detection_type == UNUSUAL_PATTERN


def test_automation_markers():
    detector = FraudDetector()
    headless = submission(client={"user_agent": "Mozilla/5.0 HeadlessChrome/120.0"})
    flagged = submission(client={"user_agent": "Mozilla/5.0", "webdriver": True})

    assert detector.inspect(headless).detection_type == AUTOMATED_CLIENT
    assert detector.inspect(flagged).detection_type == AUTOMATED_CLIENT


def test_cadence_relative_to_previous_accepted_submission():
    clock = FakeClock()
    detector = FraudDetector(FraudPolicy(min_cadence_seconds=2), clock=clock.time)

    assert detector.inspect(submission()) is None
    clock.advance(1)
    assert detector.inspect(submission()).detection_type == RAPID_SUBMISSION
    assert detector.inspect(submission(), check_cadence=False) is None
    clock.advance(2)
    assert detector.inspect(submission()) is None


def test_idle_windows_are_pruned_periodically():
    clock = FakeClock()
    limiter = make_limiter(clock, global_max_per_window=100_000)

    for index in range(10_000):
        assert limiter.check(f"user-{index:06d}").allowed
    assert limiter.size == 10_001

    clock.advance(24 * 3600)
    assert limiter.check("user-late").allowed

    # the newcomer and the shared window
    assert limiter.size == 2


def test_cleanup_keeps_windows_that_still_constrain():
    clock = FakeClock()
    limiter = make_limiter(clock)
    for _ in range(3):
        limiter.check("user-a")
        clock.advance(5)
    assert not limiter.check("user-a").allowed
    limiter.check("user-b")

    clock.advance(90)

    assert limiter.cleanup() == 2
    assert not limiter.check("user-a").allowed
    assert limiter.status("user-a")["user"]["blocked"] is True


def test_status_does_not_create_windows():
    clock = FakeClock()
    limiter = make_limiter(clock)
    limiter.check("user-a")

    status = limiter.status("user-unknown")

    assert status["user"]["count"] == 0
    assert status["global"]["count"] == 1
    assert limiter.size == 2


def test_stale_cadence_stamps_are_pruned():
    clock = FakeClock()
    detector = FraudDetector(FraudPolicy(min_cadence_seconds=2), clock=clock.time)

    for index in range(100):
        assert detector.inspect(submission(user_id=f"user-{index:012d}")) is None
    assert detector.size == 100

    clock.advance(3600)
    assert detector.inspect(submission()) is None

    assert detector.size == 1
