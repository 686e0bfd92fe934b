from tripsafety.config import (
    ALERT_RESPONSE_TIMEOUT_SECONDS,
    SPEED_VIOLATION_MIN_EXCESS,
    STRIKE_EXPIRATION_DAYS,
    DetectionPolicy,
    EnforcementPolicy,
    config,
)


class TestPolicyDefaults:
    """Test that policy defaults come from the environment settings."""

    def test_detection_policy_matches_config(self):
        assert DetectionPolicy() == config.detection_policy()
        assert DetectionPolicy().speed_violation_min_excess == SPEED_VIOLATION_MIN_EXCESS
        assert DetectionPolicy().alert_response_timeout_seconds == ALERT_RESPONSE_TIMEOUT_SECONDS

    def test_enforcement_policy_matches_config(self):
        assert EnforcementPolicy() == config.enforcement_policy()
        assert EnforcementPolicy().strike_expiration_days == STRIKE_EXPIRATION_DAYS

    def test_runtime_override_only_changes_the_built_policy(self, monkeypatch):
        monkeypatch.setattr(config, "speed_violation_min_excess", 2.0)
        assert config.detection_policy().speed_violation_min_excess == 2.0
        assert DetectionPolicy().speed_violation_min_excess == SPEED_VIOLATION_MIN_EXCESS
