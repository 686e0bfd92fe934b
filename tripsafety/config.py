import os
import logging
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tripsafety.db")

# Replay configuration
EMIT_INTERVAL_SECONDS = float(os.getenv("EMIT_INTERVAL_SECONDS", "1.0"))

# Geometry: "haversine" treats points as (lat, lon) and measures metres,
# "planar" measures straight-line distance in the coordinates' own units.
DISTANCE_METRIC = os.getenv("DISTANCE_METRIC", "haversine").lower()

# Speed monitoring thresholds (units over the posted limit)
SPEED_WARNING_MARGIN = float(os.getenv("SPEED_WARNING_MARGIN", "3"))
SPEED_DANGER_MARGIN = float(os.getenv("SPEED_DANGER_MARGIN", "6"))
SPEED_MIN_EPISODE_SECONDS = float(os.getenv("SPEED_MIN_EPISODE_SECONDS", "10"))
SPEED_DEBOUNCE_SECONDS = float(os.getenv("SPEED_DEBOUNCE_SECONDS", "5"))
# Excess below this never counts toward a speed violation episode
SPEED_VIOLATION_MIN_EXCESS = float(os.getenv("SPEED_VIOLATION_MIN_EXCESS", "5"))
SEVERITY_MODERATE_EXCESS = float(os.getenv("SEVERITY_MODERATE_EXCESS", "10"))
SEVERITY_SEVERE_EXCESS = float(os.getenv("SEVERITY_SEVERE_EXCESS", "20"))

# Route deviation thresholds
ROUTE_DEVIATION_THRESHOLD = float(os.getenv("ROUTE_DEVIATION_THRESHOLD", "100"))
ROUTE_RECALC_COOLDOWN_SECONDS = float(os.getenv("ROUTE_RECALC_COOLDOWN_SECONDS", "10"))
ROUTE_ALERT_DELAY_SECONDS = float(os.getenv("ROUTE_ALERT_DELAY_SECONDS", "30"))
ROUTE_REALERT_COOLDOWN_SECONDS = float(os.getenv("ROUTE_REALERT_COOLDOWN_SECONDS", "120"))
ALERT_RESPONSE_TIMEOUT_SECONDS = float(os.getenv("ALERT_RESPONSE_TIMEOUT_SECONDS", "60"))

# Early completion (0.3 miles in metres)
EARLY_COMPLETION_TOLERANCE = float(os.getenv("EARLY_COMPLETION_TOLERANCE", "482.803"))

# Posted limit assumed when the lookup has nothing for a coordinate (empty = unknown)
DEFAULT_SPEED_LIMIT = float(os.getenv("DEFAULT_SPEED_LIMIT")) if os.getenv("DEFAULT_SPEED_LIMIT") else None

# Strike & suspension policy
STRIKE_EXPIRATION_DAYS = int(os.getenv("STRIKE_EXPIRATION_DAYS", "90"))
TEMP_SUSPENSION_STRIKES = int(os.getenv("TEMP_SUSPENSION_STRIKES", "2"))
PERM_SUSPENSION_STRIKES = int(os.getenv("PERM_SUSPENSION_STRIKES", "3"))
TEMP_SUSPENSION_DAYS = int(os.getenv("TEMP_SUSPENSION_DAYS", "7"))
SUSPENSION_ACK_REQUIRED = os.getenv("SUSPENSION_ACK_REQUIRED", "true").lower() == "true"
STRIKE_MIN_SEVERITY = os.getenv("STRIKE_MIN_SEVERITY", "medium").lower()
APPEAL_WINDOW_DAYS = int(os.getenv("APPEAL_WINDOW_DAYS", "7"))

# Payment disputes
DISPUTE_WINDOW_HOURS = float(os.getenv("DISPUTE_WINDOW_HOURS", "24"))
DISPUTE_REVIEW_DEADLINE_HOURS = float(os.getenv("DISPUTE_REVIEW_DEADLINE_HOURS", "48"))

# Trip channels & persistence retries
TRIP_QUEUE_MAXSIZE = int(os.getenv("TRIP_QUEUE_MAXSIZE", "64"))
PERSIST_RETRY_ATTEMPTS = int(os.getenv("PERSIST_RETRY_ATTEMPTS", "3"))
PERSIST_RETRY_BASE_SECONDS = float(os.getenv("PERSIST_RETRY_BASE_SECONDS", "0.05"))

# API configuration
API_DEFAULT_LIMIT = int(os.getenv("API_DEFAULT_LIMIT", "100"))
API_MAX_LIMIT = int(os.getenv("API_MAX_LIMIT", "1000"))

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
LOG_FILE = os.getenv("LOG_FILE", "")

# Development configuration
DEBUG = os.getenv("DEBUG", "false").lower() == "true"


@dataclass(frozen=True)
class DetectionPolicy:
    """Thresholds consumed by the per-trip detectors."""
    distance_metric: str = DISTANCE_METRIC
    speed_warning_margin: float = SPEED_WARNING_MARGIN
    speed_danger_margin: float = SPEED_DANGER_MARGIN
    speed_min_episode_seconds: float = SPEED_MIN_EPISODE_SECONDS
    speed_debounce_seconds: float = SPEED_DEBOUNCE_SECONDS
    speed_violation_min_excess: float = SPEED_VIOLATION_MIN_EXCESS
    severity_moderate_excess: float = SEVERITY_MODERATE_EXCESS
    severity_severe_excess: float = SEVERITY_SEVERE_EXCESS
    route_deviation_threshold: float = ROUTE_DEVIATION_THRESHOLD
    route_recalc_cooldown_seconds: float = ROUTE_RECALC_COOLDOWN_SECONDS
    route_alert_delay_seconds: float = ROUTE_ALERT_DELAY_SECONDS
    route_realert_cooldown_seconds: float = ROUTE_REALERT_COOLDOWN_SECONDS
    alert_response_timeout_seconds: float = ALERT_RESPONSE_TIMEOUT_SECONDS
    early_completion_tolerance: float = EARLY_COMPLETION_TOLERANCE


@dataclass(frozen=True)
class EnforcementPolicy:
    """Strike, suspension, appeal and dispute policy constants."""
    strike_expiration_days: int = STRIKE_EXPIRATION_DAYS
    temp_suspension_strikes: int = TEMP_SUSPENSION_STRIKES
    perm_suspension_strikes: int = PERM_SUSPENSION_STRIKES
    temp_suspension_days: int = TEMP_SUSPENSION_DAYS
    suspension_ack_required: bool = SUSPENSION_ACK_REQUIRED
    strike_min_severity: str = STRIKE_MIN_SEVERITY
    appeal_window_days: int = APPEAL_WINDOW_DAYS
    dispute_window_hours: float = DISPUTE_WINDOW_HOURS
    dispute_review_deadline_hours: float = DISPUTE_REVIEW_DEADLINE_HOURS


class Config:
    """Configuration class with runtime overrides."""

    def __init__(self):
        self.database_url = DATABASE_URL
        self.emit_interval_seconds = EMIT_INTERVAL_SECONDS

        # Detection thresholds
        self.distance_metric = DISTANCE_METRIC
        self.speed_warning_margin = SPEED_WARNING_MARGIN
        self.speed_danger_margin = SPEED_DANGER_MARGIN
        self.speed_min_episode_seconds = SPEED_MIN_EPISODE_SECONDS
        self.speed_debounce_seconds = SPEED_DEBOUNCE_SECONDS
        self.speed_violation_min_excess = SPEED_VIOLATION_MIN_EXCESS
        self.severity_moderate_excess = SEVERITY_MODERATE_EXCESS
        self.severity_severe_excess = SEVERITY_SEVERE_EXCESS
        self.route_deviation_threshold = ROUTE_DEVIATION_THRESHOLD
        self.route_recalc_cooldown_seconds = ROUTE_RECALC_COOLDOWN_SECONDS
        self.route_alert_delay_seconds = ROUTE_ALERT_DELAY_SECONDS
        self.route_realert_cooldown_seconds = ROUTE_REALERT_COOLDOWN_SECONDS
        self.alert_response_timeout_seconds = ALERT_RESPONSE_TIMEOUT_SECONDS
        self.early_completion_tolerance = EARLY_COMPLETION_TOLERANCE
        self.default_speed_limit = DEFAULT_SPEED_LIMIT

        # Enforcement policy
        self.strike_expiration_days = STRIKE_EXPIRATION_DAYS
        self.temp_suspension_strikes = TEMP_SUSPENSION_STRIKES
        self.perm_suspension_strikes = PERM_SUSPENSION_STRIKES
        self.temp_suspension_days = TEMP_SUSPENSION_DAYS
        self.suspension_ack_required = SUSPENSION_ACK_REQUIRED
        self.strike_min_severity = STRIKE_MIN_SEVERITY
        self.appeal_window_days = APPEAL_WINDOW_DAYS
        self.dispute_window_hours = DISPUTE_WINDOW_HOURS
        self.dispute_review_deadline_hours = DISPUTE_REVIEW_DEADLINE_HOURS

        # Channels & retries
        self.trip_queue_maxsize = TRIP_QUEUE_MAXSIZE
        self.persist_retry_attempts = PERSIST_RETRY_ATTEMPTS
        self.persist_retry_base_seconds = PERSIST_RETRY_BASE_SECONDS

        # API settings
        self.api_default_limit = API_DEFAULT_LIMIT
        self.api_max_limit = API_MAX_LIMIT

        # Logging
        self.log_level = LOG_LEVEL
        self.log_format = LOG_FORMAT
        self.log_file = LOG_FILE

        # Development
        self.debug = DEBUG

    def update_detection_thresholds(self,
                                    speed_danger_margin: Optional[float] = None,
                                    speed_min_episode_seconds: Optional[float] = None,
                                    route_deviation_threshold: Optional[float] = None,
                                    route_alert_delay_seconds: Optional[float] = None,
                                    route_realert_cooldown_seconds: Optional[float] = None,
                                    early_completion_tolerance: Optional[float] = None):
        """Update detection thresholds at runtime."""
        if speed_danger_margin is not None:
            self.speed_danger_margin = speed_danger_margin
        if speed_min_episode_seconds is not None:
            self.speed_min_episode_seconds = speed_min_episode_seconds
        if route_deviation_threshold is not None:
            self.route_deviation_threshold = route_deviation_threshold
        if route_alert_delay_seconds is not None:
            self.route_alert_delay_seconds = route_alert_delay_seconds
        if route_realert_cooldown_seconds is not None:
            self.route_realert_cooldown_seconds = route_realert_cooldown_seconds
        if early_completion_tolerance is not None:
            self.early_completion_tolerance = early_completion_tolerance

    def update_enforcement_policy(self,
                                  strike_expiration_days: Optional[int] = None,
                                  temp_suspension_strikes: Optional[int] = None,
                                  perm_suspension_strikes: Optional[int] = None,
                                  temp_suspension_days: Optional[int] = None):
        """Update strike and suspension policy at runtime."""
        if strike_expiration_days is not None:
            self.strike_expiration_days = strike_expiration_days
        if temp_suspension_strikes is not None:
            self.temp_suspension_strikes = temp_suspension_strikes
        if perm_suspension_strikes is not None:
            self.perm_suspension_strikes = perm_suspension_strikes
        if temp_suspension_days is not None:
            self.temp_suspension_days = temp_suspension_days

    def detection_policy(self) -> DetectionPolicy:
        return DetectionPolicy(
            distance_metric=self.distance_metric,
            speed_warning_margin=self.speed_warning_margin,
            speed_danger_margin=self.speed_danger_margin,
            speed_min_episode_seconds=self.speed_min_episode_seconds,
            speed_debounce_seconds=self.speed_debounce_seconds,
            speed_violation_min_excess=self.speed_violation_min_excess,
            severity_moderate_excess=self.severity_moderate_excess,
            severity_severe_excess=self.severity_severe_excess,
            route_deviation_threshold=self.route_deviation_threshold,
            route_recalc_cooldown_seconds=self.route_recalc_cooldown_seconds,
            route_alert_delay_seconds=self.route_alert_delay_seconds,
            route_realert_cooldown_seconds=self.route_realert_cooldown_seconds,
            alert_response_timeout_seconds=self.alert_response_timeout_seconds,
            early_completion_tolerance=self.early_completion_tolerance,
        )

    def enforcement_policy(self) -> EnforcementPolicy:
        return EnforcementPolicy(
            strike_expiration_days=self.strike_expiration_days,
            temp_suspension_strikes=self.temp_suspension_strikes,
            perm_suspension_strikes=self.perm_suspension_strikes,
            temp_suspension_days=self.temp_suspension_days,
            suspension_ack_required=self.suspension_ack_required,
            strike_min_severity=self.strike_min_severity,
            appeal_window_days=self.appeal_window_days,
            dispute_window_hours=self.dispute_window_hours,
            dispute_review_deadline_hours=self.dispute_review_deadline_hours,
        )

    def get_detection_config(self) -> dict:
        """Get detection configuration as dictionary."""
        return {
            "distance_metric": self.distance_metric,
            "speed_danger_margin": self.speed_danger_margin,
            "speed_violation_min_excess": self.speed_violation_min_excess,
            "speed_min_episode_seconds": self.speed_min_episode_seconds,
            "route_deviation_threshold": self.route_deviation_threshold,
            "route_alert_delay_seconds": self.route_alert_delay_seconds,
            "route_realert_cooldown_seconds": self.route_realert_cooldown_seconds,
            "early_completion_tolerance": self.early_completion_tolerance,
        }

    def get_enforcement_config(self) -> dict:
        """Get strike/suspension configuration as dictionary."""
        return {
            "strike_expiration_days": self.strike_expiration_days,
            "temp_suspension_strikes": self.temp_suspension_strikes,
            "perm_suspension_strikes": self.perm_suspension_strikes,
            "temp_suspension_days": self.temp_suspension_days,
            "appeal_window_days": self.appeal_window_days,
        }

# Global configuration instance
config = Config()

def setup_logging():
    """Setup logging configuration."""
    handlers = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format=config.log_format,
        handlers=handlers
    )

    # Set specific logger levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logging.getLogger(__name__)

# Initialize logger
logger = setup_logging()
