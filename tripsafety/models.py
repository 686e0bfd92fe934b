from sqlalchemy import Boolean, Column, Integer, String, Float, DateTime, JSON, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base
from .utils import iso, utcnow

Base = declarative_base()

class Trip(Base):
    __tablename__ = "trips"
    id = Column(String(64), primary_key=True)
    driver_id = Column(String(64), nullable=False, index=True)
    rider_id = Column(String(64), nullable=False, index=True)
    fare_amount = Column(Float, nullable=False, default=0.0)
    # pending -> held -> settled | refunded
    payment_status = Column(String(32), nullable=False, default="pending")
    # active -> completed | cancelled
    status = Column(String(32), nullable=False, default="active")
    destination_lat = Column(Float)
    destination_lon = Column(Float)
    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "driver_id": self.driver_id,
            "rider_id": self.rider_id,
            "fare_amount": self.fare_amount,
            "payment_status": self.payment_status,
            "status": self.status,
            "destination": [self.destination_lat, self.destination_lon],
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
        }

class SpeedViolationRecord(Base):
    __tablename__ = "speed_violations"
    id = Column(String(64), primary_key=True)
    trip_id = Column(String(64), nullable=False, index=True)
    driver_id = Column(String(64), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration = Column(Float, nullable=False)
    max_speed = Column(Float, nullable=False)
    speed_limit = Column(Float, nullable=False)
    max_excess_speed = Column(Float, nullable=False)
    average_excess_speed = Column(Float, nullable=False)
    lat = Column(Float)
    lon = Column(Float)
    severity = Column(String(16), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "trip_id": self.trip_id,
            "driver_id": self.driver_id,
            "start_time": iso(self.start_time),
            "end_time": iso(self.end_time),
            "duration": self.duration,
            "max_speed": self.max_speed,
            "speed_limit": self.speed_limit,
            "max_excess_speed": self.max_excess_speed,
            "average_excess_speed": self.average_excess_speed,
            "location": [self.lat, self.lon],
            "severity": self.severity,
        }

class RouteDeviationRecord(Base):
    __tablename__ = "route_deviations"
    id = Column(String(64), primary_key=True)
    trip_id = Column(String(64), nullable=False, index=True)
    driver_id = Column(String(64), index=True)
    timestamp = Column(DateTime, nullable=False)
    planned_lat = Column(Float)
    planned_lon = Column(Float)
    actual_lat = Column(Float)
    actual_lon = Column(Float)
    deviation_distance = Column(Float, nullable=False)
    duration = Column(Float, nullable=False, default=0.0)
    # okay | sos | no_response | pending
    rider_response = Column(String(16), nullable=False, default="pending")
    response_timestamp = Column(DateTime)
    alert_shown = Column(Boolean, nullable=False, default=False)
    auto_alert_sent = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)
    cleared_at = Column(DateTime)

    def to_dict(self):
        return {
            "id": self.id,
            "trip_id": self.trip_id,
            "timestamp": iso(self.timestamp),
            "planned_location": [self.planned_lat, self.planned_lon],
            "actual_location": [self.actual_lat, self.actual_lon],
            "deviation_distance": self.deviation_distance,
            "duration": self.duration,
            "rider_response": self.rider_response,
            "alert_shown": self.alert_shown,
            "auto_alert_sent": self.auto_alert_sent,
            "active": self.active,
        }

class EarlyCompletionRecord(Base):
    __tablename__ = "early_completions"
    id = Column(String(64), primary_key=True)
    trip_id = Column(String(64), nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False)
    destination_lat = Column(Float)
    destination_lon = Column(Float)
    actual_lat = Column(Float)
    actual_lon = Column(Float)
    distance_from_destination = Column(Float, nullable=False)
    rider_response = Column(String(16), nullable=False, default="pending")
    response_timestamp = Column(DateTime)
    payment_held = Column(Boolean, nullable=False, default=True)
    resolved = Column(Boolean, nullable=False, default=False)
    needs_review = Column(Boolean, nullable=False, default=False)

    def to_dict(self):
        return {
            "id": self.id,
            "trip_id": self.trip_id,
            "timestamp": iso(self.timestamp),
            "destination_location": [self.destination_lat, self.destination_lon],
            "actual_location": [self.actual_lat, self.actual_lon],
            "distance_from_destination": self.distance_from_destination,
            "rider_response": self.rider_response,
            "payment_held": self.payment_held,
            "resolved": self.resolved,
            "needs_review": self.needs_review,
        }

class SafetyViolation(Base):
    __tablename__ = "safety_violations"
    id = Column(String(64), primary_key=True)
    trip_id = Column(String(64), nullable=False, index=True)
    driver_id = Column(String(64), nullable=False, index=True)
    rider_id = Column(String(64))
    type = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False)
    description = Column(Text, default="")
    evidence = Column(JSON, nullable=False, default=list)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    lat = Column(Float)
    lon = Column(Float)
    source_id = Column(String(64), index=True)
    strike_issued = Column(Boolean, nullable=False, default=False)
    strike_id = Column(String(64))
    # pending -> investigating -> confirmed | dismissed
    status = Column(String(16), nullable=False, default="pending")
    resolution = Column(Text)
    reviewed_by = Column(String(64))
    reviewed_at = Column(DateTime)

    def to_dict(self):
        return {
            "id": self.id,
            "trip_id": self.trip_id,
            "driver_id": self.driver_id,
            "rider_id": self.rider_id,
            "type": self.type,
            "severity": self.severity,
            "description": self.description,
            "evidence": self.evidence or [],
            "timestamp": iso(self.timestamp),
            "location": [self.lat, self.lon] if self.lat is not None else None,
            "strike_issued": self.strike_issued,
            "strike_id": self.strike_id,
            "status": self.status,
            "resolution": self.resolution,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": iso(self.reviewed_at),
        }

class Strike(Base):
    __tablename__ = "strikes"
    id = Column(String(64), primary_key=True)
    driver_id = Column(String(64), nullable=False, index=True)
    trip_id = Column(String(64))
    type = Column(String(32), nullable=False)
    reason = Column(Text, nullable=False)
    severity = Column(String(16), nullable=False)
    # Dedupe key: one strike per originating violation/dispute.
    violation_id = Column(String(64), unique=True)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    # active | expired | appealed | removed
    status = Column(String(16), nullable=False, default="active")
    appeal_id = Column(String(64))
    removed_at = Column(DateTime)
    removed_reason = Column(Text)

    def to_dict(self):
        return {
            "id": self.id,
            "driver_id": self.driver_id,
            "trip_id": self.trip_id,
            "type": self.type,
            "reason": self.reason,
            "severity": self.severity,
            "violation_id": self.violation_id,
            "issued_at": iso(self.issued_at),
            "expires_at": iso(self.expires_at),
            "status": self.status,
            "appeal_id": self.appeal_id,
            "removed_reason": self.removed_reason,
        }

class Suspension(Base):
    __tablename__ = "suspensions"
    id = Column(String(64), primary_key=True)
    driver_id = Column(String(64), nullable=False, index=True)
    # temporary | permanent
    type = Column(String(16), nullable=False)
    reason = Column(Text, nullable=False)
    strike_ids = Column(JSON, nullable=False, default=list)
    started_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime)
    # active | lifted | expired
    status = Column(String(16), nullable=False, default="active")
    acknowledgment_required = Column(Boolean, nullable=False, default=True)
    acknowledged_at = Column(DateTime)
    lifted_at = Column(DateTime)
    lifted_reason = Column(Text)
    lifted_by = Column(String(64))

    def to_dict(self):
        return {
            "id": self.id,
            "driver_id": self.driver_id,
            "type": self.type,
            "reason": self.reason,
            "strike_ids": self.strike_ids or [],
            "started_at": iso(self.started_at),
            "expires_at": iso(self.expires_at),
            "status": self.status,
            "acknowledgment_required": self.acknowledgment_required,
            "acknowledged_at": iso(self.acknowledged_at),
            "lifted_at": iso(self.lifted_at),
            "lifted_reason": self.lifted_reason,
        }

class Appeal(Base):
    __tablename__ = "appeals"
    id = Column(String(64), primary_key=True)
    driver_id = Column(String(64), nullable=False, index=True)
    strike_id = Column(String(64), index=True)
    suspension_id = Column(String(64), index=True)
    reason = Column(Text, nullable=False)
    evidence = Column(JSON, nullable=False, default=list)
    submitted_at = Column(DateTime, nullable=False)
    # pending -> under_review -> approved | denied
    status = Column(String(16), nullable=False, default="pending")
    reviewed_by = Column(String(64))
    reviewed_at = Column(DateTime)
    resolution = Column(Text)

    def to_dict(self):
        return {
            "id": self.id,
            "driver_id": self.driver_id,
            "strike_id": self.strike_id,
            "suspension_id": self.suspension_id,
            "reason": self.reason,
            "evidence": self.evidence or [],
            "submitted_at": iso(self.submitted_at),
            "status": self.status,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": iso(self.reviewed_at),
            "resolution": self.resolution,
        }

class PaymentDispute(Base):
    __tablename__ = "payment_disputes"
    id = Column(String(64), primary_key=True)
    trip_id = Column(String(64), nullable=False, index=True)
    rider_id = Column(String(64), nullable=False)
    driver_id = Column(String(64), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    reason = Column(String(32), nullable=False)
    description = Column(Text, default="")
    evidence = Column(JSON, nullable=False, default=list)
    # pending -> under_review -> approved | denied | escalated
    status = Column(String(16), nullable=False, default="pending")
    auto_hold = Column(Boolean, nullable=False, default=False)
    escrow_id = Column(String(64))
    resolution = Column(Text)
    refund_amount = Column(Float)
    strike_issued = Column(Boolean, nullable=False, default=False)
    strike_id = Column(String(64))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime)
    resolved_by = Column(String(64))

    def to_dict(self):
        return {
            "id": self.id,
            "trip_id": self.trip_id,
            "rider_id": self.rider_id,
            "driver_id": self.driver_id,
            "amount": self.amount,
            "reason": self.reason,
            "description": self.description,
            "evidence": self.evidence or [],
            "status": self.status,
            "auto_hold": self.auto_hold,
            "escrow_id": self.escrow_id,
            "resolution": self.resolution,
            "refund_amount": self.refund_amount,
            "strike_issued": self.strike_issued,
            "strike_id": self.strike_id,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "resolved_at": iso(self.resolved_at),
        }

class PaymentEscrow(Base):
    __tablename__ = "payment_escrows"
    id = Column(String(64), primary_key=True)
    trip_id = Column(String(64), nullable=False, index=True)
    dispute_id = Column(String(64), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    # held | released_to_driver | refunded_to_rider | partially_refunded
    status = Column(String(24), nullable=False, default="held")
    refunded_amount = Column(Float, nullable=False, default=0.0)
    released_amount = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    released_at = Column(DateTime)
    release_reason = Column(Text)

    def to_dict(self):
        return {
            "id": self.id,
            "trip_id": self.trip_id,
            "dispute_id": self.dispute_id,
            "amount": self.amount,
            "status": self.status,
            "refunded_amount": self.refunded_amount,
            "released_amount": self.released_amount,
            "created_at": iso(self.created_at),
            "released_at": iso(self.released_at),
            "release_reason": self.release_reason,
        }

class EmergencyAlert(Base):
    __tablename__ = "emergency_alerts"
    id = Column(String(64), primary_key=True)
    trip_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    user_type = Column(String(16), nullable=False)
    type = Column(String(32), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    lat = Column(Float)
    lon = Column(Float)
    context = Column(JSON, nullable=False, default=dict)
    contacts_notified = Column(JSON, nullable=False, default=list)
    authorities_contacted = Column(Boolean, nullable=False, default=False)
    payment_hold = Column(String(16))
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime)
    resolution = Column(Text)
    resolved_by = Column(String(64))

    def to_dict(self):
        return {
            "id": self.id,
            "trip_id": self.trip_id,
            "user_id": self.user_id,
            "user_type": self.user_type,
            "type": self.type,
            "timestamp": iso(self.timestamp),
            "location": [self.lat, self.lon],
            "context": self.context or {},
            "contacts_notified": self.contacts_notified or [],
            "authorities_contacted": self.authorities_contacted,
            "payment_hold": self.payment_hold,
            "resolved": self.resolved,
            "resolved_at": iso(self.resolved_at),
            "resolution": self.resolution,
        }

class EmergencyContact(Base):
    __tablename__ = "emergency_contacts"
    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(64))
    email = Column(String(255))
    relationship = Column(String(64))

    @property
    def address(self):
        return self.phone or self.email

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "relationship": self.relationship,
        }

class NotificationDelivery(Base):
    """Audit trail of outbound notifications, including failed ones."""
    __tablename__ = "notification_deliveries"
    id = Column(Integer, primary_key=True)
    alert_id = Column(String(64), index=True)
    recipient = Column(String(255), nullable=False)
    kind = Column(String(32), nullable=False)
    # sent | failed
    status = Column(String(16), nullable=False)
    error = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)

class SafetyRating(Base):
    __tablename__ = "safety_ratings"
    __table_args__ = (UniqueConstraint("trip_id", "rider_id", name="uq_safety_rating_trip_rider"),)
    id = Column(Integer, primary_key=True)
    trip_id = Column(String(64), nullable=False)
    driver_id = Column(String(64), nullable=False, index=True)
    rider_id = Column(String(64), nullable=False)
    overall_safety_score = Column(Integer, nullable=False)
    traffic_laws_followed = Column(Integer)
    felt_safe = Column(Integer)
    speed_appropriate = Column(Integer)
    route_as_expected = Column(Integer)
    comments = Column(Text)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

class DriverSafetyProfile(Base):
    """Materialised per-driver aggregate, rewritten by services.profiles only."""
    __tablename__ = "driver_safety_profiles"
    driver_id = Column(String(64), primary_key=True)
    safety_rating = Column(Float, nullable=False, default=5.0)
    total_safety_ratings = Column(Integer, nullable=False, default=0)
    rating_distribution = Column(JSON, nullable=False, default=dict)
    route_adherence_score = Column(Integer, nullable=False, default=100)
    speed_compliance_score = Column(Integer, nullable=False, default=100)
    strike_ids = Column(JSON, nullable=False, default=list)
    active_strikes = Column(Integer, nullable=False, default=0)
    # active | suspended_temp | suspended_perm
    suspension_status = Column(String(16), nullable=False, default="active")
    current_suspension_id = Column(String(64))
    badges = Column(JSON, nullable=False, default=list)
    last_violation_at = Column(DateTime)
    safe_trips_streak = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self):
        return {
            "driver_id": self.driver_id,
            "safety_rating": self.safety_rating,
            "total_safety_ratings": self.total_safety_ratings,
            "rating_distribution": self.rating_distribution or {},
            "route_adherence_score": self.route_adherence_score,
            "speed_compliance_score": self.speed_compliance_score,
            "strikes": self.strike_ids or [],
            "active_strikes": self.active_strikes,
            "suspension_status": self.suspension_status,
            "current_suspension": self.current_suspension_id,
            "badges": self.badges or [],
            "last_violation": iso(self.last_violation_at),
            "safe_trips_streak": self.safe_trips_streak,
            "updated_at": iso(self.updated_at),
        }
