from __future__ import annotations
import uuid
from sqlalchemy import Column, String, DateTime, Integer, Float, Text, Boolean, JSON, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from .db import Base, utcnow


def _new_id() -> str:
	return uuid.uuid4().hex


ROLE_TEACHER = "teacher"
ROLE_STUDENT = "student"

SESSION_DRAFT = "draft"
SESSION_SUBMITTING = "submitting"
SESSION_SUBMITTED = "submitted"
SESSION_AGGREGATED = "aggregated"


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username; student/teacher ids throughout are usernames
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	full_name = Column(String(256), nullable=True)
	role = Column(String(16), default=ROLE_STUDENT, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), ForeignKey("auth_users.username"), nullable=False, index=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=utcnow, nullable=False)


class Subject(Base):
	__tablename__ = "subjects"
	id = Column(String(32), primary_key=True, default=_new_id)
	teacher_id = Column(String(128), ForeignKey("auth_users.username"), nullable=False, index=True)
	name = Column(String(256), nullable=False)
	description = Column(Text, nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)

	outcomes = relationship("Outcome", back_populates="subject", order_by="Outcome.created_at")


class Outcome(Base):
	__tablename__ = "outcomes"
	id = Column(String(32), primary_key=True, default=_new_id)
	subject_id = Column(String(32), ForeignKey("subjects.id"), nullable=False, index=True)
	description = Column(Text, nullable=False)
	target_proficiency = Column(Float, default=70.0, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)

	subject = relationship("Subject", back_populates="outcomes")


class Assessment(Base):
	__tablename__ = "assessments"
	id = Column(String(32), primary_key=True, default=_new_id)
	subject_id = Column(String(32), ForeignKey("subjects.id"), nullable=False, index=True)
	teacher_id = Column(String(128), ForeignKey("auth_users.username"), nullable=False, index=True)
	title = Column(String(256), nullable=False)
	# Cached at creation; not recomputed if questions change afterwards
	total_marks = Column(Float, nullable=False)
	is_published = Column(Boolean, default=False, nullable=False)
	# Live (time-boxed) test fields
	start_time = Column(DateTime, nullable=True)
	end_time = Column(DateTime, nullable=True)
	duration_minutes = Column(Integer, nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)

	subject = relationship("Subject")
	questions = relationship("Question", back_populates="assessment", order_by="Question.order_number")

	@property
	def is_live(self) -> bool:
		return self.end_time is not None or self.duration_minutes is not None


class Question(Base):
	__tablename__ = "questions"
	id = Column(String(32), primary_key=True, default=_new_id)
	assessment_id = Column(String(32), ForeignKey("assessments.id"), nullable=False, index=True)
	question_text = Column(Text, nullable=False)
	question_type = Column(String(32), nullable=False)
	options = Column(JSON, nullable=True)
	correct_answer = Column(Text, nullable=False)
	max_marks = Column(Float, nullable=False)
	order_number = Column(Integer, nullable=False)

	assessment = relationship("Assessment", back_populates="questions")
	mappings = relationship("OutcomeMapping", back_populates="question", cascade="all, delete-orphan")


class OutcomeMapping(Base):
	__tablename__ = "question_outcome_mappings"
	id = Column(String(32), primary_key=True, default=_new_id)
	question_id = Column(String(32), ForeignKey("questions.id"), nullable=False, index=True)
	outcome_id = Column(String(32), ForeignKey("outcomes.id"), nullable=False, index=True)
	mark_contribution = Column(Float, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)

	question = relationship("Question", back_populates="mappings")


class AttemptSession(Base):
	"""Draft state of an attempt; ``status`` doubles as the single-use submission latch."""

	__tablename__ = "attempt_sessions"
	id = Column(String(32), primary_key=True, default=_new_id)
	student_id = Column(String(128), ForeignKey("auth_users.username"), nullable=False, index=True)
	assessment_id = Column(String(32), ForeignKey("assessments.id"), nullable=False, index=True)
	status = Column(String(16), default=SESSION_DRAFT, nullable=False, index=True)
	answers = Column(JSON, nullable=False, default=dict)
	started_at = Column(DateTime, default=utcnow, nullable=False)
	deadline = Column(DateTime, nullable=True)
	submitted_at = Column(DateTime, nullable=True)
	# Set when the latch is taken; a stale value means the submitter died mid-flight
	latched_at = Column(DateTime, nullable=True)
	attempt_id = Column(String(32), nullable=True)

	assessment = relationship("Assessment")


class Attempt(Base):
	__tablename__ = "attempts"
	id = Column(String(32), primary_key=True, default=_new_id)
	student_id = Column(String(128), ForeignKey("auth_users.username"), nullable=False, index=True)
	assessment_id = Column(String(32), ForeignKey("assessments.id"), nullable=False, index=True)
	session_id = Column(String(32), ForeignKey("attempt_sessions.id"), nullable=True, unique=True)
	answers = Column(JSON, nullable=False)
	raw_score = Column(Float, nullable=False)
	total_possible = Column(Float, nullable=False)
	# {outcome_id: {"earned": float, "possible": float}} for this attempt only
	outcome_breakdown = Column(JSON, nullable=False)
	auto_submitted = Column(Boolean, default=False, nullable=False)
	submitted_at = Column(DateTime, default=utcnow, nullable=False)

	assessment = relationship("Assessment")


class ProficiencyRecord(Base):
	__tablename__ = "proficiency_records"
	__table_args__ = (UniqueConstraint("student_id", "outcome_id", name="uq_proficiency_student_outcome"),)

	id = Column(String(32), primary_key=True, default=_new_id)
	student_id = Column(String(128), ForeignKey("auth_users.username"), nullable=False, index=True)
	outcome_id = Column(String(32), ForeignKey("outcomes.id"), nullable=False, index=True)
	total_marks_earned = Column(Float, default=0.0, nullable=False)
	total_marks_attempted = Column(Float, default=0.0, nullable=False)
	proficiency_percentage = Column(Float, default=0.0, nullable=False)
	level = Column(String(16), nullable=False)
	version = Column(Integer, nullable=False)
	last_updated = Column(DateTime, default=utcnow, nullable=False)

	outcome = relationship("Outcome")

	# UPDATEs carry "WHERE version = :seen"; a concurrent writer raises StaleDataError
	__mapper_args__ = {"version_id_col": version}


class PendingAggregation(Base):
	__tablename__ = "pending_aggregations"
	__table_args__ = (
		UniqueConstraint("attempt_id", "outcome_id", name="uq_pending_attempt_outcome"),
		Index("ix_pending_unapplied", "applied_at"),
	)

	id = Column(String(32), primary_key=True, default=_new_id)
	attempt_id = Column(String(32), ForeignKey("attempts.id"), nullable=False, index=True)
	student_id = Column(String(128), nullable=False)
	outcome_id = Column(String(32), ForeignKey("outcomes.id"), nullable=False)
	marks_earned = Column(Float, nullable=False)
	marks_possible = Column(Float, nullable=False)
	tries = Column(Integer, default=0, nullable=False)
	last_error = Column(Text, nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	applied_at = Column(DateTime, nullable=True)


class StudentReport(Base):
	__tablename__ = "student_reports"
	id = Column(String(32), primary_key=True, default=_new_id)
	student_id = Column(String(128), ForeignKey("auth_users.username"), nullable=False, index=True)
	generated_by = Column(String(128), ForeignKey("auth_users.username"), nullable=False)
	report_path = Column(String(512), nullable=False)
	report_data = Column(JSON, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
