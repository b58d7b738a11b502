from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from slotrack.db import Base, get_db
from slotrack.main import app
from slotrack.models import Assessment, AuthUser, Outcome, OutcomeMapping, Question, Subject
from slotrack.routers.auth import hash_password, open_session


@pytest.fixture
def engine():
	eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
	Base.metadata.create_all(eng)
	yield eng
	eng.dispose()


@pytest.fixture
def session_factory(engine):
	return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
	s = session_factory()
	yield s
	s.close()


@pytest.fixture
def client(session_factory):
	def _override_get_db():
		s = session_factory()
		try:
			yield s
		finally:
			s.close()

	app.dependency_overrides[get_db] = _override_get_db
	yield TestClient(app)
	app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
	"""Create an account and return bearer headers for it."""

	def _make(username, role="student", full_name=None):
		db.add(AuthUser(username=username, password_hash=hash_password("secret"), role=role, full_name=full_name))
		db.commit()
		token = open_session(db, username)
		return {"Authorization": f"Bearer {token}"}

	return _make


@pytest.fixture
def make_assessment(db):
	"""Seed an assessment from a compact description.

	Each question is ``{"max_marks": 4, "answer": "paris", "map": {"A": 3, "B": 1}}``;
	outcome keys are created on first use and returned in ``outcomes``.
	"""

	def _make(questions, *, teacher="teacher1", duration_minutes=None, end_time=None, total_marks=None, published=True):
		subject = Subject(teacher_id=teacher, name="Geography")
		db.add(subject)
		db.flush()
		assessment = Assessment(
			subject_id=subject.id,
			teacher_id=teacher,
			title="Capitals quiz",
			total_marks=total_marks if total_marks is not None else sum(q["max_marks"] for q in questions),
			is_published=published,
			duration_minutes=duration_minutes,
			end_time=end_time,
		)
		db.add(assessment)
		db.flush()
		outcomes = {}
		rows = []
		for i, q in enumerate(questions):
			question = Question(
				assessment_id=assessment.id,
				question_text=f"Question {i + 1}",
				question_type="short_answer",
				correct_answer=q["answer"],
				max_marks=q["max_marks"],
				order_number=i + 1,
			)
			for key, marks in q.get("map", {}).items():
				if key not in outcomes:
					outcome = Outcome(subject_id=subject.id, description=f"Outcome {key}")
					db.add(outcome)
					db.flush()
					outcomes[key] = outcome.id
				question.mappings.append(OutcomeMapping(outcome_id=outcomes[key], mark_contribution=marks))
			db.add(question)
			rows.append(question)
		db.commit()
		return SimpleNamespace(
			assessment=assessment,
			assessment_id=assessment.id,
			question_ids=[r.id for r in rows],
			outcomes=outcomes,
		)

	return _make
